from __future__ import annotations

import time
from typing import Dict

from fastapi import APIRouter, Depends, Request

from lhmmqtt import __version__
from lhmmqtt.config import Settings, get_settings
from lhmmqtt.device import HostDevice
from lhmmqtt.http_utils import telemetry

router = APIRouter(prefix="/v1")


@router.get("/status")
async def status_endpoint(request: Request, settings: Settings = Depends(get_settings)) -> Dict[str, object]:
    service = telemetry(request.app)
    device: HostDevice = request.app.state.device
    uptime = int(time.monotonic() - getattr(request.app.state, "started_at", time.monotonic()))
    return {
        "service_name": settings.service_name,
        "service_version": __version__,
        "uptime_seconds": uptime,
        "device": device.as_payload(),
        "hardware_backend": settings.hardware_backend,
        "broker": f"{settings.mqtt.hostname}:{settings.mqtt.port}",
        "categories": sorted(category.value for category in settings.sensors.enabled()),
        "service": service.snapshot(),
    }
