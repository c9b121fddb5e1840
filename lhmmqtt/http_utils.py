from __future__ import annotations

import asyncio
import logging

from fastapi import HTTPException, status
from fastapi.applications import FastAPI

from lhmmqtt import bootstrap
from lhmmqtt.config import Settings
from lhmmqtt.services.catalog import SensorCatalog
from lhmmqtt.services.config_store import ConfigStore
from lhmmqtt.services.config_store import persist as persist_config
from lhmmqtt.services.telemetry import ServiceState, TelemetryService

logger = logging.getLogger(__name__)


def telemetry(app: FastAPI) -> TelemetryService:
    service: TelemetryService | None = getattr(app.state, "telemetry", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Telemetry service unavailable")
    return service


def persist(app: FastAPI, settings: Settings) -> None:
    store: ConfigStore | None = getattr(app.state, "config_store", None)
    if store:
        persist_config(store, settings)


async def start_telemetry(app: FastAPI, settings: Settings) -> bool:
    """Attach a freshly opened hardware source to the catalog and start the service.

    The source is only reopened when the service is idle, so a running catalog
    is never reinitialized underneath its update loop.
    """

    service = telemetry(app)
    if service.state in (ServiceState.RUNNING, ServiceState.STARTING):
        return True
    if service.state is ServiceState.STOPPING or service.cooling_down:
        return False
    catalog: SensorCatalog = app.state.catalog
    try:
        source = await asyncio.to_thread(bootstrap.open_hardware_source, settings)
    except Exception as exc:
        service.last_error = f"{type(exc).__name__}: {exc}"
        logger.error("Unable to open hardware source: %s", exc)
        return False
    catalog.reinitialize(source, update_interval=settings.updates.delay)
    return await service.start(catalog)
