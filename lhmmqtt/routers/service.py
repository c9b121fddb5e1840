from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from lhmmqtt.auth import require_api_token
from lhmmqtt.config import Settings, get_settings
from lhmmqtt.http_utils import start_telemetry, telemetry
from lhmmqtt.schemas import StartResponse, StopResponse
from lhmmqtt.services.telemetry import ServiceState

router = APIRouter(prefix="/v1/service", dependencies=[Depends(require_api_token)])


@router.post("/start", response_model=StartResponse)
async def start_service(request: Request, settings: Settings = Depends(get_settings)) -> StartResponse:
    service = telemetry(request.app)
    if service.state is ServiceState.STOPPING or service.cooling_down:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": "Service is still shutting down",
                "state": service.state.value,
                "cooldown_remaining_seconds": round(service.cooldown_remaining, 3),
            },
        )
    started = await start_telemetry(request.app, settings)
    if not started:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": "Service failed to start", "last_error": service.last_error},
        )
    return StartResponse(started=True, state=service.state.value, run_id=service.run_id)


@router.post("/stop", response_model=StopResponse)
async def stop_service(request: Request) -> StopResponse:
    service = telemetry(request.app)
    await service.stop()
    return StopResponse(
        state=service.state.value,
        cooldown_remaining_seconds=round(service.cooldown_remaining, 3),
    )
