from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status

from lhmmqtt.auth import require_api_token
from lhmmqtt.config import Settings, get_settings
from lhmmqtt.http_utils import persist
from lhmmqtt.schemas import ConfigEnvelope
from lhmmqtt.services.config_store import apply_config, export_config

router = APIRouter(prefix="/v1", dependencies=[Depends(require_api_token)])


@router.get("/config")
async def config(settings: Settings = Depends(get_settings)) -> Dict:
    return export_config(settings)


@router.put("/config")
async def update_config(
    request: Request,
    payload: ConfigEnvelope,
    settings: Settings = Depends(get_settings),
) -> Dict:
    """Replace the persisted sections. Changes apply the next time the service starts."""

    try:
        apply_config(settings, payload.model_dump(exclude_none=True))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    persist(request.app, settings)
    return export_config(settings)
