from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from lhmmqtt.config import Settings, get_settings


def _extract_bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def require_api_token(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard control endpoints with ``LHMMQTT_API_TOKEN`` when one is configured."""

    if settings.api_token is None:
        return
    expected = settings.api_token.get_secret_value().strip()
    if not expected:
        return

    token = _extract_bearer_token(request)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
        )
    if not hmac.compare_digest(token, expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid token",
        )
