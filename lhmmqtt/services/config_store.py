from __future__ import annotations

"""Persistence helpers for the user-editable settings sections."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from lhmmqtt.config import Settings

logger = logging.getLogger(__name__)

PERSISTED_SECTIONS = ("mqtt", "updates", "sensors")
REDACTED = "**********"


class ConfigStore:
    """Reads and atomically rewrites the JSON settings file."""

    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable settings file %s", self.path)
            return None
        return payload if isinstance(payload, dict) else None

    def save(self, payload: Dict[str, Any]) -> None:
        temp_path = self.path.with_suffix(".tmp")
        temp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        temp_path.replace(self.path)


def export_config(settings: Settings, *, reveal_secrets: bool = False) -> Dict[str, Any]:
    """Serialize the persisted sections to a plain dict."""

    mqtt = settings.mqtt.model_dump(mode="json")
    if settings.mqtt.password is not None:
        mqtt["password"] = settings.mqtt.password.get_secret_value() if reveal_secrets else REDACTED
    return {
        "mqtt": mqtt,
        "updates": settings.updates.model_dump(mode="json"),
        "sensors": settings.sensors.model_dump(mode="json"),
    }


def apply_config(settings: Settings, payload: Dict[str, Any]) -> Settings:
    """Apply a persisted or submitted payload without partially mutating the live settings.

    Sections are merged field by field, so a payload may carry only the fields
    it changes. An omitted or null password keeps the current one.
    """

    candidate = settings.model_dump(mode="python")
    for section in PERSISTED_SECTIONS:
        value = payload.get(section)
        if value is None:
            continue
        if not isinstance(value, dict):
            raise ValueError(f"{section} must be an object")
        merged = dict(candidate.get(section) or {})
        merged.update(value)
        candidate[section] = merged

    mqtt_payload = payload.get("mqtt")
    submitted = mqtt_payload.get("password") if isinstance(mqtt_payload, dict) else None
    if submitted is None or submitted == REDACTED:
        current = settings.mqtt.password
        candidate["mqtt"]["password"] = current.get_secret_value() if current is not None else None

    try:
        validated = Settings.model_validate(candidate)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc

    for section in PERSISTED_SECTIONS:
        setattr(settings, section, getattr(validated, section))
    return settings


def persist(store: ConfigStore, settings: Settings) -> None:
    store.save(export_config(settings, reveal_secrets=True))
