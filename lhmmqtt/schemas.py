from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class MqttSection(BaseModel):
    hostname: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    username: Optional[str] = None
    password: Optional[str] = None


class UpdatesSection(BaseModel):
    delay: Optional[int] = None


class SensorsSection(BaseModel):
    cpu: Optional[bool] = None
    gpu: Optional[bool] = None
    memory: Optional[bool] = None
    motherboard: Optional[bool] = None
    controller: Optional[bool] = None
    networking: Optional[bool] = None
    storage: Optional[bool] = None


class ConfigEnvelope(BaseModel):
    mqtt: Optional[MqttSection] = None
    updates: Optional[UpdatesSection] = None
    sensors: Optional[SensorsSection] = None


class StartResponse(BaseModel):
    started: bool
    state: str
    run_id: Optional[str] = None


class StopResponse(BaseModel):
    stopped: bool = True
    state: str
    cooldown_remaining_seconds: float = 0.0
