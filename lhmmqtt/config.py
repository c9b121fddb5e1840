"""Runtime configuration for the telemetry bridge."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from lhmmqtt.hardware.source import HardwareCategory

DEFAULT_UPDATE_INTERVAL = 10


def effective_update_interval(value: int | float | None) -> int | float:
    """Non-positive or missing intervals fall back to the default."""

    if value is None or value != value or value <= 0:  # NaN
        return DEFAULT_UPDATE_INTERVAL
    return value


class MqttSettings(BaseModel):
    hostname: str = Field(default="localhost", description="Broker host name or address")
    port: int = Field(default=1883, ge=1, le=65535)
    username: Optional[str] = None
    password: SecretStr | None = None

    @field_validator("username", mode="before")
    @classmethod
    def _blank_username(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("password", mode="before")
    @classmethod
    def _blank_password(cls, value):
        if isinstance(value, str) and not value:
            return None
        return value


class UpdateSettings(BaseModel):
    delay: int = Field(default=DEFAULT_UPDATE_INTERVAL, description="Seconds between state updates")

    @property
    def interval_seconds(self) -> int:
        return int(effective_update_interval(self.delay))


class SensorCategories(BaseModel):
    cpu: bool = False
    gpu: bool = False
    memory: bool = False
    motherboard: bool = False
    controller: bool = False
    networking: bool = False
    storage: bool = False

    def enabled(self) -> frozenset[HardwareCategory]:
        return frozenset(category for category in HardwareCategory if getattr(self, category.value))


class Settings(BaseSettings):
    """Environment driven settings; the mqtt/updates/sensors sections can also be persisted."""

    service_name: str = "lhmmqtt"
    log_level: str = "INFO"
    device_name: Optional[str] = Field(default=None, description="Override for the host name used as device id")
    mqtt: MqttSettings = Field(default_factory=MqttSettings)
    updates: UpdateSettings = Field(default_factory=UpdateSettings)
    sensors: SensorCategories = Field(default_factory=SensorCategories)
    hardware_backend: Literal["psutil", "librehardwaremonitor"] = "psutil"
    lhm_url: str = "http://127.0.0.1:8085/data.json"
    lhm_timeout_seconds: float = Field(default=5.0, gt=0)
    autostart: bool = True
    api_host: str = "127.0.0.1"
    api_port: int = 8086
    api_token: SecretStr | None = None
    config_path: str = "storage/lhmmqtt.json"

    model_config = SettingsConfigDict(
        env_prefix="LHMMQTT_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"

    @property
    def config_file(self) -> Path:
        return Path(self.config_path)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
