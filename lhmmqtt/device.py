"""Host device identity and deterministic sensor ids."""
from __future__ import annotations

import platform
import re
import socket
from dataclasses import dataclass
from typing import Dict, Optional

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")

MANUFACTURER = "LHMMQTT"


def sanitize(value: str | None) -> str:
    """Strip every character that is not an ASCII letter or digit."""

    return _NON_ALNUM.sub("", value or "")


def compute_unique_id(device_name: str, unit_name: str, sensor_name: str, kind_tag: str) -> str:
    """Stable id for one sensor of one hardware unit on this device.

    The device name is used as-is (it is already sanitized when the device is
    built); the unit and sensor names are sanitized. Empty names yield empty
    segments rather than errors.
    """

    return f"{device_name}_{sanitize(unit_name)}_{sanitize(sensor_name)}_{kind_tag}"


def _host_model() -> str:
    system = " ".join(part for part in (platform.system(), platform.release()) if part)
    return f"{system or 'Unknown OS'} ({platform.machine() or 'unknown'})"


@dataclass(frozen=True)
class HostDevice:
    """The machine every discovered sensor is attached to."""

    name: str
    identifier: str
    model: str
    manufacturer: str = MANUFACTURER

    @classmethod
    def detect(cls, name_override: Optional[str] = None) -> "HostDevice":
        name = sanitize(name_override or socket.gethostname())
        return cls(name=name, identifier=name, model=_host_model())

    def as_payload(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "identifiers": [self.identifier],
            "model": self.model,
            "manufacturer": self.manufacturer,
        }
