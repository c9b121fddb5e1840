"""Hardware sources for the telemetry service."""
from __future__ import annotations

from .lhm_source import LibreHardwareMonitorSource, open_lhm_source
from .psutil_source import PsutilHardwareSource, open_psutil_source
from .source import (
    HardwareCategory,
    HardwareSensor,
    HardwareSource,
    HardwareUnit,
    SnapshotHardwareSource,
)

__all__ = [
    "HardwareCategory",
    "HardwareSensor",
    "HardwareSource",
    "HardwareUnit",
    "SnapshotHardwareSource",
    "LibreHardwareMonitorSource",
    "PsutilHardwareSource",
    "open_lhm_source",
    "open_psutil_source",
]
