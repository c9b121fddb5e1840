"""Hardware source contract shared by the telemetry service and the concrete readers."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Protocol

from lhmmqtt.errors import HardwareSourceReleased

logger = logging.getLogger(__name__)


class HardwareCategory(str, Enum):
    CPU = "cpu"
    GPU = "gpu"
    MEMORY = "memory"
    MOTHERBOARD = "motherboard"
    CONTROLLER = "controller"
    NETWORKING = "networking"
    STORAGE = "storage"


@dataclass
class HardwareSensor:
    name: str
    sensor_type: str
    identifier: str
    value: Optional[float] = None


@dataclass
class HardwareUnit:
    name: str
    category: HardwareCategory
    identifier: str
    sensors: List[HardwareSensor] = field(default_factory=list)


class HardwareSource(Protocol):
    """A refreshable tree of hardware units limited to the enabled categories."""

    enabled_categories: frozenset[HardwareCategory]

    def hardware_tree(self) -> Iterator[HardwareUnit]:
        ...

    def refresh(self) -> None:
        ...

    def release(self) -> None:
        ...


class SnapshotHardwareSource:
    """Base for sources that rebuild a full snapshot on every refresh.

    The unit/sensor topology is fixed when the source is opened; later refreshes
    only update values in place. Sensors that disappear from a snapshot keep
    their slot with ``value=None``.
    """

    backend: str = "snapshot"

    def __init__(self, categories: Iterable[HardwareCategory]) -> None:
        self.enabled_categories = frozenset(categories)
        self._released = False
        self._units: List[HardwareUnit] = []

    def open(self) -> None:
        self._units = [unit for unit in self._collect() if unit.category in self.enabled_categories]
        logger.info(
            "%s hardware source opened with %s units (%s)",
            self.backend,
            len(self._units),
            ", ".join(sorted(category.value for category in self.enabled_categories)) or "no categories",
        )

    @property
    def released(self) -> bool:
        return self._released

    def hardware_tree(self) -> Iterator[HardwareUnit]:
        if self._released:
            raise HardwareSourceReleased(f"{self.backend} hardware source has been released")
        return iter(self._units)

    def refresh(self) -> None:
        if self._released:
            raise HardwareSourceReleased(f"{self.backend} hardware source has been released")
        latest = {
            (unit.identifier, sensor.identifier): sensor.value
            for unit in self._collect()
            if unit.category in self.enabled_categories
            for sensor in unit.sensors
        }
        for unit in self._units:
            for sensor in unit.sensors:
                sensor.value = latest.get((unit.identifier, sensor.identifier))

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self._close()
        finally:
            self._units = []
            logger.info("%s hardware source released", self.backend)

    def _collect(self) -> List[HardwareUnit]:
        raise NotImplementedError

    def _close(self) -> None:
        return None
