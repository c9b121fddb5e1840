"""Hardware source backed by the LibreHardwareMonitor remote web server (``data.json``)."""
from __future__ import annotations

import logging
import math
import re
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import httpx

from lhmmqtt.hardware.source import HardwareCategory, HardwareSensor, HardwareUnit, SnapshotHardwareSource

logger = logging.getLogger(__name__)

DEFAULT_LHM_URL = "http://127.0.0.1:8085/data.json"

_NUMBER = re.compile(r"-?\d+(?:[.,]\d+)?")
_UNIT = re.compile(r"(°C|°F|%|[KMGT]?B/s|[KMGT]?B|mWh|Wh|MHz|kHz|Hz)", re.IGNORECASE)

CATEGORY_PREFIXES: Dict[HardwareCategory, Tuple[str, ...]] = {
    HardwareCategory.CPU: ("amdcpu", "intelcpu", "genericcpu", "cpu"),
    HardwareCategory.GPU: ("gpu", "nvidiagpu", "atigpu", "intelgpu"),
    HardwareCategory.MEMORY: ("ram", "memory"),
    HardwareCategory.MOTHERBOARD: ("motherboard", "mainboard", "lpc", "ec"),
    HardwareCategory.CONTROLLER: (
        "aquacomputer",
        "aeroflow",
        "corsair",
        "heatmaster",
        "nzxt",
        "razer",
        "tbalancer",
        "controller",
    ),
    HardwareCategory.NETWORKING: ("nic", "network"),
    HardwareCategory.STORAGE: ("hdd", "nvme", "ssd", "storage", "ata", "scsi"),
}

_BINARY_SCALE = {"": 1.0, "k": 1024.0, "m": 1024.0**2, "g": 1024.0**3, "t": 1024.0**4}


def category_for(identifier: str) -> Optional[HardwareCategory]:
    """Map a LibreHardwareMonitor hardware/sensor id (``/amdcpu/0/...``) to a category."""

    head = identifier.strip("/").split("/", 1)[0].lower()
    if not head:
        return None
    for category, prefixes in CATEGORY_PREFIXES.items():
        for prefix in prefixes:
            if head == prefix or (prefix == "gpu" and head.startswith("gpu-")):
                return category
    return None


def parse_value(sensor_type: str, raw: Any) -> Optional[float]:
    """Turn a formatted ``Value`` such as ``"45.5 °C"`` into a number in the unit the descriptor table uses."""

    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        number = float(raw)
        return number if math.isfinite(number) else None
    text = str(raw).strip()
    if not text or text == "-" or text.lower().startswith("nan"):
        return None
    match = _NUMBER.search(text)
    if match is None:
        return None
    number = float(match.group(0).replace(",", "."))
    unit_match = _UNIT.search(text[match.end():])
    unit = unit_match.group(1) if unit_match else ""
    return _convert(sensor_type, number, unit)


def _convert(sensor_type: str, number: float, unit: str) -> float:
    kind = sensor_type.lower()
    lowered = unit.lower()
    if kind == "temperature" and unit == "°F":
        return (number - 32.0) * 5.0 / 9.0
    if kind == "throughput" and lowered.endswith("b/s"):
        return number * _BINARY_SCALE.get(lowered[:-3], 1.0)
    if kind == "data" and lowered.endswith("b") and lowered != "b":
        # descriptor unit is GB
        return number * _BINARY_SCALE.get(lowered[:-1], 1.0) / _BINARY_SCALE["g"]
    if kind == "smalldata" and lowered.endswith("b") and lowered != "b":
        # descriptor unit is MB
        return number * _BINARY_SCALE.get(lowered[:-1], 1.0) / _BINARY_SCALE["m"]
    if kind == "energy" and lowered == "mwh":
        return number / 1000.0
    return number


def _children(node: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [child for child in (node.get("Children") or []) if isinstance(child, dict)]


def _walk_sensors(
    node: Dict[str, Any],
    path: List[Dict[str, Any]],
) -> Iterator[Tuple[Dict[str, Any], List[Dict[str, Any]]]]:
    if node.get("SensorId") and node.get("Type"):
        yield node, path
        return
    for child in _children(node):
        yield from _walk_sensors(child, path + [node])


def _owning_unit(sensor: Dict[str, Any], path: List[Dict[str, Any]]) -> Tuple[str, str]:
    """Return (unit identifier, unit name) for a sensor node given its ancestors."""

    for ancestor in reversed(path):
        hardware_id = ancestor.get("HardwareId")
        if hardware_id:
            return str(hardware_id), str(ancestor.get("Text") or hardware_id)
    # Older servers omit HardwareId; sensor ids are "<hardware id>/<type>/<index>".
    sensor_id = str(sensor["SensorId"])
    identifier = sensor_id.rsplit("/", 2)[0] if sensor_id.count("/") >= 3 else sensor_id
    # root -> machine -> hardware
    name_node = path[2] if len(path) > 2 else (path[-1] if path else sensor)
    return identifier, str(name_node.get("Text") or identifier)


def parse_tree(data: Dict[str, Any]) -> List[HardwareUnit]:
    units: Dict[str, HardwareUnit] = {}
    for sensor, path in _walk_sensors(data, []):
        unit_id, unit_name = _owning_unit(sensor, path)
        category = category_for(unit_id)
        if category is None:
            logger.debug("Skipping sensor %s with unknown hardware category", sensor.get("SensorId"))
            continue
        unit = units.get(unit_id)
        if unit is None:
            unit = units[unit_id] = HardwareUnit(name=unit_name, category=category, identifier=unit_id)
        sensor_type = str(sensor.get("Type"))
        unit.sensors.append(
            HardwareSensor(
                name=str(sensor.get("Text") or ""),
                sensor_type=sensor_type,
                identifier=str(sensor["SensorId"]),
                value=parse_value(sensor_type, sensor.get("Value")),
            )
        )
    return list(units.values())


class LibreHardwareMonitorSource(SnapshotHardwareSource):
    """Polls a running LibreHardwareMonitor instance over HTTP."""

    backend = "librehardwaremonitor"

    def __init__(
        self,
        categories: Iterable[HardwareCategory],
        *,
        url: str = DEFAULT_LHM_URL,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(categories)
        self.url = url
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def _fetch(self) -> Dict[str, Any]:
        response = self._client.get(self.url)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError(f"unexpected payload from {self.url}")
        return payload

    def _collect(self) -> List[HardwareUnit]:
        return parse_tree(self._fetch())

    def _close(self) -> None:
        self._client.close()


def open_lhm_source(
    categories: Iterable[HardwareCategory],
    *,
    url: str = DEFAULT_LHM_URL,
    timeout: float = 5.0,
    transport: httpx.BaseTransport | None = None,
) -> LibreHardwareMonitorSource:
    source = LibreHardwareMonitorSource(categories, url=url, timeout=timeout, transport=transport)
    try:
        source.open()
    except Exception:
        source.release()
        raise
    return source
