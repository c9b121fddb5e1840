"""Local hardware readings gathered through psutil."""
from __future__ import annotations

import logging
import platform
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import psutil

from lhmmqtt.device import sanitize
from lhmmqtt.hardware.source import HardwareCategory, HardwareSensor, HardwareUnit, SnapshotHardwareSource

logger = logging.getLogger(__name__)

GIB = 1024.0**3

CPU_TEMPERATURE_CHIPS = {"coretemp", "k10temp", "zenpower", "cpu_thermal", "cpu-thermal"}
GPU_TEMPERATURE_CHIPS = {"amdgpu", "nouveau", "radeon", "i915"}
STORAGE_TEMPERATURE_CHIPS = {"nvme", "drivetemp"}


def _read_text(path: str) -> Optional[str]:
    try:
        return Path(path).read_text().strip() or None
    except OSError:
        return None


def _cpu_name() -> str:
    cpuinfo = _read_text("/proc/cpuinfo")
    if cpuinfo:
        for line in cpuinfo.splitlines():
            if line.lower().startswith("model name") and ":" in line:
                return line.split(":", 1)[1].strip()
    return platform.processor() or "CPU"


def _board_name() -> str:
    vendor = _read_text("/sys/class/dmi/id/board_vendor")
    board = _read_text("/sys/class/dmi/id/board_name")
    name = " ".join(part for part in (vendor, board) if part)
    return name or "Motherboard"


def _optional(reader: Callable[[], object], default):
    """psutil sensor helpers are platform dependent; treat absence or failure as no data."""

    try:
        result = reader()
    except (AttributeError, NotImplementedError, OSError, RuntimeError):
        return default
    return default if result is None else result


class PsutilHardwareSource(SnapshotHardwareSource):
    """Hardware source for the machine this process runs on.

    Throughput sensors are derived from counter deltas between refreshes, so
    their first reading after open is missing.
    """

    backend = "psutil"

    def __init__(self, categories: Iterable[HardwareCategory]) -> None:
        super().__init__(categories)
        self._counters: Dict[str, Tuple[float, float]] = {}
        self._cpu_name = _cpu_name()
        self._board_name = _board_name()
        # Prime the non-blocking CPU percent counters.
        psutil.cpu_percent(interval=None)
        psutil.cpu_percent(interval=None, percpu=True)

    def _rate(self, key: str, total: float, now: float) -> Optional[float]:
        previous = self._counters.get(key)
        self._counters[key] = (now, total)
        if previous is None:
            return None
        elapsed = now - previous[0]
        if elapsed <= 0 or total < previous[1]:
            return None
        return (total - previous[1]) / elapsed

    def _collect(self) -> List[HardwareUnit]:
        now = time.monotonic()
        wanted = self.enabled_categories
        temperatures: Dict[str, list] = {}
        if wanted & {HardwareCategory.CPU, HardwareCategory.GPU, HardwareCategory.MOTHERBOARD, HardwareCategory.STORAGE}:
            temperatures = _optional(lambda: psutil.sensors_temperatures(), {})

        units: List[HardwareUnit] = []
        if HardwareCategory.CPU in wanted:
            units.append(self._cpu_unit(temperatures))
        if HardwareCategory.GPU in wanted:
            units.extend(self._gpu_units(temperatures))
        if HardwareCategory.MEMORY in wanted:
            units.append(self._memory_unit())
        if HardwareCategory.MOTHERBOARD in wanted:
            units.append(self._motherboard_unit(temperatures))
        if HardwareCategory.CONTROLLER in wanted:
            battery = self._battery_unit()
            if battery is not None:
                units.append(battery)
        if HardwareCategory.NETWORKING in wanted:
            units.extend(self._network_units(now))
        if HardwareCategory.STORAGE in wanted:
            units.extend(self._storage_units(now, temperatures))
        return units

    def _cpu_unit(self, temperatures: Dict[str, list]) -> HardwareUnit:
        unit = HardwareUnit(name=self._cpu_name, category=HardwareCategory.CPU, identifier="/cpu/0")
        unit.sensors.append(
            HardwareSensor("CPU Total", "Load", "/cpu/0/load/0", float(psutil.cpu_percent(interval=None)))
        )
        for index, percent in enumerate(psutil.cpu_percent(interval=None, percpu=True), start=1):
            unit.sensors.append(HardwareSensor(f"CPU Core #{index}", "Load", f"/cpu/0/load/{index}", float(percent)))
        freq = _optional(lambda: psutil.cpu_freq(), None)
        unit.sensors.append(
            HardwareSensor("Core Clock", "Clock", "/cpu/0/clock/0", float(freq.current) if freq else None)
        )
        index = 0
        for chip, entries in temperatures.items():
            if chip not in CPU_TEMPERATURE_CHIPS:
                continue
            for entry in entries:
                label = entry.label or f"{chip} #{index + 1}"
                unit.sensors.append(
                    HardwareSensor(label, "Temperature", f"/cpu/0/temperature/{index}", float(entry.current))
                )
                index += 1
        return unit

    def _gpu_units(self, temperatures: Dict[str, list]) -> List[HardwareUnit]:
        units: List[HardwareUnit] = []
        for chip, entries in temperatures.items():
            if chip not in GPU_TEMPERATURE_CHIPS:
                continue
            identifier = f"/gpu-{chip}/0"
            unit = HardwareUnit(name=f"GPU {chip}", category=HardwareCategory.GPU, identifier=identifier)
            for index, entry in enumerate(entries):
                label = entry.label or "GPU Core"
                unit.sensors.append(
                    HardwareSensor(label, "Temperature", f"{identifier}/temperature/{index}", float(entry.current))
                )
            units.append(unit)
        return units

    def _memory_unit(self) -> HardwareUnit:
        memory = psutil.virtual_memory()
        swap = _optional(lambda: psutil.swap_memory(), None)
        unit = HardwareUnit(name="Generic Memory", category=HardwareCategory.MEMORY, identifier="/ram")
        unit.sensors.extend(
            [
                HardwareSensor("Memory", "Load", "/ram/load/0", float(memory.percent)),
                HardwareSensor("Memory Used", "Data", "/ram/data/0", (memory.total - memory.available) / GIB),
                HardwareSensor("Memory Available", "Data", "/ram/data/1", memory.available / GIB),
                HardwareSensor("Virtual Memory", "Load", "/ram/load/1", float(swap.percent) if swap else None),
            ]
        )
        return unit

    def _motherboard_unit(self, temperatures: Dict[str, list]) -> HardwareUnit:
        unit = HardwareUnit(name=self._board_name, category=HardwareCategory.MOTHERBOARD, identifier="/motherboard")
        claimed = CPU_TEMPERATURE_CHIPS | GPU_TEMPERATURE_CHIPS | STORAGE_TEMPERATURE_CHIPS
        index = 0
        for chip, entries in temperatures.items():
            if chip in claimed:
                continue
            for entry in entries:
                label = entry.label or f"{chip} #{index + 1}"
                unit.sensors.append(
                    HardwareSensor(label, "Temperature", f"/motherboard/temperature/{index}", float(entry.current))
                )
                index += 1
        fans = _optional(lambda: psutil.sensors_fans(), {})
        index = 0
        for chip, entries in fans.items():
            for entry in entries:
                label = entry.label or f"Fan #{index + 1}"
                unit.sensors.append(HardwareSensor(label, "Fan", f"/motherboard/fan/{index}", float(entry.current)))
                index += 1
        return unit

    def _battery_unit(self) -> Optional[HardwareUnit]:
        battery = _optional(lambda: psutil.sensors_battery(), None)
        if battery is None:
            return None
        remaining: Optional[float] = None
        if isinstance(battery.secsleft, (int, float)) and battery.secsleft >= 0:
            remaining = float(battery.secsleft)
        unit = HardwareUnit(name="Battery", category=HardwareCategory.CONTROLLER, identifier="/battery/0")
        unit.sensors.extend(
            [
                HardwareSensor("Charge Level", "Level", "/battery/0/level/0", float(battery.percent)),
                HardwareSensor("Remaining Time", "TimeSpan", "/battery/0/timespan/0", remaining),
            ]
        )
        return unit

    def _network_units(self, now: float) -> List[HardwareUnit]:
        units: List[HardwareUnit] = []
        counters = _optional(lambda: psutil.net_io_counters(pernic=True), {})
        for nic, stats in sorted(counters.items()):
            if nic == "lo" or nic.lower().startswith("loopback"):
                continue
            identifier = f"/nic/{sanitize(nic)}"
            unit = HardwareUnit(name=nic, category=HardwareCategory.NETWORKING, identifier=identifier)
            unit.sensors.extend(
                [
                    HardwareSensor("Data Uploaded", "Data", f"{identifier}/data/0", stats.bytes_sent / GIB),
                    HardwareSensor("Data Downloaded", "Data", f"{identifier}/data/1", stats.bytes_recv / GIB),
                    HardwareSensor(
                        "Upload Speed",
                        "Throughput",
                        f"{identifier}/throughput/0",
                        self._rate(f"{identifier}/tx", float(stats.bytes_sent), now),
                    ),
                    HardwareSensor(
                        "Download Speed",
                        "Throughput",
                        f"{identifier}/throughput/1",
                        self._rate(f"{identifier}/rx", float(stats.bytes_recv), now),
                    ),
                ]
            )
            units.append(unit)
        return units

    def _storage_units(self, now: float, temperatures: Dict[str, list]) -> List[HardwareUnit]:
        units: List[HardwareUnit] = []
        seen_devices: set[str] = set()
        for partition in _optional(lambda: psutil.disk_partitions(all=False), []):
            if partition.device in seen_devices:
                continue
            seen_devices.add(partition.device)
            try:
                usage = psutil.disk_usage(partition.mountpoint)
            except OSError:
                logger.debug("Skipping unreadable mount %s", partition.mountpoint)
                continue
            identifier = f"/storage/{sanitize(partition.device)}"
            unit = HardwareUnit(
                name=f"{partition.device} ({partition.mountpoint})",
                category=HardwareCategory.STORAGE,
                identifier=identifier,
            )
            unit.sensors.extend(
                [
                    HardwareSensor("Used Space", "Load", f"{identifier}/load/0", float(usage.percent)),
                    HardwareSensor("Free Space", "Data", f"{identifier}/data/0", usage.free / GIB),
                ]
            )
            units.append(unit)

        disks = _optional(lambda: psutil.disk_io_counters(perdisk=True), {})
        for disk, stats in sorted(disks.items()):
            identifier = f"/hdd/{sanitize(disk)}"
            unit = HardwareUnit(name=disk, category=HardwareCategory.STORAGE, identifier=identifier)
            unit.sensors.extend(
                [
                    HardwareSensor(
                        "Read Rate",
                        "Throughput",
                        f"{identifier}/throughput/0",
                        self._rate(f"{identifier}/read", float(stats.read_bytes), now),
                    ),
                    HardwareSensor(
                        "Write Rate",
                        "Throughput",
                        f"{identifier}/throughput/1",
                        self._rate(f"{identifier}/write", float(stats.write_bytes), now),
                    ),
                ]
            )
            units.append(unit)

        index = 0
        for chip, entries in temperatures.items():
            if chip not in STORAGE_TEMPERATURE_CHIPS:
                continue
            for entry in entries:
                identifier = f"/{chip}/{index}"
                label = entry.label or "Temperature"
                units.append(
                    HardwareUnit(
                        name=f"{chip} {index}",
                        category=HardwareCategory.STORAGE,
                        identifier=identifier,
                        sensors=[HardwareSensor(label, "Temperature", f"{identifier}/temperature/0", float(entry.current))],
                    )
                )
                index += 1
        return units


def open_psutil_source(categories: Iterable[HardwareCategory]) -> PsutilHardwareSource:
    source = PsutilHardwareSource(categories)
    source.open()
    return source
