from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from lhmmqtt.config import get_settings  # noqa: E402
from lhmmqtt.device import HostDevice  # noqa: E402
from lhmmqtt.errors import PublishFailure  # noqa: E402
from lhmmqtt.hardware import HardwareCategory, HardwareSensor, HardwareUnit  # noqa: E402


class FakeHardwareSource:
    """In-memory hardware tree; values can be changed between refreshes."""

    def __init__(self, units: Iterable[HardwareUnit], categories: Iterable[HardwareCategory] = (HardwareCategory.CPU,)):
        self.enabled_categories = frozenset(categories)
        self.units: List[HardwareUnit] = list(units)
        self.refreshes = 0
        self.releases = 0
        self.refresh_error: Optional[BaseException] = None
        self.on_refresh: Optional[Callable[["FakeHardwareSource"], None]] = None

    @property
    def released(self) -> bool:
        return self.releases > 0

    def hardware_tree(self):
        if self.released:
            raise RuntimeError("released")
        return iter([unit for unit in self.units if unit.category in self.enabled_categories])

    def refresh(self) -> None:
        if self.released:
            raise RuntimeError("refresh after release")
        self.refreshes += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        if self.on_refresh is not None:
            self.on_refresh(self)

    def release(self) -> None:
        self.releases += 1


class RecordingPublisher:
    """Publisher double that records every message and can be told to misbehave."""

    def __init__(
        self,
        *,
        connect_delay: float = 0.0,
        connect_error: Optional[BaseException] = None,
        publish_delay: float = 0.0,
        fail_topics: Iterable[str] = (),
        publish_error: Optional[BaseException] = None,
    ) -> None:
        self.connect_delay = connect_delay
        self.connect_error = connect_error
        self.publish_delay = publish_delay
        self.fail_topics = set(fail_topics)
        self.publish_error = publish_error  # raised for fail_topics instead of PublishFailure
        self.connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.messages: List[Tuple[str, str, int, bool]] = []

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    async def publish(self, topic: str, payload: str, guarantee, *, retain: bool = False) -> None:
        if self.publish_delay:
            await asyncio.sleep(self.publish_delay)
        if topic in self.fail_topics:
            raise self.publish_error or PublishFailure(topic, "broker rejected message")
        self.messages.append((topic, payload, int(guarantee), retain))

    def topics(self, suffix: str) -> List[str]:
        return [topic for topic, *_ in self.messages if topic.endswith(suffix)]

    def payload_for(self, topic: str) -> List[str]:
        return [payload for t, payload, *_ in self.messages if t == topic]


def make_cpu_unit(values=(42.567, 12.0, 3600.0)) -> HardwareUnit:
    temperature, load, clock = values
    return HardwareUnit(
        name="AMD Ryzen 7 5800X",
        category=HardwareCategory.CPU,
        identifier="/amdcpu/0",
        sensors=[
            HardwareSensor("Core (Tctl/Tdie)", "Temperature", "/amdcpu/0/temperature/2", temperature),
            HardwareSensor("CPU Total", "Load", "/amdcpu/0/load/0", load),
            HardwareSensor("Core #1", "Clock", "/amdcpu/0/clock/1", clock),
        ],
    )


@pytest.fixture
def device() -> HostDevice:
    return HostDevice(name="testbox", identifier="testbox", model="Linux 6.1 (x86_64)")


@pytest.fixture
def cpu_source() -> FakeHardwareSource:
    return FakeHardwareSource([make_cpu_unit()])


@pytest.fixture
def publishers():
    """Factory producing RecordingPublisher instances; the list collects every one created."""

    created: List[RecordingPublisher] = []
    options: dict = {}

    def factory() -> RecordingPublisher:
        publisher = RecordingPublisher(**options)
        created.append(publisher)
        return publisher

    factory.created = created  # type: ignore[attr-defined]
    factory.options = options  # type: ignore[attr-defined]
    return factory


@pytest.fixture(autouse=True)
def reset_settings_env(monkeypatch, tmp_path):
    monkeypatch.setenv("LHMMQTT_CONFIG_PATH", str(tmp_path / "lhmmqtt.json"))
    monkeypatch.setenv("LHMMQTT_AUTOSTART", "false")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
