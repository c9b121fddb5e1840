from __future__ import annotations

import asyncio
import json

import pytest

from conftest import FakeHardwareSource, RecordingPublisher, make_cpu_unit
from lhmmqtt.errors import DiscoveryCancelled, DiscoveryFailure
from lhmmqtt.hardware import HardwareCategory, HardwareSensor, HardwareUnit
from lhmmqtt.services import catalog as catalog_module
from lhmmqtt.services.catalog import SensorCatalog
from lhmmqtt.services.mqtt_publisher import DeliveryGuarantee


def _discover(catalog: SensorCatalog, publisher: RecordingPublisher, **kwargs):
    async def runner():
        return await catalog.discover(publisher, **kwargs)

    return asyncio.run(runner())


def test_discovery_publishes_one_config_per_sensor(cpu_source, device):
    catalog = SensorCatalog(cpu_source, device, update_interval=10)
    publisher = RecordingPublisher()

    records = _discover(catalog, publisher)

    assert len(records) == 3
    config_topics = publisher.topics("/config")
    assert config_topics == [
        "homeassistant/sensor/testbox/testbox_AMDRyzen75800X_CoreTctlTdie_Temperature/config",
        "homeassistant/sensor/testbox/testbox_AMDRyzen75800X_CPUTotal_Load/config",
        "homeassistant/sensor/testbox/testbox_AMDRyzen75800X_Core1_Clock/config",
    ]
    for _topic, _payload, qos, retain in publisher.messages:
        assert qos == DeliveryGuarantee.EXACTLY_ONCE
        assert retain is True


def test_discovery_payload_shape(cpu_source, device):
    catalog = SensorCatalog(cpu_source, device, update_interval=10)
    publisher = RecordingPublisher()
    _discover(catalog, publisher)

    temperature = json.loads(publisher.messages[0][1])
    assert list(temperature) == [
        "name",
        "state_topic",
        "device_class",
        "unit_of_measurement",
        "unique_id",
        "expire_after",
        "device",
    ]
    assert temperature["name"] == "AMD Ryzen 7 5800X Core (Tctl/Tdie)"
    assert temperature["state_topic"] == (
        "lhmmqtt/testbox_AMDRyzen75800X_CoreTctlTdie_Temperature/amdcpu/0/temperature/2/state"
    )
    assert temperature["device_class"] == "temperature"
    assert temperature["unit_of_measurement"] == "°C"
    assert temperature["expire_after"] == 30
    assert temperature["device"] == {
        "name": "testbox",
        "identifiers": ["testbox"],
        "model": "Linux 6.1 (x86_64)",
        "manufacturer": "LHMMQTT",
    }

    load = json.loads(publisher.messages[1][1])
    assert "device_class" not in load
    assert load["unit_of_measurement"] == "%"


def test_non_positive_interval_uses_default_expiry(cpu_source, device):
    assert SensorCatalog(cpu_source, device, update_interval=0).expire_after == 30
    assert SensorCatalog(cpu_source, device, update_interval=-5).expire_after == 30
    assert SensorCatalog(cpu_source, device, update_interval=2).expire_after == 6


def test_discovery_payload_is_built_once(cpu_source, device, monkeypatch):
    calls = []
    original = catalog_module.build_discovery_payload

    def counting(record):
        calls.append(record.unique_id)
        return original(record)

    monkeypatch.setattr(catalog_module, "build_discovery_payload", counting)
    catalog = SensorCatalog(cpu_source, device)
    publisher = RecordingPublisher()

    _discover(catalog, publisher)
    _discover(catalog, publisher)
    record = catalog.records[0]
    asyncio.run(record.configure(publisher))

    assert len(calls) == 3
    assert len(publisher.topics("/config")) == 7
    assert record.discovery_payload is record.discovery_payload


def test_unknown_sensor_type_is_registered_without_class(device):
    unit = HardwareUnit(
        name="Board",
        category=HardwareCategory.MOTHERBOARD,
        identifier="/lpc/0",
        sensors=[HardwareSensor("Radiation", "Geiger", "/lpc/0/geiger/0", 3.0)],
    )
    source = FakeHardwareSource([unit], categories=[HardwareCategory.MOTHERBOARD])
    catalog = SensorCatalog(source, device)
    publisher = RecordingPublisher()

    records = _discover(catalog, publisher)

    assert records[0].kind is None
    assert records[0].unique_id == "testbox_Board_Radiation_Geiger"
    payload = json.loads(records[0].discovery_payload)
    assert "device_class" not in payload
    assert payload["unit_of_measurement"] == ""


def test_empty_hardware_tree_is_a_discovery_failure(device):
    catalog = SensorCatalog(FakeHardwareSource([], categories=[]), device)
    with pytest.raises(DiscoveryFailure):
        _discover(catalog, RecordingPublisher())


def test_missing_source_is_a_discovery_failure(device):
    catalog = SensorCatalog(None, device)
    with pytest.raises(DiscoveryFailure):
        _discover(catalog, RecordingPublisher())


def test_cancelled_discovery_stops_publishing(cpu_source, device):
    catalog = SensorCatalog(cpu_source, device)
    publisher = RecordingPublisher()
    cancel = asyncio.Event()

    async def runner():
        cancel.set()
        await catalog.discover(publisher, cancel=cancel)

    with pytest.raises(DiscoveryCancelled):
        asyncio.run(runner())
    assert publisher.messages == []


def test_failed_config_publish_aborts_discovery(cpu_source, device):
    catalog = SensorCatalog(cpu_source, device)
    publisher = RecordingPublisher(
        fail_topics={"homeassistant/sensor/testbox/testbox_AMDRyzen75800X_CPUTotal_Load/config"}
    )
    with pytest.raises(DiscoveryFailure):
        _discover(catalog, publisher)


def test_colliding_units_share_one_record(device):
    first = HardwareUnit(
        name="Disk-1",
        category=HardwareCategory.STORAGE,
        identifier="/hdd/0",
        sensors=[HardwareSensor("Temperature", "Temperature", "/hdd/0/temperature/0", 35.0)],
    )
    second = HardwareUnit(
        name="Disk 1",
        category=HardwareCategory.STORAGE,
        identifier="/hdd/1",
        sensors=[HardwareSensor("Temperature", "Temperature", "/hdd/1/temperature/0", 41.0)],
    )
    source = FakeHardwareSource([first, second], categories=[HardwareCategory.STORAGE])
    catalog = SensorCatalog(source, device)
    publisher = RecordingPublisher()

    records = _discover(catalog, publisher)

    assert len(records) == 1
    assert catalog.collisions == 1
    assert records[0].sensor_identifier == "/hdd/0/temperature/0"
    assert catalog.match(second, second.sensors[0]) is records[0]
    assert len(publisher.topics("/config")) == 1


def test_reinitialize_clears_records_and_releases_previous_source(cpu_source, device):
    catalog = SensorCatalog(cpu_source, device, update_interval=10)
    _discover(catalog, RecordingPublisher())
    replacement = FakeHardwareSource([make_cpu_unit()])

    catalog.reinitialize(replacement, update_interval=4)

    assert len(catalog) == 0
    assert cpu_source.releases == 1
    assert catalog.source is replacement
    assert catalog.expire_after == 12
    records = _discover(catalog, RecordingPublisher())
    assert records[0].expire_after == 12


def test_release_drops_records(cpu_source, device):
    catalog = SensorCatalog(cpu_source, device)
    _discover(catalog, RecordingPublisher())
    catalog.release()
    assert len(catalog) == 0
    assert cpu_source.released
