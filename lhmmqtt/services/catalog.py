"""Sensor catalog: stable records and Home Assistant discovery for one hardware snapshot."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from functools import cached_property
from typing import Dict, Iterator, Optional, Tuple

from lhmmqtt.config import effective_update_interval
from lhmmqtt.device import HostDevice, compute_unique_id
from lhmmqtt.errors import DiscoveryCancelled, DiscoveryFailure, PublishFailure
from lhmmqtt.hardware import HardwareSensor, HardwareSource, HardwareUnit
from lhmmqtt.sensor_kinds import SensorKind, describe, resolve_kind
from lhmmqtt.services.mqtt_publisher import DeliveryGuarantee, Publisher

logger = logging.getLogger(__name__)

DISCOVERY_PREFIX = "homeassistant"
STATE_PREFIX = "lhmmqtt"


def build_discovery_payload(record: "SensorRecord") -> Dict[str, object]:
    descriptor = describe(record.kind)
    payload: Dict[str, object] = {
        "name": record.display_name,
        "state_topic": record.state_topic,
    }
    if descriptor.device_class:
        payload["device_class"] = descriptor.device_class
    payload["unit_of_measurement"] = descriptor.unit
    payload["unique_id"] = record.unique_id
    payload["expire_after"] = record.expire_after
    payload["device"] = record.device.as_payload()
    return payload


@dataclass(eq=False)
class SensorRecord:
    display_name: str
    unique_id: str
    state_topic: str
    sensor_identifier: str
    native_type: str
    kind: Optional[SensorKind]
    device: HostDevice
    expire_after: int

    @property
    def discovery_topic(self) -> str:
        return f"{DISCOVERY_PREFIX}/sensor/{self.device.name}/{self.unique_id}/config"

    @cached_property
    def discovery_payload(self) -> str:
        """JSON config message; built on first access and fixed for the record's lifetime."""

        return json.dumps(build_discovery_payload(self), ensure_ascii=False)

    async def configure(self, publisher: Publisher) -> None:
        logger.info("Configure sensor '%s' (%s)", self.display_name, self.native_type)
        await publisher.publish(
            self.discovery_topic,
            self.discovery_payload,
            DeliveryGuarantee.EXACTLY_ONCE,
            retain=True,
        )


class SensorCatalog:
    """Owns the hardware source of one service run and the records discovered from it."""

    def __init__(
        self,
        source: HardwareSource | None,
        device: HostDevice,
        *,
        update_interval: int | float | None = None,
    ) -> None:
        self._source = source
        self.device = device
        self.update_interval = effective_update_interval(update_interval)
        self._records: Dict[str, SensorRecord] = {}
        self.collisions = 0

    @property
    def expire_after(self) -> int:
        """Seconds of silence before Home Assistant marks a sensor unavailable (three missed updates)."""

        return int(3 * self.update_interval)

    @property
    def source(self) -> HardwareSource | None:
        return self._source

    @property
    def records(self) -> Tuple[SensorRecord, ...]:
        return tuple(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def unique_id_for(self, unit: HardwareUnit, sensor: HardwareSensor) -> str:
        return compute_unique_id(self.device.name, unit.name, sensor.name, sensor.sensor_type)

    def build_record(self, unit: HardwareUnit, sensor: HardwareSensor) -> SensorRecord:
        unique_id = self.unique_id_for(unit, sensor)
        kind = resolve_kind(sensor.sensor_type)
        if kind is None:
            logger.info("Unknown sensor type '%s' for %s %s", sensor.sensor_type, unit.name, sensor.name)
        return SensorRecord(
            display_name=f"{unit.name} {sensor.name}",
            unique_id=unique_id,
            state_topic=f"{STATE_PREFIX}/{unique_id}{sensor.identifier}/state",
            sensor_identifier=sensor.identifier,
            native_type=sensor.sensor_type,
            kind=kind,
            device=self.device,
            expire_after=self.expire_after,
        )

    def _require_source(self) -> HardwareSource:
        if self._source is None:
            raise DiscoveryFailure("no hardware source attached to the catalog")
        return self._source

    async def discover(
        self,
        publisher: Publisher,
        *,
        cancel: asyncio.Event | None = None,
        publish_timeout: float | None = None,
    ) -> Tuple[SensorRecord, ...]:
        """Register every sensor of the enabled hardware and publish its discovery config.

        Records that already exist are reused, so their payloads are never rebuilt.
        Raises DiscoveryCancelled when ``cancel`` is set part way and
        DiscoveryFailure when nothing could be registered.
        """

        source = self._require_source()
        sensors_seen = 0
        for unit in source.hardware_tree():
            for sensor in unit.sensors:
                if cancel is not None and cancel.is_set():
                    raise DiscoveryCancelled("discovery cancelled")
                sensors_seen += 1
                record = self.build_record(unit, sensor)
                existing = self._records.get(record.unique_id)
                if existing is not None and existing.sensor_identifier != sensor.identifier:
                    self.collisions += 1
                    logger.warning(
                        "Sensor '%s' (%s) shares unique id %s with '%s' (%s); keeping the first",
                        record.display_name,
                        sensor.identifier,
                        record.unique_id,
                        existing.display_name,
                        existing.sensor_identifier,
                    )
                    continue
                if existing is None:
                    self._records[record.unique_id] = record
                else:
                    record = existing
                await self._configure(record, publisher, publish_timeout)

        if not self._records:
            if sensors_seen:
                raise DiscoveryFailure(f"none of {sensors_seen} sensors could be registered")
            raise DiscoveryFailure("hardware source reported no sensors for the enabled categories")
        logger.info("Discovery complete: %s sensors for %s", len(self._records), self.device.name)
        return self.records

    async def _configure(self, record: SensorRecord, publisher: Publisher, timeout: float | None) -> None:
        try:
            if timeout is None:
                await record.configure(publisher)
            else:
                await asyncio.wait_for(record.configure(publisher), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise DiscoveryFailure(f"timed out publishing discovery for {record.unique_id}") from exc
        except PublishFailure as exc:
            raise DiscoveryFailure(str(exc)) from exc

    def hardware_tree(self) -> Iterator[HardwareUnit]:
        return self._require_source().hardware_tree()

    def match(self, unit: HardwareUnit, sensor: HardwareSensor) -> Optional[SensorRecord]:
        return self._records.get(self.unique_id_for(unit, sensor))

    def refresh(self) -> None:
        self._require_source().refresh()

    def reinitialize(self, source: HardwareSource, *, update_interval: int | float | None = None) -> None:
        """Swap in a new hardware source; discovery must run again before publishing."""

        previous, self._source = self._source, source
        if update_interval is not None:
            self.update_interval = effective_update_interval(update_interval)
        self._records.clear()
        self.collisions = 0
        if previous is not None and previous is not source:
            previous.release()
        logger.info(
            "Hardware reinitialized (%s)",
            ", ".join(sorted(category.value for category in source.enabled_categories)) or "no categories",
        )

    def release(self) -> None:
        self._records.clear()
        if self._source is not None:
            self._source.release()
