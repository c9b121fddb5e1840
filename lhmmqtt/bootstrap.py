from __future__ import annotations

import logging

from lhmmqtt.config import Settings
from lhmmqtt.device import HostDevice
from lhmmqtt.hardware import HardwareSource, open_lhm_source, open_psutil_source
from lhmmqtt.services.catalog import SensorCatalog
from lhmmqtt.services.mqtt_publisher import MqttPublisher
from lhmmqtt.services.telemetry import PublisherFactory, TelemetryService

logger = logging.getLogger(__name__)


def open_hardware_source(settings: Settings) -> HardwareSource:
    """Open the configured backend limited to the enabled sensor categories."""

    categories = settings.sensors.enabled()
    if not categories:
        logger.warning("No sensor categories are enabled; discovery will find nothing")
    if settings.hardware_backend == "librehardwaremonitor":
        return open_lhm_source(categories, url=settings.lhm_url, timeout=settings.lhm_timeout_seconds)
    return open_psutil_source(categories)


def publisher_factory(settings: Settings, device: HostDevice) -> PublisherFactory:
    def factory() -> MqttPublisher:
        password = settings.mqtt.password.get_secret_value() if settings.mqtt.password else None
        return MqttPublisher(
            settings.mqtt.hostname,
            settings.mqtt.port,
            username=settings.mqtt.username,
            password=password,
            identifier=f"lhmmqtt-{device.name}",
        )

    return factory


def build_catalog(settings: Settings, device: HostDevice) -> SensorCatalog:
    """Catalog without a hardware source; one is attached on each start."""

    return SensorCatalog(None, device, update_interval=settings.updates.delay)


def build_service(settings: Settings, device: HostDevice) -> TelemetryService:
    return TelemetryService(publisher_factory(settings, device))
