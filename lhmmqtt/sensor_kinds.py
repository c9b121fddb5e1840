"""Sensor kinds and the static unit/classification/format table used for discovery."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional


class ValueFormat(Enum):
    """Numeric rendering rule for a state payload."""

    INTEGER = 0
    FIXED_2 = 2

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.value)


class SensorKind(str, Enum):
    VOLTAGE = "Voltage"
    CURRENT = "Current"
    POWER = "Power"
    CLOCK = "Clock"
    TEMPERATURE = "Temperature"
    LOAD = "Load"
    FREQUENCY = "Frequency"
    FAN = "Fan"
    FLOW = "Flow"
    CONTROL = "Control"
    LEVEL = "Level"
    FACTOR = "Factor"
    DATA = "Data"
    SMALL_DATA = "SmallData"
    THROUGHPUT = "Throughput"
    TIME_SPAN = "TimeSpan"
    ENERGY = "Energy"
    NOISE = "Noise"
    CONDUCTIVITY = "Conductivity"
    HUMIDITY = "Humidity"


@dataclass(frozen=True)
class SensorDescriptor:
    unit: str = ""
    device_class: str = ""
    value_format: ValueFormat = ValueFormat.INTEGER


DEFAULT_DESCRIPTOR = SensorDescriptor()

DESCRIPTORS: dict[SensorKind, SensorDescriptor] = {
    SensorKind.VOLTAGE: SensorDescriptor("V", "voltage", ValueFormat.FIXED_2),
    SensorKind.CURRENT: SensorDescriptor("A", "current", ValueFormat.FIXED_2),
    SensorKind.POWER: SensorDescriptor("W", "power", ValueFormat.FIXED_2),
    SensorKind.CLOCK: SensorDescriptor("MHz", "frequency"),
    SensorKind.TEMPERATURE: SensorDescriptor("°C", "temperature", ValueFormat.FIXED_2),
    SensorKind.LOAD: SensorDescriptor("%"),
    SensorKind.FREQUENCY: SensorDescriptor("MHz", "frequency"),
    SensorKind.FAN: SensorDescriptor("RPM", "speed"),
    SensorKind.FLOW: SensorDescriptor("L/min", "volume_flow_rate"),
    SensorKind.CONTROL: SensorDescriptor(),
    SensorKind.LEVEL: SensorDescriptor(),
    SensorKind.FACTOR: SensorDescriptor(),
    SensorKind.DATA: SensorDescriptor("GB", "data_size"),
    SensorKind.SMALL_DATA: SensorDescriptor("MB", "data_size"),
    SensorKind.THROUGHPUT: SensorDescriptor("bps"),
    SensorKind.TIME_SPAN: SensorDescriptor("s"),
    SensorKind.ENERGY: SensorDescriptor("Wh", "energy"),
    SensorKind.NOISE: SensorDescriptor("dB", "sound_pressure"),
    SensorKind.CONDUCTIVITY: SensorDescriptor("S/m"),
    SensorKind.HUMIDITY: SensorDescriptor("%", "moisture"),
}

_KINDS_BY_NAME = {kind.value.lower(): kind for kind in SensorKind}


def resolve_kind(native_type: str | None) -> Optional[SensorKind]:
    """Match a hardware source's sensor type name against the known kinds (case-insensitive)."""

    if not native_type:
        return None
    return _KINDS_BY_NAME.get(native_type.strip().lower())


def describe(kind: SensorKind | None) -> SensorDescriptor:
    if kind is None:
        return DEFAULT_DESCRIPTOR
    return DESCRIPTORS.get(kind, DEFAULT_DESCRIPTOR)


def format_value(kind: SensorKind | None, value: float) -> str:
    """Render a reading for the state topic.

    Midpoints round away from zero on the exact binary value, so 2.5 renders as
    "3" and 42.567 as "42.57". Negative zero is rendered without a sign.
    """

    rule = describe(kind).value_format
    quantized = Decimal(value).quantize(rule.quantum, rounding=ROUND_HALF_UP)
    if quantized.is_zero():
        quantized = abs(quantized)
    return format(quantized, "f")
