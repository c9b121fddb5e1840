"""Exception types raised by the telemetry service and its collaborators."""
from __future__ import annotations


class LhmMqttError(Exception):
    """Base class for all service errors."""


class ConnectFailure(LhmMqttError):
    """The publisher could not reach the broker (timeout or transport error)."""


class DiscoveryFailure(LhmMqttError):
    """Discovery produced no sensors or could not publish them."""


class DiscoveryCancelled(DiscoveryFailure):
    """Discovery observed the cancellation signal before finishing."""


class PublishFailure(LhmMqttError):
    """A single publish failed or timed out."""

    def __init__(self, topic: str, reason: str) -> None:
        super().__init__(f"publish to {topic} failed: {reason}")
        self.topic = topic
        self.reason = reason


class UnmatchedSensor(LhmMqttError):
    """A live sensor has no record in the catalog."""

    def __init__(self, unique_id: str) -> None:
        super().__init__(f"no catalog record for {unique_id}")
        self.unique_id = unique_id


class LoopFatal(LhmMqttError):
    """Unhandled error inside the update loop; the run is abandoned."""


class HardwareSourceReleased(LhmMqttError, RuntimeError):
    """The hardware source was used after release()."""
