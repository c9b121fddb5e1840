"""Telemetry service: start/stop state machine and the periodic publish loop."""
from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Type

from lhmmqtt.errors import (
    ConnectFailure,
    DiscoveryCancelled,
    HardwareSourceReleased,
    LhmMqttError,
    LoopFatal,
    PublishFailure,
    UnmatchedSensor,
)
from lhmmqtt.observability import generate_run_id, set_run_id
from lhmmqtt.sensor_kinds import format_value
from lhmmqtt.services.catalog import SensorCatalog, SensorRecord
from lhmmqtt.services.mqtt_publisher import DeliveryGuarantee, Publisher

logger = logging.getLogger(__name__)

PublisherFactory = Callable[[], Publisher]


class ServiceState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class ServiceTimings:
    connect_timeout: float = 10.0
    start_confirmation_timeout: float = 5.0
    drain_timeout: float = 10.0
    disconnect_timeout: float = 3.0
    emergency_disconnect_timeout: float = 1.0
    cooldown: float = 5.0
    publish_timeout: float = 5.0


@dataclass
class LoopStats:
    ticks: int = 0
    skipped_ticks: int = 0
    refresh_failures: int = 0
    published: int = 0
    publish_failures: int = 0
    missing_values: int = 0
    unmatched: int = 0
    last_tick_ms: Optional[float] = None
    last_tick_at: Optional[str] = None


class TelemetryService:
    """Owns one publisher and one catalog per run and drives them through
    Stopped -> Starting -> Running -> Stopping -> Stopped.

    Transitions are serialized by a lock; the lock is never held across the
    connect, discovery or drain waits, so ``stop()`` can interrupt a start.
    A catalog handed to ``start()`` belongs to that run and its hardware source
    is released when the run ends, whichever way it ends.
    """

    def __init__(
        self,
        publisher_factory: PublisherFactory,
        *,
        timings: ServiceTimings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._publisher_factory = publisher_factory
        self.timings = timings or ServiceTimings()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._state = ServiceState.STOPPED
        self._cancel: asyncio.Event | None = None
        self._publisher: Publisher | None = None
        self._catalog: SensorCatalog | None = None
        self._startup_task: asyncio.Task | None = None
        self._loop_task: asyncio.Task | None = None
        self._stop_task: asyncio.Task | None = None
        self._cooldown_until: float | None = None
        self.run_id: Optional[str] = None
        self.last_error: Optional[str] = None
        self.runs_started = 0
        self.stats = LoopStats()

    # ------------------------------------------------------------------ state
    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def publisher(self) -> Publisher | None:
        return self._publisher

    @property
    def catalog(self) -> SensorCatalog | None:
        return self._catalog

    def is_running(self) -> bool:
        return self._state is ServiceState.RUNNING

    @property
    def cooldown_remaining(self) -> float:
        if self._cooldown_until is None:
            return 0.0
        return max(0.0, self._cooldown_until - self._clock())

    @property
    def cooling_down(self) -> bool:
        return self.cooldown_remaining > 0

    async def wait_for_cooldown(self) -> None:
        """Block until an in-progress stop has finished and its cooldown elapsed."""

        stop_task = self._stop_task
        if stop_task is not None:
            await asyncio.shield(stop_task)
        remaining = self.cooldown_remaining
        if remaining > 0:
            logger.info("Waiting %.1fs for hardware teardown to settle", remaining)
            await asyncio.sleep(remaining)

    def snapshot(self) -> Dict[str, Any]:
        catalog = self._catalog
        return {
            "state": self._state.value,
            "running": self.is_running(),
            "cooling_down": self.cooling_down,
            "cooldown_remaining_seconds": round(self.cooldown_remaining, 3),
            "run_id": self.run_id,
            "update_interval_seconds": catalog.update_interval if catalog is not None else None,
            "sensors": len(catalog) if catalog is not None else 0,
            "publisher_connected": bool(self._publisher and self._publisher.is_connected()),
            "last_error": self.last_error,
            "runs_started": self.runs_started,
            "stats": asdict(self.stats),
        }

    # -------------------------------------------------------------- lifecycle
    async def start(self, catalog: SensorCatalog) -> bool:
        """Connect, run discovery and enter Running.

        Returns True when the service is running (or already starting/running)
        and False when startup failed or was rejected because a stop or its
        cooldown is still in progress.
        """

        async with self._lock:
            if self._state in (ServiceState.RUNNING, ServiceState.STARTING):
                logger.info("Start ignored: service is already %s", self._state.value)
                return True
            if self._state is ServiceState.STOPPING:
                logger.warning("Start rejected: service is stopping")
                return False
            remaining = self.cooldown_remaining
            if remaining > 0:
                logger.warning("Start rejected: cooling down for another %.1fs", remaining)
                return False

            cancel = asyncio.Event()
            publisher = self._publisher_factory()
            run_id = generate_run_id()
            self._state = ServiceState.STARTING
            self._cancel = cancel
            self._publisher = publisher
            self._catalog = catalog
            self.run_id = run_id
            self.last_error = None
            self.runs_started += 1
            self.stats = LoopStats()
            startup = asyncio.create_task(
                self._startup(run_id, publisher, catalog, cancel),
                name="telemetry-startup",
            )
            self._startup_task = startup
        return await asyncio.shield(startup)

    async def stop(self) -> None:
        """Cancel the current run and tear it down; repeated calls share one shutdown."""

        async with self._lock:
            if self._state is ServiceState.STOPPED:
                logger.debug("Stop ignored: service is not running")
                return
            if self._state is ServiceState.STOPPING and self._stop_task is not None:
                shutdown = self._stop_task
            else:
                logger.info("Stopping telemetry service (was %s)", self._state.value)
                self._state = ServiceState.STOPPING
                if self._cancel is not None:
                    self._cancel.set()
                shutdown = asyncio.create_task(self._shutdown(), name="telemetry-shutdown")
                self._stop_task = shutdown
        await asyncio.shield(shutdown)

    async def _startup(
        self,
        run_id: str,
        publisher: Publisher,
        catalog: SensorCatalog,
        cancel: asyncio.Event,
    ) -> bool:
        set_run_id(run_id)
        logger.info("Starting telemetry service")
        try:
            await self._bounded(publisher.connect(), self.timings.connect_timeout, cancel, ConnectFailure, "connect")
            if not publisher.is_connected():
                raise ConnectFailure("publisher did not report a live connection")
            await self._bounded(
                catalog.discover(publisher, cancel=cancel, publish_timeout=self.timings.publish_timeout),
                None,
                cancel,
                DiscoveryCancelled,
                "discovery",
            )
            async with self._lock:
                if cancel.is_set():
                    raise DiscoveryCancelled("stop requested before the update loop started")
                started = asyncio.Event()
                self._state = ServiceState.RUNNING
                self._loop_task = asyncio.create_task(
                    self._run_loop(publisher, catalog, cancel, started),
                    name="telemetry-loop",
                )
            try:
                await asyncio.wait_for(started.wait(), timeout=self.timings.start_confirmation_timeout)
            except asyncio.TimeoutError as exc:
                raise LhmMqttError(
                    f"update loop did not confirm start within {self.timings.start_confirmation_timeout}s"
                ) from exc
        except Exception as exc:
            self.last_error = f"{type(exc).__name__}: {exc}"
            logger.error("Telemetry service failed to start: %s", exc)
            await self._abort_startup(publisher, catalog, cancel)
            return False

        if self._state is not ServiceState.RUNNING:
            # The loop crashed on its first tick; the crash path already cleaned up.
            return False
        logger.info("Telemetry service running with %s sensors", len(catalog))
        return True

    async def _abort_startup(self, publisher: Publisher, catalog: SensorCatalog, cancel: asyncio.Event) -> None:
        async with self._lock:
            if self._state is ServiceState.STOPPING or self._cancel is not cancel:
                # stop() owns the teardown of this run.
                return
            cancel.set()
            loop_task = self._loop_task
        await self._drain(loop_task, self.timings.drain_timeout)
        await self._disconnect(publisher, self.timings.disconnect_timeout)
        self._release(catalog)
        async with self._lock:
            if self._cancel is cancel:
                self._clear_run()

    async def _shutdown(self) -> None:
        startup = self._startup_task
        publisher = self._publisher
        catalog = self._catalog
        try:
            await self._drain(startup, self.timings.drain_timeout)
            await self._drain(self._loop_task, self.timings.drain_timeout)
            if publisher is not None:
                await self._disconnect(publisher, self.timings.disconnect_timeout)
            if catalog is not None:
                self._release(catalog)
        finally:
            async with self._lock:
                self._clear_run()
                self._cooldown_until = self._clock() + self.timings.cooldown
                self._stop_task = None
            logger.info("Telemetry service stopped; cooling down for %.1fs", self.timings.cooldown)

    async def _crash(self, publisher: Publisher, catalog: SensorCatalog, cancel: asyncio.Event, exc: LoopFatal) -> None:
        async with self._lock:
            if self._state is not ServiceState.RUNNING or self._cancel is not cancel or cancel.is_set():
                return
            self.last_error = f"{type(exc).__name__}: {exc}"
            cancel.set()
            await self._disconnect(publisher, self.timings.emergency_disconnect_timeout)
            self._release(catalog)
            self._clear_run()
        logger.error("Telemetry service stopped after a fatal loop error")

    def _clear_run(self) -> None:
        self._state = ServiceState.STOPPED
        self._cancel = None
        self._publisher = None
        self._catalog = None
        self._startup_task = None
        self._loop_task = None

    # ---------------------------------------------------------------- helpers
    async def _bounded(
        self,
        operation: Awaitable[Any],
        timeout: float | None,
        cancel: asyncio.Event,
        failure: Type[LhmMqttError],
        what: str,
    ) -> Any:
        """Await ``operation`` until it finishes, ``timeout`` expires or ``cancel`` is set."""

        task = asyncio.ensure_future(operation)
        watcher = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({task, watcher}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watcher.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task in done:
            return task.result()
        if watcher in done:
            raise failure(f"{what} cancelled")
        raise failure(f"{what} timed out after {timeout}s")

    async def _drain(self, task: asyncio.Task | None, timeout: float) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            logger.warning("%s did not finish within %.1fs; cancelling it", task.get_name(), timeout)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _disconnect(self, publisher: Publisher, timeout: float) -> None:
        try:
            await asyncio.wait_for(publisher.disconnect(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out disconnecting from the broker after %.1fs", timeout)
        except Exception:
            logger.warning("Error while disconnecting from the broker", exc_info=True)

    def _release(self, catalog: SensorCatalog) -> None:
        try:
            catalog.release()
        except Exception:
            logger.warning("Error releasing hardware source", exc_info=True)

    # ------------------------------------------------------------ update loop
    async def _run_loop(
        self,
        publisher: Publisher,
        catalog: SensorCatalog,
        cancel: asyncio.Event,
        started: asyncio.Event,
    ) -> None:
        started.set()
        logger.info("Update loop started (every %ss)", catalog.update_interval)
        try:
            while not cancel.is_set():
                await self._tick(publisher, catalog, cancel)
                if cancel.is_set():
                    break
                try:
                    await asyncio.wait_for(cancel.wait(), timeout=catalog.update_interval)
                except asyncio.TimeoutError:
                    continue
        except Exception as exc:
            logger.exception("Update loop failed")
            await self._crash(publisher, catalog, cancel, LoopFatal(f"{type(exc).__name__}: {exc}"))
            return
        logger.info("Update loop exited")

    async def _tick(self, publisher: Publisher, catalog: SensorCatalog, cancel: asyncio.Event) -> None:
        started_at = self._clock()
        if not publisher.is_connected() and not await self._reconnect(publisher, cancel):
            self.stats.skipped_ticks += 1
            return

        try:
            await asyncio.to_thread(catalog.refresh)
        except HardwareSourceReleased:
            raise
        except Exception as exc:
            self.stats.refresh_failures += 1
            self.stats.skipped_ticks += 1
            self.last_error = f"{type(exc).__name__}: {exc}"
            logger.warning("Failed to refresh sensor data (%s); skipping this update", exc, exc_info=True)
            return
        if cancel.is_set():
            return

        updates = []
        for unit in catalog.hardware_tree():
            for sensor in unit.sensors:
                record = catalog.match(unit, sensor)
                if record is None:
                    self.stats.unmatched += 1
                    logger.warning(
                        "Skipping sensor '%s %s': %s",
                        unit.name,
                        sensor.name,
                        UnmatchedSensor(catalog.unique_id_for(unit, sensor)),
                    )
                    continue
                if record.sensor_identifier != sensor.identifier:
                    # Shares its id with an earlier sensor; only the first one is published.
                    continue
                value = sensor.value
                if value is None or not math.isfinite(value):
                    self.stats.missing_values += 1
                    continue
                updates.append(self._publish_state(publisher, record, value))

        results = await asyncio.gather(*updates)
        published = sum(1 for ok in results if ok)
        elapsed_ms = (self._clock() - started_at) * 1000.0
        self.stats.ticks += 1
        self.stats.published += published
        self.stats.last_tick_ms = round(elapsed_ms, 3)
        self.stats.last_tick_at = datetime.now(timezone.utc).isoformat()
        logger.info("Published %s/%s sensor values in %.0f ms", published, len(updates), elapsed_ms)

    async def _reconnect(self, publisher: Publisher, cancel: asyncio.Event) -> bool:
        logger.warning("Broker connection lost; reconnecting")
        try:
            await self._bounded(publisher.connect(), self.timings.connect_timeout, cancel, ConnectFailure, "reconnect")
        except ConnectFailure as exc:
            self.last_error = f"ConnectFailure: {exc}"
            logger.warning("Reconnect failed (%s); skipping this update", exc)
            return False
        return publisher.is_connected()

    async def _publish_state(self, publisher: Publisher, record: SensorRecord, value: float) -> bool:
        payload = format_value(record.kind, value)
        try:
            await asyncio.wait_for(
                publisher.publish(record.state_topic, payload, DeliveryGuarantee.AT_LEAST_ONCE),
                timeout=self.timings.publish_timeout,
            )
        except asyncio.TimeoutError:
            failure = PublishFailure(record.state_topic, f"timed out after {self.timings.publish_timeout}s")
        except PublishFailure as exc:
            failure = exc
        except Exception as exc:
            failure = PublishFailure(record.state_topic, f"{type(exc).__name__}: {exc}")
        else:
            logger.debug("Set sensor '%s' to value '%s'", record.display_name, payload)
            return True
        self.stats.publish_failures += 1
        logger.warning("Dropping update for '%s': %s", record.display_name, failure)
        return False
