from __future__ import annotations

import asyncio
import importlib
import json
import time
from contextlib import contextmanager
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from conftest import FakeHardwareSource, RecordingPublisher, make_cpu_unit
from lhmmqtt import bootstrap
from lhmmqtt.config import get_settings
from lhmmqtt.errors import ConnectFailure
from lhmmqtt.services.config_store import REDACTED
from lhmmqtt.services.telemetry import ServiceTimings, TelemetryService


class _Harness:
    """Swaps the hardware and broker edges of the app for in-memory doubles."""

    def __init__(self) -> None:
        self.now = [1000.0]
        self.publishers: List[RecordingPublisher] = []
        self.publisher_options: dict = {}
        self.sources: List[FakeHardwareSource] = []
        self.open_error: Optional[BaseException] = None
        self.opened_on_event_loop: List[bool] = []
        self.client: TestClient | None = None

    def publisher(self) -> RecordingPublisher:
        publisher = RecordingPublisher(**self.publisher_options)
        self.publishers.append(publisher)
        return publisher

    def open_source(self, settings) -> FakeHardwareSource:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.opened_on_event_loop.append(False)
        else:
            self.opened_on_event_loop.append(True)
        if self.open_error is not None:
            raise self.open_error
        source = FakeHardwareSource([make_cpu_unit()], categories=settings.sensors.enabled())
        self.sources.append(source)
        return source

    def build_service(self, settings, device) -> TelemetryService:
        timings = ServiceTimings(
            connect_timeout=0.5,
            start_confirmation_timeout=1.0,
            drain_timeout=1.0,
            disconnect_timeout=0.5,
            emergency_disconnect_timeout=0.1,
            cooldown=5.0,
            publish_timeout=0.5,
        )
        return TelemetryService(self.publisher, timings=timings, clock=lambda: self.now[0])


@contextmanager
def _serve(monkeypatch, *, autostart: bool = False):
    monkeypatch.setenv("LHMMQTT_DEVICE_NAME", "testbox")
    monkeypatch.setenv("LHMMQTT_SENSORS__CPU", "true")
    monkeypatch.setenv("LHMMQTT_API_TOKEN", "test-token")
    monkeypatch.setenv("LHMMQTT_AUTOSTART", "true" if autostart else "false")
    get_settings.cache_clear()

    harness = _Harness()
    monkeypatch.setattr(bootstrap, "open_hardware_source", harness.open_source)
    monkeypatch.setattr(bootstrap, "build_service", harness.build_service)

    import lhmmqtt.main as main_module

    importlib.reload(main_module)
    with TestClient(main_module.app) as client:
        harness.client = client
        try:
            yield harness
        finally:
            client.post("/v1/service/stop", headers=_auth())
            # Let the shutdown skip the cooldown wait.
            harness.now[0] += 3600


@pytest.fixture
def api(monkeypatch):
    with _serve(monkeypatch) as harness:
        yield harness


def _auth() -> dict:
    return {"Authorization": "Bearer test-token"}


def test_healthz_endpoint(api):
    resp = api.client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_status_endpoint_reports_stopped_service(api):
    resp = api.client.get("/v1/status")
    assert resp.status_code == 200
    body = resp.json()
    assert body["device"]["name"] == "testbox"
    assert body["categories"] == ["cpu"]
    assert body["hardware_backend"] == "psutil"
    assert body["broker"] == "localhost:1883"
    assert "uptime_seconds" in body
    assert body["service"]["state"] == "stopped"
    assert body["service"]["running"] is False


def test_control_endpoints_require_token(api):
    assert api.client.post("/v1/service/start").status_code == 401
    assert api.client.get("/v1/config").status_code == 401
    resp = api.client.post("/v1/service/start", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 403
    assert api.publishers == []


def test_start_and_stop_service(api):
    resp = api.client.post("/v1/service/start", headers=_auth())
    assert resp.status_code == 200
    body = resp.json()
    assert body["started"] is True
    assert body["state"] == "running"
    assert body["run_id"]

    publisher = api.publishers[0]
    assert len(publisher.topics("/config")) == 3
    status = api.client.get("/v1/status").json()["service"]
    assert status["running"] is True
    assert status["sensors"] == 3
    assert status["run_id"] == body["run_id"]

    again = api.client.post("/v1/service/start", headers=_auth())
    assert again.status_code == 200
    assert len(api.publishers) == 1

    stopped = api.client.post("/v1/service/stop", headers=_auth())
    assert stopped.status_code == 200
    assert stopped.json() == {"stopped": True, "state": "stopped", "cooldown_remaining_seconds": 5.0}
    assert publisher.disconnect_calls == 1
    assert api.sources[0].released


def test_hardware_source_is_opened_off_the_event_loop(api):
    assert api.client.post("/v1/service/start", headers=_auth()).status_code == 200
    assert api.opened_on_event_loop == [False]


def test_start_during_cooldown_conflicts(api):
    assert api.client.post("/v1/service/start", headers=_auth()).status_code == 200
    assert api.client.post("/v1/service/stop", headers=_auth()).status_code == 200

    resp = api.client.post("/v1/service/start", headers=_auth())
    assert resp.status_code == 409
    detail = resp.json()["detail"]
    assert detail["state"] == "stopped"
    assert detail["cooldown_remaining_seconds"] == 5.0
    assert len(api.publishers) == 1

    api.now[0] += 6
    assert api.client.post("/v1/service/start", headers=_auth()).status_code == 200
    assert len(api.publishers) == 2
    assert len(api.sources) == 2


def test_start_failure_returns_503(api):
    api.publisher_options["connect_error"] = ConnectFailure("connection refused")

    resp = api.client.post("/v1/service/start", headers=_auth())

    assert resp.status_code == 503
    assert "connection refused" in resp.json()["detail"]["last_error"]
    status = api.client.get("/v1/status").json()["service"]
    assert status["state"] == "stopped"
    assert status["cooling_down"] is False
    assert api.sources[0].released


def test_hardware_open_failure_returns_503(api):
    api.open_error = RuntimeError("sensor driver missing")

    resp = api.client.post("/v1/service/start", headers=_auth())

    assert resp.status_code == 503
    assert "sensor driver missing" in resp.json()["detail"]["last_error"]
    assert api.publishers == []


def test_config_get_and_put(api, tmp_path):
    resp = api.client.get("/v1/config", headers=_auth())
    assert resp.status_code == 200
    assert resp.json()["mqtt"]["hostname"] == "localhost"
    assert resp.json()["sensors"]["cpu"] is True

    payload = {"mqtt": {"hostname": "broker.lan", "password": "s3cret"}, "updates": {"delay": 5}}
    resp = api.client.put("/v1/config", json=payload, headers=_auth())
    assert resp.status_code == 200
    body = resp.json()
    assert body["mqtt"]["hostname"] == "broker.lan"
    assert body["mqtt"]["password"] == REDACTED
    assert body["updates"]["delay"] == 5

    on_disk = json.loads((tmp_path / "lhmmqtt.json").read_text(encoding="utf-8"))
    assert on_disk["mqtt"]["password"] == "s3cret"

    assert api.client.post("/v1/service/start", headers=_auth()).status_code == 200
    status = api.client.get("/v1/status").json()
    assert status["broker"] == "broker.lan:1883"
    assert status["service"]["update_interval_seconds"] == 5


def test_put_config_rejects_invalid_port(api):
    resp = api.client.put("/v1/config", json={"mqtt": {"port": 70000}}, headers=_auth())
    assert resp.status_code == 422
    assert api.client.get("/v1/config", headers=_auth()).json()["mqtt"]["port"] == 1883


def test_persisted_config_is_loaded_on_startup(monkeypatch, tmp_path):
    (tmp_path / "lhmmqtt.json").write_text(
        json.dumps({"mqtt": {"hostname": "saved.lan", "port": 1884}, "updates": {"delay": 7}}),
        encoding="utf-8",
    )
    with _serve(monkeypatch) as harness:
        body = harness.client.get("/v1/config", headers=_auth()).json()
        assert body["mqtt"]["hostname"] == "saved.lan"
        assert body["mqtt"]["port"] == 1884
        assert body["updates"]["delay"] == 7


def test_autostart_starts_service(monkeypatch):
    with _serve(monkeypatch, autostart=True) as harness:
        deadline = time.monotonic() + 3.0
        state = None
        while time.monotonic() < deadline:
            state = harness.client.get("/v1/status").json()["service"]["state"]
            if state == "running":
                break
            time.sleep(0.02)
        assert state == "running"
        assert len(harness.publishers) == 1
