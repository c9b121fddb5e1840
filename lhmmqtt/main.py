"""FastAPI application controlling the hardware telemetry bridge."""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI

from lhmmqtt import __version__, bootstrap
from lhmmqtt.config import get_settings
from lhmmqtt.device import HostDevice
from lhmmqtt.http_utils import start_telemetry
from lhmmqtt.observability import configure_logging
from lhmmqtt.routers import config as config_router
from lhmmqtt.routers import root as root_router
from lhmmqtt.routers import service as service_router
from lhmmqtt.routers import status as status_router
from lhmmqtt.services.config_store import ConfigStore, apply_config
from lhmmqtt.services.telemetry import TelemetryService

logger = logging.getLogger(__name__)


async def _autostart(app: FastAPI) -> None:
    settings = get_settings()
    if not await start_telemetry(app, settings):
        logger.warning("Telemetry service did not start; POST /v1/service/start to retry")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    store = ConfigStore(settings.config_file)
    persisted = store.load()
    if persisted:
        try:
            apply_config(settings, persisted)
        except ValueError as exc:
            logger.warning("Ignoring invalid settings in %s: %s", store.path, exc)
    device = HostDevice.detect(settings.device_name)

    app.state.config_store = store
    app.state.device = device
    app.state.catalog = bootstrap.build_catalog(settings, device)
    app.state.telemetry = bootstrap.build_service(settings, device)
    app.state.started_at = time.monotonic()
    app.state.autostart_task = None
    if settings.autostart:
        app.state.autostart_task = asyncio.create_task(_autostart(app), name="telemetry-autostart")
    logger.info("lhmmqtt %s started for device %s", __version__, device.name)

    try:
        yield
    finally:
        autostart: asyncio.Task | None = getattr(app.state, "autostart_task", None)
        if autostart and not autostart.done():
            autostart.cancel()
            await asyncio.gather(autostart, return_exceptions=True)
        service: TelemetryService | None = getattr(app.state, "telemetry", None)
        if service:
            await service.stop()
            # Exit only once the hardware teardown has settled.
            await service.wait_for_cooldown()
        logger.info("lhmmqtt shut down")


settings = get_settings()
configure_logging(settings.service_name, settings.log_level)
app = FastAPI(title="LHMMQTT", version=__version__, lifespan=lifespan)

app.include_router(root_router.router)
app.include_router(status_router.router)
app.include_router(service_router.router)
app.include_router(config_router.router)


def run() -> None:  # pragma: no cover
    import uvicorn

    current = get_settings()
    uvicorn.run(app, host=current.api_host, port=current.api_port)


if __name__ == "__main__":  # pragma: no cover
    run()
