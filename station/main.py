"""
station/main.py

FastAPI application entry point for the C2 station service.
Builds the engines, restores operation history, starts the schedule tick
loop and registers routers.
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncGenerator

import structlog
import uvicorn
from fastapi import FastAPI, Request

from config import settings
from station.logging_setup import configure_logging
from station.routers.presence import router as presence_router
from station.routers.schedules import router as schedules_router
from station.routers.session import router as session_router
from station.routers.signals import router as signals_router
from station.services.bootstrap import bootstrap_devices
from station.services.device_api import DeviceApi
from station.services.persistence import OperationHistoryWriter, load_operations
from station.services.presence import PresenceTracker
from station.services.registry import DeviceRegistry, OperationRegistry
from station.services.request_gateway import RequestGateway
from station.services.scheduler import ScheduleEngine
from station.services.timers import AsyncioTimers, TickLoop, utc_now

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifecycle: startup and shutdown."""
    configure_logging()
    logger.info("station_starting", api_base_url=settings.api_base_url)

    gateway = RequestGateway()
    device_api = DeviceApi(gateway)
    devices = DeviceRegistry()
    operations = OperationRegistry()
    tracker = PresenceTracker(devices, AsyncioTimers())
    engine = ScheduleEngine(operations, devices, device_api)

    retained_after = utc_now() - timedelta(hours=settings.operation_retention_hours)
    engine.restore(await load_operations(retained_after))

    history = OperationHistoryWriter()
    engine.subscribe(history.enqueue)
    await history.start()

    app.state.gateway = gateway
    app.state.device_api = device_api
    app.state.tracker = tracker
    app.state.engine = engine
    app.state.devices_bootstrapped = False

    if settings.api_username:
        result = await gateway.login(settings.api_username, settings.api_password)
        if result.success:
            loaded = await bootstrap_devices(device_api, tracker)
            app.state.devices_bootstrapped = loaded > 0

    async def run_tick() -> None:
        engine.tick()

    tick_loop = TickLoop(settings.schedule_tick_interval_s, run_tick, name="schedule")
    app.state.tick_loop = tick_loop
    await tick_loop.start()

    yield

    logger.info("station_shutting_down")
    await tick_loop.stop()
    tracker.shutdown()
    await engine.drain()
    await history.stop()
    await gateway.aclose()


app = FastAPI(
    title="C2 Station",
    description="Device presence tracking and scheduled recording control",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(signals_router)
app.include_router(presence_router)
app.include_router(schedules_router)
app.include_router(session_router)


@app.get("/")
async def health(request: Request) -> dict[str, Any]:
    tick_loop = getattr(request.app.state, "tick_loop", None)
    return {
        "status": "ok",
        "authenticated": request.app.state.gateway.is_authenticated,
        "tick": tick_loop.get_stats() if tick_loop else None,
    }


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    uvicorn.run(
        "station.main:app",
        host=settings.station_host,
        port=settings.station_port,
        log_level=settings.log_level.lower(),
    )
