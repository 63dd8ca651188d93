from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .core.config import settings
from .core.log import configure_logging

from .api.routes import router as api_router, register_error_handlers
import fleetguard.api.routes as routes_module

from .domain.liveness import LivenessPolicy
from .domain.remediation import RemediationEngine, RemediationPolicy
from .services.audit import AuditLog
from .services.command_queue import CommandQueue
from .services.deferred import DeferredEffects
from .services.devices import DeviceService
from .services.events import EventBus
from .services.monitor import LivenessMonitor
from .services.registry import ActuatorRegistry
from .storage.memory_repo import InMemoryRepository
from .storage.sqlite_repo import SQLiteRepository


logger = logging.getLogger(__name__)


def build_repo() -> SQLiteRepository | InMemoryRepository:
    if settings.storage_mode.lower() == "memory":
        return InMemoryRepository()
    return SQLiteRepository(settings.sqlite_path)


# --- Singletons ---
repo = build_repo()
events = EventBus(
    buffer_size=settings.event_buffer_size,
    webhook_url=settings.event_webhook_url,
    timeout=settings.event_webhook_timeout_seconds,
)
audit = AuditLog(repo)
deferred = DeferredEffects()
queue = CommandQueue(repo, audit, max_retries=settings.command_max_retries)
registry = ActuatorRegistry(
    repo, queue, audit, deferred, default_override_seconds=settings.default_override_seconds
)
devices = DeviceService(repo, repo)
monitor = LivenessMonitor(
    repo=repo,
    sensors=repo,
    registry=registry,
    audit=audit,
    events=events,
    engine=RemediationEngine(RemediationPolicy.from_settings(settings)),
    policy=LivenessPolicy.from_settings(settings),
    interval_s=settings.sweep_interval_seconds,
    initial_delay_s=settings.initial_sweep_delay_seconds,
)


def get_registry() -> ActuatorRegistry:
    return registry


def get_queue() -> CommandQueue:
    return queue


def get_monitor() -> LivenessMonitor:
    return monitor


def get_devices() -> DeviceService:
    return devices


def get_audit() -> AuditLog:
    return audit


def get_events() -> EventBus:
    return events


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("Starting %s (storage=%s)", settings.app_name, settings.storage_mode)

    await repo.init()
    await monitor.start()

    try:
        yield
    finally:
        await monitor.stop()
        await deferred.shutdown()
        logger.info("Shutdown complete")


app = FastAPI(title=settings.app_name, lifespan=lifespan)
register_error_handlers(app)

# Make the dependency functions in routes resolve to the real ones
app.dependency_overrides[routes_module.get_registry] = get_registry
app.dependency_overrides[routes_module.get_queue] = get_queue
app.dependency_overrides[routes_module.get_monitor] = get_monitor
app.dependency_overrides[routes_module.get_devices] = get_devices
app.dependency_overrides[routes_module.get_audit] = get_audit
app.dependency_overrides[routes_module.get_events] = get_events

app.include_router(api_router, prefix="/api")
