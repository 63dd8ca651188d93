"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from fleetguard.domain.liveness import LivenessPolicy
from fleetguard.domain.remediation import RemediationEngine
from fleetguard.services.audit import AuditLog
from fleetguard.services.command_queue import CommandQueue
from fleetguard.services.deferred import DeferredEffects
from fleetguard.services.devices import DeviceService
from fleetguard.services.events import EventBus
from fleetguard.services.monitor import LivenessMonitor
from fleetguard.services.registry import ActuatorRegistry
from fleetguard.storage.memory_repo import InMemoryRepository

T0 = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
DEVICE_ID = "gh-01"


@pytest.fixture
def at():
    """Minutes after the reference time T0 (the device's last heartbeat)."""
    def _at(minutes: float) -> datetime:
        return T0 + timedelta(minutes=minutes)
    return _at


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def audit(repo):
    return AuditLog(repo)


@pytest_asyncio.fixture
async def deferred():
    effects = DeferredEffects()
    yield effects
    await effects.shutdown()


@pytest.fixture
def queue(repo, audit):
    return CommandQueue(repo, audit, max_retries=3)


@pytest.fixture
def registry(repo, queue, audit, deferred):
    return ActuatorRegistry(repo, queue, audit, deferred, default_override_seconds=3600)


@pytest.fixture
def devices(repo):
    return DeviceService(repo, repo)


@pytest.fixture
def events():
    return EventBus(buffer_size=200)


@pytest.fixture
def monitor(repo, registry, audit, events):
    return LivenessMonitor(
        repo=repo,
        sensors=repo,
        registry=registry,
        audit=audit,
        events=events,
        engine=RemediationEngine(),
        policy=LivenessPolicy(),
        interval_s=300,
        initial_delay_s=0,
    )


@pytest_asyncio.fixture
async def device(devices):
    """A provisioned device (pump, fan, fertilizer pump) whose last heartbeat is T0."""
    return await devices.provision(DEVICE_ID, heartbeat_at=T0)
