from __future__ import annotations
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, Optional

from ..core.errors import DeviceNotFound
from ..core.timeutil import ensure_utc, now_utc
from ..domain.actuators import DEFAULT_ACTUATOR_KINDS, new_actuator
from ..domain.interfaces import Repository, SensorFeed
from ..domain.models import ActuatorKind, Device, SensorSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HeartbeatResult:
    device: Device
    created: bool


class DeviceService:
    """Device records, heartbeat ingestion and the latest sensor snapshot per device."""

    def __init__(self, repo: Repository, sensors: SensorFeed) -> None:
        self._repo = repo
        self._sensors = sensors

    async def get(self, device_id: str) -> Device:
        device = await self._repo.get_device(device_id)
        if device is None:
            raise DeviceNotFound(device_id)
        return device

    async def list_devices(self) -> list[Device]:
        return await self._repo.list_devices()

    async def provision(
        self,
        device_id: str,
        kinds: Iterable[ActuatorKind] = DEFAULT_ACTUATOR_KINDS,
        heartbeat_at: Optional[datetime] = None,
    ) -> Device:
        existing = await self._repo.get_device(device_id)
        if existing is not None:
            return existing
        now = now_utc()
        device = Device(device_id=device_id, last_heartbeat=heartbeat_at or now, created_at=now)
        await self._repo.save_device(device)
        for kind in kinds:
            await self._repo.save_actuator(device_id, new_actuator(kind))
        logger.info("Provisioned device %s", device_id)
        return device

    async def heartbeat(
        self,
        device_id: str,
        battery_level: Optional[float] = None,
        wifi_signal: Optional[float] = None,
        uptime: Optional[float] = None,
        free_memory: Optional[float] = None,
        errors: Optional[list[str]] = None,
        received_at: Optional[datetime] = None,
    ) -> HeartbeatResult:
        """
        Liveness is measured on the server clock: the receive time becomes the
        device's last heartbeat regardless of what the device reports.
        """
        received = ensure_utc(received_at) if received_at else now_utc()
        device = await self._repo.get_device(device_id)
        created = device is None
        if device is None:
            device = await self.provision(device_id, heartbeat_at=received)

        device.last_heartbeat = received
        if battery_level is not None:
            device.battery_level = battery_level
        if wifi_signal is not None:
            device.wifi_signal = wifi_signal
        if uptime is not None:
            device.uptime = uptime
        if free_memory is not None:
            device.free_memory = free_memory
        if errors is not None:
            device.errors = list(errors)
        await self._repo.save_device(device)
        logger.debug("Heartbeat from %s at %s", device_id, received.isoformat())
        return HeartbeatResult(device=device, created=created)

    async def record_snapshot(self, snapshot: SensorSnapshot) -> None:
        """Naive device timestamps are stored as UTC so snapshots stay comparable."""
        await self.get(snapshot.device_id)
        await self._sensors.insert_snapshot(replace(snapshot, ts_utc=ensure_utc(snapshot.ts_utc)))

    async def latest_snapshot(self, device_id: str) -> Optional[SensorSnapshot]:
        return await self._sensors.latest_snapshot(device_id)
