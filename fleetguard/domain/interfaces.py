from __future__ import annotations
from typing import Protocol, Optional, Iterable, runtime_checkable
from .models import (
    Actuator,
    ActuatorKind,
    AuditEntry,
    Command,
    CommandStatus,
    Device,
    FleetEvent,
    SensorSnapshot,
    TriggeredBy,
)


@runtime_checkable
class Repository(Protocol):
    async def init(self) -> None:
        ...

    # Devices / actuators
    async def get_device(self, device_id: str) -> Optional[Device]:
        ...

    async def list_devices(self) -> list[Device]:
        ...

    async def save_device(self, device: Device) -> None:
        ...

    async def get_actuators(self, device_id: str) -> dict[ActuatorKind, Actuator]:
        ...

    async def save_actuator(self, device_id: str, actuator: Actuator) -> None:
        ...

    # Commands
    async def insert_command(self, command: Command) -> Command:
        """Persist a new command and return it with its sequence number assigned."""
        ...

    async def update_command(self, command: Command) -> None:
        ...

    async def get_command(self, device_id: str, command_id: str) -> Optional[Command]:
        ...

    async def list_commands(
        self, device_id: str, statuses: Optional[Iterable[CommandStatus]] = None
    ) -> list[Command]:
        ...

    # Audit
    async def insert_audit(self, entry: AuditEntry) -> None:
        ...

    async def query_audit(
        self,
        device_id: str,
        actuator: Optional[str] = None,
        triggered_by: Optional[TriggeredBy] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AuditEntry], int]:
        """Newest first; returns (page, total matching)."""
        ...


@runtime_checkable
class SensorFeed(Protocol):
    async def latest_snapshot(self, device_id: str) -> Optional[SensorSnapshot]:
        ...

    async def insert_snapshot(self, snapshot: SensorSnapshot) -> None:
        ...


@runtime_checkable
class EventPublisher(Protocol):
    async def publish(self, event: FleetEvent) -> None:
        ...
