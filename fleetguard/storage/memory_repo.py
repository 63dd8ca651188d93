from __future__ import annotations
import itertools
from dataclasses import replace
from typing import Iterable, Optional

from ..domain.models import (
    Actuator,
    ActuatorKind,
    AuditEntry,
    Command,
    CommandStatus,
    Device,
    SensorSnapshot,
    TriggeredBy,
)


class InMemoryRepository:
    """Process-local repository. Returns copies so callers never alias stored rows."""

    def __init__(self) -> None:
        self._devices: dict[str, Device] = {}
        self._actuators: dict[str, dict[ActuatorKind, Actuator]] = {}
        self._commands: dict[str, dict[str, Command]] = {}
        self._audit: dict[str, list[AuditEntry]] = {}
        self._snapshots: dict[str, SensorSnapshot] = {}
        self._seq = itertools.count(1)

    async def init(self) -> None:
        return None

    async def get_device(self, device_id: str) -> Optional[Device]:
        d = self._devices.get(device_id)
        return replace(d, errors=list(d.errors)) if d else None

    async def list_devices(self) -> list[Device]:
        return [replace(d, errors=list(d.errors)) for d in self._devices.values()]

    async def save_device(self, device: Device) -> None:
        self._devices[device.device_id] = replace(device, errors=list(device.errors))

    async def get_actuators(self, device_id: str) -> dict[ActuatorKind, Actuator]:
        return {k: replace(a) for k, a in self._actuators.get(device_id, {}).items()}

    async def save_actuator(self, device_id: str, actuator: Actuator) -> None:
        self._actuators.setdefault(device_id, {})[actuator.kind] = replace(actuator)

    async def insert_command(self, command: Command) -> Command:
        stored = replace(command, seq=next(self._seq))
        self._commands.setdefault(command.device_id, {})[command.id] = stored
        return replace(stored)

    async def update_command(self, command: Command) -> None:
        self._commands.setdefault(command.device_id, {})[command.id] = replace(command)

    async def get_command(self, device_id: str, command_id: str) -> Optional[Command]:
        c = self._commands.get(device_id, {}).get(command_id)
        return replace(c) if c else None

    async def list_commands(
        self, device_id: str, statuses: Optional[Iterable[CommandStatus]] = None
    ) -> list[Command]:
        wanted = set(statuses) if statuses is not None else None
        out = [
            replace(c) for c in self._commands.get(device_id, {}).values()
            if wanted is None or c.status in wanted
        ]
        out.sort(key=lambda c: c.seq)
        return out

    async def insert_audit(self, entry: AuditEntry) -> None:
        self._audit.setdefault(entry.device_id, []).append(entry)

    async def query_audit(
        self,
        device_id: str,
        actuator: Optional[str] = None,
        triggered_by: Optional[TriggeredBy] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AuditEntry], int]:
        rows = [
            e for e in self._audit.get(device_id, [])
            if (actuator is None or e.actuator == actuator)
            and (triggered_by is None or e.triggered_by == triggered_by)
        ]
        # Stable on equal timestamps: later appends count as newer
        rows = list(reversed(rows))
        rows.sort(key=lambda e: e.timestamp, reverse=True)
        return rows[offset:offset + limit], len(rows)

    async def latest_snapshot(self, device_id: str) -> Optional[SensorSnapshot]:
        return self._snapshots.get(device_id)

    async def insert_snapshot(self, snapshot: SensorSnapshot) -> None:
        current = self._snapshots.get(snapshot.device_id)
        if current is None or snapshot.ts_utc >= current.ts_utc:
            self._snapshots[snapshot.device_id] = snapshot
