from __future__ import annotations
import json
from dataclasses import replace
from datetime import datetime
from typing import Iterable, List, Optional

import aiosqlite

from ..domain.models import (
    Actuator,
    ActuatorKind,
    ActuatorMode,
    AuditEntry,
    Command,
    CommandPayload,
    CommandPriority,
    CommandStatus,
    Device,
    SensorSnapshot,
    TriggeredBy,
)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def _dt(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


def _bool(raw: Optional[int]) -> Optional[bool]:
    return None if raw is None else bool(raw)


_COMMAND_COLS = (
    "seq,id,device_id,actuator_kind,desired_state,desired_mode,device_command,priority,status,"
    "created_at,sent_at,acknowledged_at,retry_count,max_retries,error"
)


def _command_from_row(row) -> Command:
    (seq, cid, device_id, kind, d_state, d_mode, dev_cmd, prio, status,
     created, sent, acked, retries, max_retries, error) = row
    return Command(
        id=cid,
        device_id=device_id,
        payload=CommandPayload(
            actuator_kind=ActuatorKind(kind),
            desired_state=_bool(d_state),
            desired_mode=ActuatorMode(d_mode) if d_mode else None,
            device_command=dev_cmd,
        ),
        priority=CommandPriority(prio),
        created_at=datetime.fromisoformat(created),
        seq=seq,
        status=CommandStatus(status),
        sent_at=_dt(sent),
        acknowledged_at=_dt(acked),
        retry_count=retries,
        max_retries=max_retries,
        error=error,
    )


class SQLiteRepository:
    def __init__(self, path: str) -> None:
        self._path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS devices (
                    device_id TEXT PRIMARY KEY,
                    last_heartbeat TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    battery_level REAL,
                    wifi_signal REAL,
                    uptime REAL,
                    free_memory REAL,
                    errors TEXT NOT NULL DEFAULT '[]'
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS actuators (
                    device_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    state INTEGER NOT NULL,
                    mode TEXT NOT NULL,
                    last_toggled TEXT,
                    PRIMARY KEY (device_id, kind)
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS commands (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    device_id TEXT NOT NULL,
                    actuator_kind TEXT NOT NULL,
                    desired_state INTEGER,
                    desired_mode TEXT,
                    device_command TEXT NOT NULL,
                    priority INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    sent_at TEXT,
                    acknowledged_at TEXT,
                    retry_count INTEGER NOT NULL,
                    max_retries INTEGER NOT NULL,
                    error TEXT
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS audit (
                    device_id TEXT NOT NULL,
                    actuator TEXT NOT NULL,
                    action TEXT NOT NULL,
                    previous_value TEXT,
                    new_value TEXT,
                    triggered_by TEXT NOT NULL,
                    actor_id TEXT,
                    reason TEXT NOT NULL,
                    ts_utc TEXT NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS snapshots (
                    device_id TEXT NOT NULL,
                    ts_utc TEXT NOT NULL,
                    greenhouse_temperature REAL,
                    soil_moisture REAL,
                    water_tank_level REAL
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_commands_dev_status ON commands(device_id, status)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_audit_dev_ts ON audit(device_id, ts_utc)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_dev_ts ON snapshots(device_id, ts_utc)")
            await db.commit()

    # --- devices ---

    async def get_device(self, device_id: str) -> Optional[Device]:
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(
                "SELECT device_id,last_heartbeat,created_at,battery_level,wifi_signal,uptime,free_memory,errors "
                "FROM devices WHERE device_id = ?",
                (device_id,),
            )
            row = await cur.fetchone()
        return self._device_from_row(row) if row else None

    async def list_devices(self) -> List[Device]:
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(
                "SELECT device_id,last_heartbeat,created_at,battery_level,wifi_signal,uptime,free_memory,errors "
                "FROM devices ORDER BY device_id"
            )
            rows = await cur.fetchall()
        return [self._device_from_row(r) for r in rows]

    @staticmethod
    def _device_from_row(row) -> Device:
        did, hb, created, batt, wifi, up, mem, errors = row
        return Device(
            device_id=did,
            last_heartbeat=datetime.fromisoformat(hb),
            created_at=datetime.fromisoformat(created),
            battery_level=batt,
            wifi_signal=wifi,
            uptime=up,
            free_memory=mem,
            errors=json.loads(errors or "[]"),
        )

    async def save_device(self, d: Device) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                "INSERT INTO devices(device_id,last_heartbeat,created_at,battery_level,wifi_signal,uptime,free_memory,errors) "
                "VALUES (?,?,?,?,?,?,?,?) "
                "ON CONFLICT(device_id) DO UPDATE SET last_heartbeat=excluded.last_heartbeat, "
                "battery_level=excluded.battery_level, wifi_signal=excluded.wifi_signal, uptime=excluded.uptime, "
                "free_memory=excluded.free_memory, errors=excluded.errors",
                (
                    d.device_id,
                    d.last_heartbeat.isoformat(),
                    d.created_at.isoformat(),
                    d.battery_level,
                    d.wifi_signal,
                    d.uptime,
                    d.free_memory,
                    json.dumps(d.errors),
                ),
            )
            await db.commit()

    async def get_actuators(self, device_id: str) -> dict[ActuatorKind, Actuator]:
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(
                "SELECT kind,state,mode,last_toggled FROM actuators WHERE device_id = ?",
                (device_id,),
            )
            rows = await cur.fetchall()
        out: dict[ActuatorKind, Actuator] = {}
        for kind, state, mode, toggled in rows:
            k = ActuatorKind(kind)
            out[k] = Actuator(kind=k, state=bool(state), mode=ActuatorMode(mode), last_toggled=_dt(toggled))
        return out

    async def save_actuator(self, device_id: str, a: Actuator) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                "INSERT INTO actuators(device_id,kind,state,mode,last_toggled) VALUES (?,?,?,?,?) "
                "ON CONFLICT(device_id, kind) DO UPDATE SET state=excluded.state, mode=excluded.mode, "
                "last_toggled=excluded.last_toggled",
                (device_id, a.kind.value, 1 if a.state else 0, a.mode.value, _iso(a.last_toggled)),
            )
            await db.commit()

    # --- commands ---

    async def insert_command(self, c: Command) -> Command:
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(
                "INSERT INTO commands(id,device_id,actuator_kind,desired_state,desired_mode,device_command,priority,"
                "status,created_at,sent_at,acknowledged_at,retry_count,max_retries,error) "
                "VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    c.id,
                    c.device_id,
                    c.payload.actuator_kind.value,
                    None if c.payload.desired_state is None else int(c.payload.desired_state),
                    c.payload.desired_mode.value if c.payload.desired_mode else None,
                    c.payload.device_command,
                    int(c.priority),
                    c.status.value,
                    c.created_at.isoformat(),
                    _iso(c.sent_at),
                    _iso(c.acknowledged_at),
                    c.retry_count,
                    c.max_retries,
                    c.error,
                ),
            )
            seq = cur.lastrowid
            await db.commit()
        return replace(c, seq=seq)

    async def update_command(self, c: Command) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                "UPDATE commands SET status=?, sent_at=?, acknowledged_at=?, retry_count=?, error=? "
                "WHERE id = ? AND device_id = ?",
                (
                    c.status.value,
                    _iso(c.sent_at),
                    _iso(c.acknowledged_at),
                    c.retry_count,
                    c.error,
                    c.id,
                    c.device_id,
                ),
            )
            await db.commit()

    async def get_command(self, device_id: str, command_id: str) -> Optional[Command]:
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(
                f"SELECT {_COMMAND_COLS} FROM commands WHERE device_id = ? AND id = ?",
                (device_id, command_id),
            )
            row = await cur.fetchone()
        return _command_from_row(row) if row else None

    async def list_commands(
        self, device_id: str, statuses: Optional[Iterable[CommandStatus]] = None
    ) -> List[Command]:
        sql = f"SELECT {_COMMAND_COLS} FROM commands WHERE device_id = ?"
        params: list = [device_id]
        if statuses is not None:
            wanted = [s.value for s in statuses]
            if not wanted:
                return []
            sql += f" AND status IN ({','.join('?' for _ in wanted)})"
            params.extend(wanted)
        sql += " ORDER BY seq ASC"
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(sql, params)
            rows = await cur.fetchall()
        return [_command_from_row(r) for r in rows]

    # --- audit ---

    async def insert_audit(self, e: AuditEntry) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                "INSERT INTO audit(device_id,actuator,action,previous_value,new_value,triggered_by,actor_id,reason,ts_utc) "
                "VALUES (?,?,?,?,?,?,?,?,?)",
                (
                    e.device_id,
                    e.actuator,
                    e.action,
                    json.dumps(e.previous_value),
                    json.dumps(e.new_value),
                    e.triggered_by.value,
                    e.actor_id,
                    e.reason,
                    e.timestamp.isoformat(),
                ),
            )
            await db.commit()

    async def query_audit(
        self,
        device_id: str,
        actuator: Optional[str] = None,
        triggered_by: Optional[TriggeredBy] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[List[AuditEntry], int]:
        where = "WHERE device_id = ?"
        params: list = [device_id]
        if actuator is not None:
            where += " AND actuator = ?"
            params.append(actuator)
        if triggered_by is not None:
            where += " AND triggered_by = ?"
            params.append(triggered_by.value)

        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(f"SELECT COUNT(*) FROM audit {where}", params)
            (total,) = await cur.fetchone()
            cur = await db.execute(
                f"""
                SELECT device_id,actuator,action,previous_value,new_value,triggered_by,actor_id,reason,ts_utc
                FROM audit {where}
                ORDER BY ts_utc DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            )
            rows = await cur.fetchall()
        out: list[AuditEntry] = []
        for did, act, action, prev, new, trig, actor, reason, ts in rows:
            out.append(
                AuditEntry(
                    device_id=did,
                    actuator=act,
                    action=action,
                    previous_value=json.loads(prev) if prev is not None else None,
                    new_value=json.loads(new) if new is not None else None,
                    triggered_by=TriggeredBy(trig),
                    reason=reason,
                    timestamp=datetime.fromisoformat(ts),
                    actor_id=actor,
                )
            )
        return out, int(total)

    # --- sensor snapshots ---

    async def insert_snapshot(self, s: SensorSnapshot) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                "INSERT INTO snapshots(device_id,ts_utc,greenhouse_temperature,soil_moisture,water_tank_level) "
                "VALUES (?,?,?,?,?)",
                (s.device_id, s.ts_utc.isoformat(), s.greenhouse_temperature, s.soil_moisture, s.water_tank_level),
            )
            await db.commit()

    async def latest_snapshot(self, device_id: str) -> Optional[SensorSnapshot]:
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(
                """
                SELECT device_id,ts_utc,greenhouse_temperature,soil_moisture,water_tank_level
                FROM snapshots
                WHERE device_id = ?
                ORDER BY ts_utc DESC
                LIMIT 1
                """,
                (device_id,),
            )
            row = await cur.fetchone()
        if row is None:
            return None
        did, ts, temp, moisture, tank = row
        return SensorSnapshot(
            device_id=did,
            ts_utc=datetime.fromisoformat(ts),
            greenhouse_temperature=temp,
            soil_moisture=moisture,
            water_tank_level=tank,
        )
