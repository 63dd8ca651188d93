from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from ..core.errors import FleetError, NotFoundError, ValidationError
from ..core.timeutil import now_utc
from ..domain.models import Actuator, AuditEntry, Command, SensorSnapshot, TriggeredBy
from ..services.audit import AuditLog
from ..services.command_queue import CommandQueue
from ..services.devices import DeviceService
from ..services.events import EventBus
from ..services.monitor import LivenessMonitor, LivenessStatus
from ..services.registry import ActuatorRegistry
from .schemas import (
    AckRequest,
    FailsafeRequest,
    OverrideRequest,
    SetModeRequest,
    SetStateRequest,
    SnapshotIn,
    StatusReport,
    ToggleRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Dependency getters (main.py sets the real ones via app.dependency_overrides) ---
def get_registry() -> ActuatorRegistry:  # overridden in main
    raise RuntimeError("Registry dependency not configured")

def get_queue() -> CommandQueue:  # overridden in main
    raise RuntimeError("Command queue dependency not configured")

def get_monitor() -> LivenessMonitor:  # overridden in main
    raise RuntimeError("Monitor dependency not configured")

def get_devices() -> DeviceService:  # overridden in main
    raise RuntimeError("Device service dependency not configured")

def get_audit() -> AuditLog:  # overridden in main
    raise RuntimeError("Audit dependency not configured")

def get_events() -> EventBus:  # overridden in main
    raise RuntimeError("Event bus dependency not configured")


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def _validation(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"success": False, "message": exc.message})

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"success": False, "message": exc.message})

    @app.exception_handler(FleetError)
    async def _other(request: Request, exc: FleetError):
        logger.error("Unhandled orchestration error on %s: %s", request.url.path, exc.message)
        return JSONResponse(status_code=500, content={"success": False, "message": exc.message})


# --- serializers ---

def _command_out(c: Command) -> dict:
    return {
        "id": c.id,
        "actuatorKind": c.payload.actuator_kind.value,
        "desiredState": c.payload.desired_state,
        "desiredMode": c.payload.desired_mode.value if c.payload.desired_mode else None,
        "deviceCommand": c.payload.device_command,
        "priority": c.priority.label,
        "status": c.status.value,
        "retryCount": c.retry_count,
    }


def _actuator_out(a: Actuator) -> dict:
    return {
        "state": a.state,
        "mode": a.mode.value,
        "lastToggled": a.last_toggled.isoformat() if a.last_toggled else None,
    }


def _audit_out(e: AuditEntry) -> dict:
    return {
        "action": e.action,
        "actuator": e.actuator,
        "previousValue": e.previous_value,
        "newValue": e.new_value,
        "triggeredBy": e.triggered_by.value,
        "actorId": e.actor_id,
        "reason": e.reason,
        "timestamp": e.timestamp.isoformat(),
    }


def _liveness_out(s: LivenessStatus) -> dict:
    return {
        "deviceId": s.device_id,
        "state": s.state.value,
        "online": s.offline_since is None,
        "heartbeatAgeMinutes": round(s.heartbeat_age_minutes, 1),
        "offlineSince": s.offline_since.isoformat() if s.offline_since else None,
        "escalationsSent": s.escalations_sent,
        "emergencyApplied": s.emergency_applied,
    }


# --- device-facing poll protocol ---

@router.get("/devices/{device_id}/commands")
async def poll_commands(
    device_id: str,
    devices: DeviceService = Depends(get_devices),
    queue: CommandQueue = Depends(get_queue),
):
    await devices.get(device_id)
    commands = await queue.pending_for(device_id)
    return {"success": True, "data": {"commands": [_command_out(c) for c in commands], "count": len(commands)}}


@router.post("/devices/{device_id}/commands/{command_id}/ack")
async def acknowledge_command(
    device_id: str,
    command_id: str,
    req: AckRequest,
    queue: CommandQueue = Depends(get_queue),
):
    cmd = await queue.acknowledge(device_id, command_id, req.success, req.error)
    return {"success": True, "data": {"commandId": cmd.id, "status": cmd.status.value, "retryCount": cmd.retry_count}}


@router.post("/devices/{device_id}/status")
async def report_status(
    device_id: str,
    req: StatusReport,
    response: Response,
    devices: DeviceService = Depends(get_devices),
):
    result = await devices.heartbeat(
        device_id,
        battery_level=req.battery_level,
        wifi_signal=req.wifi_signal,
        uptime=req.uptime,
        free_memory=req.free_memory,
        errors=req.errors,
    )
    if result.created:
        response.status_code = 201
    return {
        "success": True,
        "created": result.created,
        "data": {"lastHeartbeat": result.device.last_heartbeat.isoformat()},
    }


@router.post("/devices/{device_id}/sensors")
async def report_sensors(
    device_id: str,
    req: SnapshotIn,
    devices: DeviceService = Depends(get_devices),
):
    await devices.record_snapshot(
        SensorSnapshot(
            device_id=device_id,
            ts_utc=req.timestamp or now_utc(),
            greenhouse_temperature=req.greenhouse_temperature,
            soil_moisture=req.soil_moisture,
            water_tank_level=req.water_tank_level,
        )
    )
    return {"success": True}


# --- operator-facing ---

@router.get("/devices")
async def list_devices(
    devices: DeviceService = Depends(get_devices),
    monitor: LivenessMonitor = Depends(get_monitor),
):
    now = now_utc()
    return {"success": True, "data": [_liveness_out(monitor.status_for(d, now)) for d in await devices.list_devices()]}


@router.get("/devices/{device_id}")
async def get_device(
    device_id: str,
    devices: DeviceService = Depends(get_devices),
    registry: ActuatorRegistry = Depends(get_registry),
    queue: CommandQueue = Depends(get_queue),
    monitor: LivenessMonitor = Depends(get_monitor),
):
    device = await devices.get(device_id)
    actuators = await registry.list_actuators(device_id)
    return {
        "success": True,
        "data": {
            "deviceId": device.device_id,
            "actuators": {k.value: _actuator_out(a) for k, a in actuators.items()},
            "deviceStatus": {
                "lastHeartbeat": device.last_heartbeat.isoformat(),
                "batteryLevel": device.battery_level,
                "wifiSignal": device.wifi_signal,
                "uptime": device.uptime,
                "freeMemory": device.free_memory,
                "errors": device.errors,
            },
            "pendingCommands": await queue.pending_count(device_id),
            "liveness": _liveness_out(monitor.status_for(device)),
        },
    }


@router.put("/devices/{device_id}/actuators/{kind}/state")
async def set_actuator_state(
    device_id: str,
    kind: str,
    req: SetStateRequest,
    registry: ActuatorRegistry = Depends(get_registry),
    actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
):
    t = await registry.set_state(
        device_id, kind, req.state, TriggeredBy.MANUAL, actor_id, req.reason, req.duration_s
    )
    return {"success": True, "data": {"actuator": kind, "previousState": t.previous, "newState": t.new, "changed": t.changed}}


@router.post("/devices/{device_id}/actuators/{kind}/toggle")
async def toggle_actuator(
    device_id: str,
    kind: str,
    req: Optional[ToggleRequest] = None,
    registry: ActuatorRegistry = Depends(get_registry),
    actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
):
    t = await registry.toggle(device_id, kind, actor_id, req.reason if req else None)
    return {"success": True, "data": {"actuator": kind, "previousState": t.previous, "newState": t.new}}


@router.put("/devices/{device_id}/actuators/{kind}/mode")
async def set_actuator_mode(
    device_id: str,
    kind: str,
    req: SetModeRequest,
    registry: ActuatorRegistry = Depends(get_registry),
    actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
):
    t = await registry.set_mode(device_id, kind, req.mode, actor_id, req.reason)
    return {
        "success": True,
        "data": {"actuator": kind, "previousMode": t.previous.value, "newMode": t.new.value, "changed": t.changed},
    }


@router.post("/devices/{device_id}/actuators/{kind}/override")
async def set_override(
    device_id: str,
    kind: str,
    req: OverrideRequest,
    registry: ActuatorRegistry = Depends(get_registry),
    actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
):
    t = await registry.set_override(device_id, kind, req.state, req.duration_s, actor_id, req.reason)
    return {"success": True, "data": {"actuator": kind, "previousState": t.previous, "newState": t.new}}


@router.delete("/devices/{device_id}/actuators/{kind}/override")
async def cancel_override(
    device_id: str,
    kind: str,
    registry: ActuatorRegistry = Depends(get_registry),
    actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
):
    t = await registry.cancel_override(device_id, kind, actor_id)
    prev = getattr(t.previous, "value", t.previous)
    new = getattr(t.new, "value", t.new)
    return {"success": True, "data": {"actuator": kind, "previous": prev, "new": new}}


@router.get("/devices/{device_id}/history")
async def history(
    device_id: str,
    actuator: Optional[str] = None,
    triggered_by: Optional[str] = None,
    limit: int = 50,
    page: int = 1,
    devices: DeviceService = Depends(get_devices),
    audit: AuditLog = Depends(get_audit),
):
    await devices.get(device_id)
    trig: Optional[TriggeredBy] = None
    if triggered_by is not None:
        try:
            trig = TriggeredBy(triggered_by)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid triggered_by: {triggered_by}")
    result = await audit.history(device_id, actuator, trig, limit=min(limit, 500), page=page)
    return {
        "success": True,
        "data": [_audit_out(e) for e in result.entries],
        "pagination": {
            "currentPage": result.page,
            "totalPages": result.total_pages,
            "totalRecords": result.total,
            "limit": result.limit,
        },
    }


@router.post("/devices/{device_id}/failsafe")
async def trigger_failsafe(
    device_id: str,
    req: Optional[FailsafeRequest] = None,
    monitor: LivenessMonitor = Depends(get_monitor),
    actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
):
    reason = req.reason if req else "Manual failsafe activation"
    actions = await monitor.trigger_failsafe(device_id, actor_id, reason)
    return {"success": True, "data": {"deviceId": device_id, "actions": actions, "timestamp": now_utc().isoformat()}}


@router.get("/liveness")
async def liveness(monitor: LivenessMonitor = Depends(get_monitor)):
    return {"success": True, "data": [_liveness_out(s) for s in await monitor.offline_status()]}


@router.post("/liveness/sweep")
async def run_sweep(monitor: LivenessMonitor = Depends(get_monitor)):
    report = await monitor.sweep()
    return {
        "success": True,
        "data": {
            "evaluated": report.evaluated,
            "skipped": report.skipped,
            "errors": [{"deviceId": e.device_id, "message": e.message} for e in report.errors],
        },
    }


@router.get("/events")
async def recent_events(
    device_id: Optional[str] = None,
    limit: int = 100,
    events: EventBus = Depends(get_events),
):
    return {"success": True, "data": [e.as_dict() for e in events.recent(device_id, limit=min(limit, 1000))]}
