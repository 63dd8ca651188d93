from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class ActuatorKind(str, Enum):
    WATER_PUMP = "water_pump"
    VENTILATION_FAN = "ventilation_fan"
    FERTILIZER_PUMP = "fertilizer_pump"
    GROW_LIGHT = "grow_light"
    HEATER = "heater"


class ActuatorMode(str, Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"


class TriggeredBy(str, Enum):
    MANUAL = "manual"
    AUTOMATION = "automation"
    SCHEDULE = "schedule"
    ALERT = "alert"


class CommandPriority(int, Enum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()


class CommandStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (CommandStatus.ACKNOWLEDGED, CommandStatus.FAILED)


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


class LivenessState(str, Enum):
    ONLINE = "online"
    OFFLINE_WARNING = "offline_warning"
    OFFLINE_ESCALATING = "offline_escalating"
    OFFLINE_EMERGENCY = "offline_emergency"


SYSTEM_ACTUATOR = "system"


@dataclass
class Actuator:
    kind: ActuatorKind
    state: bool = False
    mode: ActuatorMode = ActuatorMode.AUTO
    last_toggled: Optional[datetime] = None


@dataclass
class Device:
    device_id: str
    last_heartbeat: datetime
    created_at: datetime
    battery_level: Optional[float] = None
    wifi_signal: Optional[float] = None
    uptime: Optional[float] = None
    free_memory: Optional[float] = None
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SensorSnapshot:
    device_id: str
    ts_utc: datetime
    greenhouse_temperature: Optional[float] = None
    soil_moisture: Optional[float] = None
    water_tank_level: Optional[float] = None


@dataclass(frozen=True)
class CommandPayload:
    actuator_kind: ActuatorKind
    desired_state: Optional[bool] = None
    desired_mode: Optional[ActuatorMode] = None
    device_command: str = ""


@dataclass
class Command:
    id: str
    device_id: str
    payload: CommandPayload
    priority: CommandPriority
    created_at: datetime
    seq: int = 0
    status: CommandStatus = CommandStatus.PENDING
    sent_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 3
    error: Optional[str] = None


@dataclass(frozen=True)
class AuditEntry:
    device_id: str
    actuator: str  # ActuatorKind value or "system"
    action: str
    previous_value: Any
    new_value: Any
    triggered_by: TriggeredBy
    reason: str
    timestamp: datetime
    actor_id: Optional[str] = None


@dataclass(frozen=True)
class Transition:
    previous: Any
    new: Any

    @property
    def changed(self) -> bool:
        return self.previous != self.new


@dataclass(frozen=True)
class Action:
    actuator_kind: ActuatorKind
    desired_state: Optional[bool] = None
    desired_mode: Optional[ActuatorMode] = None
    description: str = ""


@dataclass(frozen=True)
class FleetEvent:
    type: str  # device_offline | device_offline_escalation | emergency_failsafe | device_online | critical_alert
    device_id: str
    severity: Severity
    message: str
    timestamp: datetime
    data: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "deviceId": self.device_id,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            **self.data,
        }


@dataclass(frozen=True)
class OfflineTracker:
    offline_since: datetime
    escalations_sent: int = 0
    escalation_boundary: int = 0
    emergency_applied: bool = False
