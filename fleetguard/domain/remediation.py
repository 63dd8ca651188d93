from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Collection, Optional

from .models import Action, ActuatorKind, ActuatorMode, SensorSnapshot
from ..core.config import Settings


@dataclass(frozen=True)
class RemediationPolicy:
    critical_temperature_c: float = 35.0
    critical_soil_moisture: float = 20.0
    min_tank_for_irrigation: float = 15.0
    critical_tank_level: float = 10.0

    @classmethod
    def from_settings(cls, s: Settings) -> "RemediationPolicy":
        return cls(
            critical_temperature_c=s.critical_temperature_c,
            critical_soil_moisture=s.critical_soil_moisture,
            min_tank_for_irrigation=s.min_tank_for_irrigation,
            critical_tank_level=s.critical_tank_level,
        )


@dataclass(frozen=True)
class CriticalAlert:
    message: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CriticalAssessment:
    actions: list[Action] = field(default_factory=list)
    alerts: list[CriticalAlert] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.actions and not self.alerts


class RemediationEngine:
    """
    Decides what to do with a device's actuators; never touches them.
    Callers apply the returned actions through the actuator registry so every
    remediation is audited like a manual change.
    """

    def __init__(self, policy: Optional[RemediationPolicy] = None) -> None:
        self.policy = policy or RemediationPolicy()

    def assess_critical(
        self,
        kinds: Collection[ActuatorKind],
        snapshot: Optional[SensorSnapshot],
    ) -> CriticalAssessment:
        if snapshot is None:
            return CriticalAssessment()

        p = self.policy
        actions: list[Action] = []
        alerts: list[CriticalAlert] = []
        temp = snapshot.greenhouse_temperature
        moisture = snapshot.soil_moisture
        tank = snapshot.water_tank_level

        if temp is not None and temp > p.critical_temperature_c and ActuatorKind.VENTILATION_FAN in kinds:
            actions.append(Action(
                ActuatorKind.VENTILATION_FAN, True, ActuatorMode.MANUAL,
                "Emergency ventilation activated - high temperature",
            ))

        if (
            moisture is not None and tank is not None
            and moisture < p.critical_soil_moisture
            and tank > p.min_tank_for_irrigation
            and ActuatorKind.WATER_PUMP in kinds
        ):
            actions.append(Action(
                ActuatorKind.WATER_PUMP, True, ActuatorMode.MANUAL,
                "Emergency irrigation activated - critically low soil moisture",
            ))

        # No actuator action: there is no water to pump
        if tank is not None and tank < p.critical_tank_level:
            alerts.append(CriticalAlert(
                "Water tank critically low - immediate attention required",
                {"waterLevel": tank},
            ))

        return CriticalAssessment(actions=actions, alerts=alerts)

    def emergency_plan(self, kinds: Collection[ActuatorKind]) -> list[Action]:
        plan: list[Action] = []
        if ActuatorKind.WATER_PUMP in kinds:
            plan.append(Action(ActuatorKind.WATER_PUMP, True, ActuatorMode.MANUAL, "Water pump activated"))
        if ActuatorKind.VENTILATION_FAN in kinds:
            plan.append(Action(ActuatorKind.VENTILATION_FAN, True, ActuatorMode.MANUAL, "Ventilation fan activated"))
        if ActuatorKind.FERTILIZER_PUMP in kinds:
            plan.append(Action(ActuatorKind.FERTILIZER_PUMP, False, None, "Fertilizer pump deactivated for safety"))
        return plan

    def recovery_plan(self, kinds: Collection[ActuatorKind]) -> list[Action]:
        # Fertilizer pump is manual-only; nothing to restore
        plan: list[Action] = []
        for kind in (ActuatorKind.WATER_PUMP, ActuatorKind.VENTILATION_FAN):
            if kind in kinds:
                plan.append(Action(kind, None, ActuatorMode.AUTO, f"{kind.value} returned to AUTO"))
        return plan
