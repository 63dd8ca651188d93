from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from .models import Actuator, ActuatorKind, ActuatorMode, CommandPayload


@dataclass(frozen=True)
class ActuatorProfile:
    name: str
    command_prefix: str
    supports_auto: bool
    default_mode: ActuatorMode


ACTUATOR_PROFILES: dict[ActuatorKind, ActuatorProfile] = {
    ActuatorKind.WATER_PUMP: ActuatorProfile("Main Water Pump", "WATER", True, ActuatorMode.AUTO),
    ActuatorKind.VENTILATION_FAN: ActuatorProfile("Ventilation Fan", "FAN", True, ActuatorMode.AUTO),
    # Never runs unattended: manual-only, no automatic behaviour to restore
    ActuatorKind.FERTILIZER_PUMP: ActuatorProfile("Fertilizer Pump", "FERTILIZER", False, ActuatorMode.MANUAL),
    ActuatorKind.GROW_LIGHT: ActuatorProfile("Grow Light", "LIGHT", True, ActuatorMode.AUTO),
    ActuatorKind.HEATER: ActuatorProfile("Heater", "HEATER", True, ActuatorMode.AUTO),
}

_missing = set(ActuatorKind) - set(ACTUATOR_PROFILES)
if _missing:
    raise RuntimeError(f"Actuator kinds without a profile: {sorted(k.value for k in _missing)}")

# Provisioned on every new device
DEFAULT_ACTUATOR_KINDS: tuple[ActuatorKind, ...] = (
    ActuatorKind.WATER_PUMP,
    ActuatorKind.VENTILATION_FAN,
    ActuatorKind.FERTILIZER_PUMP,
)


def profile_for(kind: ActuatorKind) -> ActuatorProfile:
    return ACTUATOR_PROFILES[kind]


def parse_kind(raw: str) -> Optional[ActuatorKind]:
    try:
        return ActuatorKind(raw)
    except ValueError:
        return None


def new_actuator(kind: ActuatorKind) -> Actuator:
    return Actuator(kind=kind, state=False, mode=profile_for(kind).default_mode)


def encode_device_command(
    kind: ActuatorKind,
    mode: ActuatorMode,
    desired_state: Optional[bool] = None,
    desired_mode: Optional[ActuatorMode] = None,
) -> str:
    """
    Firmware command string, e.g. WATER:MANUAL:ON, FAN:AUTO, LIGHT:ON, FERTILIZER:OFF.
    `mode` is the actuator's mode after the change.
    """
    p = profile_for(kind)
    if desired_mode is not None:
        return f"{p.command_prefix}:{desired_mode.value}"
    on_off = "ON" if desired_state else "OFF"
    if p.supports_auto and mode == ActuatorMode.MANUAL:
        return f"{p.command_prefix}:MANUAL:{on_off}"
    # Manual-only kinds, or a one-shot switch the device's automatic control may undo
    return f"{p.command_prefix}:{on_off}"


def state_payload(actuator: Actuator) -> CommandPayload:
    return CommandPayload(
        actuator_kind=actuator.kind,
        desired_state=actuator.state,
        desired_mode=None,
        device_command=encode_device_command(actuator.kind, actuator.mode, desired_state=actuator.state),
    )


def mode_payload(actuator: Actuator) -> CommandPayload:
    return CommandPayload(
        actuator_kind=actuator.kind,
        desired_state=None,
        desired_mode=actuator.mode,
        device_command=encode_device_command(actuator.kind, actuator.mode, desired_mode=actuator.mode),
    )
