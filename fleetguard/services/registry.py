from __future__ import annotations
import logging
from typing import Optional, Union

from ..core.errors import DeviceNotFound, InvalidMode, ModeNotSupported, UnknownActuator
from ..core.timeutil import now_utc
from ..domain.actuators import mode_payload, parse_kind, profile_for, state_payload
from ..domain.interfaces import Repository
from ..domain.models import (
    Actuator,
    ActuatorKind,
    ActuatorMode,
    AuditEntry,
    CommandPriority,
    Transition,
    TriggeredBy,
)
from .audit import AuditLog
from .command_queue import CommandQueue
from .deferred import DeferredEffects
from .locks import KeyedLocks

logger = logging.getLogger(__name__)

KindLike = Union[ActuatorKind, str]


def _parse_mode(raw: object) -> ActuatorMode:
    if isinstance(raw, ActuatorMode):
        return raw
    try:
        return ActuatorMode(raw)
    except ValueError:
        raise InvalidMode(raw) from None


class ActuatorRegistry:
    """
    The only write path for actuator state and mode. Every effective change
    is audited and turned into a device command; unchanged values are no-ops.
    """

    def __init__(
        self,
        repo: Repository,
        queue: CommandQueue,
        audit: AuditLog,
        deferred: DeferredEffects,
        default_override_seconds: int = 3600,
    ) -> None:
        self._repo = repo
        self._queue = queue
        self._audit = audit
        self._deferred = deferred
        self._default_override_seconds = default_override_seconds
        self._locks = KeyedLocks()

    # --- reads ---

    async def list_actuators(self, device_id: str) -> dict[ActuatorKind, Actuator]:
        if await self._repo.get_device(device_id) is None:
            raise DeviceNotFound(device_id)
        return await self._repo.get_actuators(device_id)

    async def get_state(self, device_id: str, kind: KindLike) -> bool:
        return (await self._load(device_id, kind)).state

    async def get_mode(self, device_id: str, kind: KindLike) -> ActuatorMode:
        return (await self._load(device_id, kind)).mode

    # --- writes ---

    async def set_state(
        self,
        device_id: str,
        kind: KindLike,
        desired_state: bool,
        triggered_by: TriggeredBy = TriggeredBy.MANUAL,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        duration_s: Optional[float] = None,
    ) -> Transition:
        async with self._locks(device_id):
            actuator = await self._load(device_id, kind)
            return await self._apply_state(
                device_id, actuator, bool(desired_state), triggered_by, actor_id, reason, duration_s
            )

    async def toggle(
        self,
        device_id: str,
        kind: KindLike,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Transition:
        async with self._locks(device_id):
            actuator = await self._load(device_id, kind)
            return await self._apply_state(
                device_id, actuator, not actuator.state, TriggeredBy.MANUAL, actor_id, reason or "Manual toggle", None
            )

    async def set_mode(
        self,
        device_id: str,
        kind: KindLike,
        desired_mode: object,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        triggered_by: TriggeredBy = TriggeredBy.MANUAL,
        resend_action: Optional[str] = None,
    ) -> Transition:
        """
        Change an actuator's mode. An unchanged mode is a no-op unless
        `resend_action` is given: then the mode command is enqueued anyway and
        audited under that action, for callers that must re-assert the mode on
        the device (e.g. failsafe reset after reconnect).
        """
        mode = _parse_mode(desired_mode)
        async with self._locks(device_id):
            actuator = await self._load(device_id, kind)
            return await self._apply_mode(
                device_id, actuator, mode, triggered_by, actor_id, reason, resend_action
            )

    async def set_override(
        self,
        device_id: str,
        kind: KindLike,
        state: bool,
        duration_s: Optional[float] = None,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Transition:
        """
        Force an actuator to MANUAL with the given state for `duration_s`, after
        which it returns to AUTO (or OFF for manual-only kinds). A later override
        or mode change supersedes the pending expiry.
        """
        duration = duration_s if duration_s is not None else self._default_override_seconds
        reason = reason or "Manual override"

        async with self._locks(device_id):
            actuator = await self._load(device_id, kind)
            if profile_for(actuator.kind).supports_auto:
                await self._apply_mode(device_id, actuator, ActuatorMode.MANUAL, TriggeredBy.MANUAL, actor_id, reason)
            result = await self._apply_state(
                device_id, actuator, bool(state), TriggeredBy.MANUAL, actor_id, reason, None
            )
            override_kind = actuator.kind

            async def expire() -> None:
                async with self._locks(device_id):
                    # Superseded by a newer override while waiting for the lock
                    if self._deferred.get(device_id, override_kind) is not None:
                        return
                    current = await self._load(device_id, override_kind)
                    await self._revert_override(
                        device_id, current, TriggeredBy.SCHEDULE, None, "Manual override expired"
                    )

            self._deferred.schedule(device_id, override_kind, duration, expire, "override expiry")
            return result

    async def cancel_override(
        self,
        device_id: str,
        kind: KindLike,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Transition:
        async with self._locks(device_id):
            actuator = await self._load(device_id, kind)
            self._deferred.cancel(device_id, actuator.kind)
            return await self._revert_override(
                device_id, actuator, TriggeredBy.MANUAL, actor_id, reason or "Manual override removed"
            )

    async def _revert_override(
        self,
        device_id: str,
        actuator: Actuator,
        triggered_by: TriggeredBy,
        actor_id: Optional[str],
        reason: str,
    ) -> Transition:
        # Caller holds the device lock
        if profile_for(actuator.kind).supports_auto:
            return await self._apply_mode(device_id, actuator, ActuatorMode.AUTO, triggered_by, actor_id, reason)
        return await self._apply_state(device_id, actuator, False, triggered_by, actor_id, reason, None)

    # --- internals ---

    async def _load(self, device_id: str, kind: KindLike) -> Actuator:
        parsed = kind if isinstance(kind, ActuatorKind) else parse_kind(str(kind))
        if await self._repo.get_device(device_id) is None:
            raise DeviceNotFound(device_id)
        actuators = await self._repo.get_actuators(device_id)
        if parsed is None or parsed not in actuators:
            raise UnknownActuator(device_id, str(kind.value if isinstance(kind, ActuatorKind) else kind))
        return actuators[parsed]

    async def _apply_mode(
        self,
        device_id: str,
        actuator: Actuator,
        mode: ActuatorMode,
        triggered_by: TriggeredBy,
        actor_id: Optional[str],
        reason: Optional[str],
        resend_action: Optional[str] = None,
    ) -> Transition:
        if mode == ActuatorMode.AUTO and not profile_for(actuator.kind).supports_auto:
            raise ModeNotSupported(actuator.kind.value, mode.value)

        previous = actuator.mode
        if previous == mode:
            if resend_action:
                await self._audit.record(
                    AuditEntry(
                        device_id=device_id,
                        actuator=actuator.kind.value,
                        action=resend_action,
                        previous_value=previous.value,
                        new_value=mode.value,
                        triggered_by=triggered_by,
                        reason=reason or f"Re-sent {mode.value} mode for {actuator.kind.value}",
                        timestamp=now_utc(),
                        actor_id=actor_id,
                    )
                )
                await self._queue.enqueue(device_id, mode_payload(actuator), CommandPriority.HIGH)
            return Transition(previous, previous)

        self._deferred.cancel(device_id, actuator.kind)
        actuator.mode = mode
        await self._repo.save_actuator(device_id, actuator)
        await self._audit.record(
            AuditEntry(
                device_id=device_id,
                actuator=actuator.kind.value,
                action=f"set_mode_{actuator.kind.value}",
                previous_value=previous.value,
                new_value=mode.value,
                triggered_by=triggered_by,
                reason=reason or f"Set {actuator.kind.value} to {mode.value} mode",
                timestamp=now_utc(),
                actor_id=actor_id,
            )
        )
        await self._queue.enqueue(device_id, mode_payload(actuator), CommandPriority.HIGH)
        return Transition(previous, mode)

    async def _apply_state(
        self,
        device_id: str,
        actuator: Actuator,
        desired: bool,
        triggered_by: TriggeredBy,
        actor_id: Optional[str],
        reason: Optional[str],
        duration_s: Optional[float],
    ) -> Transition:
        previous = actuator.state
        if previous == desired:
            if desired and duration_s:
                self._schedule_auto_off(device_id, actuator.kind, duration_s)
            return Transition(previous, previous)

        self._deferred.cancel(device_id, actuator.kind)
        actuator.state = desired
        actuator.last_toggled = now_utc()
        await self._repo.save_actuator(device_id, actuator)
        await self._audit.record(
            AuditEntry(
                device_id=device_id,
                actuator=actuator.kind.value,
                action=f"set_{actuator.kind.value}",
                previous_value=previous,
                new_value=desired,
                triggered_by=triggered_by,
                reason=reason or f"{actuator.kind.value} {'turned on' if desired else 'turned off'}",
                timestamp=actuator.last_toggled,
                actor_id=actor_id,
            )
        )
        priority = CommandPriority.CRITICAL if triggered_by == TriggeredBy.ALERT else CommandPriority.HIGH
        await self._queue.enqueue(device_id, state_payload(actuator), priority)

        if desired and duration_s:
            self._schedule_auto_off(device_id, actuator.kind, duration_s)
        return Transition(previous, desired)

    def _schedule_auto_off(self, device_id: str, kind: ActuatorKind, duration_s: float) -> None:
        async def auto_off() -> None:
            await self.set_state(device_id, kind, False, TriggeredBy.SCHEDULE, None, f"Run duration of {duration_s:.0f}s elapsed")

        self._deferred.schedule(device_id, kind, duration_s, auto_off, "auto-off")
