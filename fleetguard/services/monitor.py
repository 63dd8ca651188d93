from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from ..core.errors import DeviceNotFound, SweepError
from ..core.timeutil import minutes_between, now_utc
from ..domain.interfaces import EventPublisher, Repository, SensorFeed
from ..domain.liveness import Effect, EffectKind, LivenessDecision, LivenessPolicy, classify, evaluate
from ..domain.models import (
    Action,
    ActuatorKind,
    Device,
    FleetEvent,
    LivenessState,
    OfflineTracker,
    Severity,
    TriggeredBy,
)
from ..domain.remediation import RemediationEngine
from .audit import AuditLog
from .locks import KeyedLocks
from .registry import ActuatorRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LivenessStatus:
    device_id: str
    state: LivenessState
    heartbeat_age_minutes: float
    offline_since: Optional[datetime] = None
    escalations_sent: int = 0
    emergency_applied: bool = False


@dataclass
class SweepReport:
    started_at: datetime
    evaluated: int = 0
    skipped: list[str] = field(default_factory=list)
    errors: list[SweepError] = field(default_factory=list)


class LivenessMonitor:
    """
    Periodic heartbeat sweep. Owns the offline trackers: one per offline
    device, none while a device is online.

    Each device is evaluated by the pure `evaluate` transition; its effects are
    applied through the registry and the next tracker is committed only after
    every effect succeeded. A failed device is retried on the next sweep and
    never stops the rest of the fleet.
    """

    def __init__(
        self,
        repo: Repository,
        sensors: SensorFeed,
        registry: ActuatorRegistry,
        audit: AuditLog,
        events: EventPublisher,
        engine: Optional[RemediationEngine] = None,
        policy: Optional[LivenessPolicy] = None,
        interval_s: float = 300,
        initial_delay_s: float = 5,
    ) -> None:
        self._repo = repo
        self._sensors = sensors
        self._registry = registry
        self._audit = audit
        self._events = events
        self._engine = engine or RemediationEngine()
        self.policy = policy or LivenessPolicy()
        self._interval_s = interval_s
        self._initial_delay_s = initial_delay_s

        self._trackers: dict[str, OfflineTracker] = {}
        self._locks = KeyedLocks()

        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self.last_report: Optional[SweepReport] = None

    # --- loop ---

    async def start(self) -> None:
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="liveness_sweep")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            await self._task
            self._task = None

    async def _run(self) -> None:
        logger.info(
            "Liveness monitor started (interval=%ss offline>%smin emergency>%smin)",
            self._interval_s,
            self.policy.offline_threshold_minutes,
            self.policy.emergency_threshold_minutes,
        )
        delay = self._initial_delay_s
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass
            delay = self._interval_s

            try:
                await self.sweep()
            except Exception as e:
                logger.exception("Liveness sweep error: %s", e)

        logger.info("Liveness monitor stopped")

    # --- sweep ---

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or now_utc()
        report = SweepReport(started_at=now)
        devices = await self._repo.list_devices()

        known = {d.device_id for d in devices}
        for stale in set(self._trackers) - known:
            logger.info("Dropping offline tracker for deprovisioned device %s", stale)
            self._trackers.pop(stale, None)

        for device in devices:
            lock = self._locks(device.device_id)
            if lock.locked():
                logger.warning("Evaluation of %s still in flight, skipping this cycle", device.device_id)
                report.skipped.append(device.device_id)
                continue
            try:
                async with lock:
                    await self._evaluate(device, now)
                report.evaluated += 1
            except Exception as e:
                err = SweepError(device.device_id, e)
                logger.exception("%s", err.message)
                report.errors.append(err)

        self.last_report = report
        logger.info(
            "Sweep done: evaluated=%d skipped=%d errors=%d offline=%d",
            report.evaluated, len(report.skipped), len(report.errors), len(self._trackers),
        )
        return report

    async def _evaluate(self, device: Device, now: datetime) -> LivenessDecision:
        current = self._trackers.get(device.device_id)
        decision = evaluate(current, device.last_heartbeat, now, self.policy)
        for effect in decision.effects:
            await self._apply(device, effect, now)

        if decision.tracker is None:
            self._trackers.pop(device.device_id, None)
        else:
            self._trackers[device.device_id] = decision.tracker
        return decision

    async def _apply(self, device: Device, effect: Effect, now: datetime) -> None:
        if effect.kind == EffectKind.WENT_OFFLINE:
            await self._went_offline(device, effect, now)
        elif effect.kind == EffectKind.ESCALATE:
            minutes = int(effect.offline_minutes)
            await self._events.publish(FleetEvent(
                "device_offline_escalation", device.device_id, effect.severity,
                f"Device {device.device_id} has been offline for {minutes} minutes",
                now, {"offlineMinutes": minutes},
            ))
        elif effect.kind == EffectKind.APPLY_EMERGENCY:
            await self._apply_emergency(
                device.device_id, now, TriggeredBy.ALERT, None,
                f"Device offline for over {self.policy.emergency_threshold_minutes:g} minutes - emergency procedures activated",
                action="emergency_failsafe",
            )
        elif effect.kind == EffectKind.RECOVERED:
            await self._recovered(device, effect, now)
        else:
            raise ValueError(f"Unhandled liveness effect: {effect.kind}")

    async def _went_offline(self, device: Device, effect: Effect, now: datetime) -> None:
        minutes = int(effect.offline_minutes)
        await self._events.publish(FleetEvent(
            "device_offline", device.device_id, Severity.WARNING,
            f"Device {device.device_id} has gone offline",
            now, {"offlineMinutes": minutes},
        ))
        await self._audit.record_system(
            device.device_id, "device_offline", True, False, TriggeredBy.ALERT,
            f"Device went offline after {minutes} minutes of no communication",
        )

        kinds = await self._kinds(device.device_id)
        snapshot = await self._sensors.latest_snapshot(device.device_id)
        assessment = self._engine.assess_critical(kinds, snapshot)
        if assessment.empty:
            return

        await self._apply_actions(device.device_id, assessment.actions, TriggeredBy.ALERT)
        for alert in assessment.alerts:
            await self._events.publish(FleetEvent(
                "critical_alert", device.device_id, Severity.CRITICAL, alert.message, now, dict(alert.data),
            ))
        notes = [a.description for a in assessment.actions] + [a.message for a in assessment.alerts]
        logger.warning("Critical conditions on %s: %s", device.device_id, "; ".join(notes))
        await self._audit.record_system(
            device.device_id, "critical_failsafe", False, True, TriggeredBy.ALERT,
            f"Critical conditions: {', '.join(notes)}",
        )

    async def _apply_emergency(
        self,
        device_id: str,
        now: datetime,
        triggered_by: TriggeredBy,
        actor_id: Optional[str],
        reason: str,
        action: str,
    ) -> list[str]:
        logger.warning("Activating emergency failsafe for %s", device_id)
        plan = self._engine.emergency_plan(await self._kinds(device_id))
        await self._apply_actions(device_id, plan, triggered_by, actor_id)
        done = [a.description for a in plan]
        await self._audit.record_system(device_id, action, False, True, triggered_by, reason, actor_id)
        await self._events.publish(FleetEvent(
            "emergency_failsafe", device_id, Severity.CRITICAL,
            f"Emergency failsafe activated for {device_id}: {reason}",
            now, {"actions": done},
        ))
        return done

    async def _recovered(self, device: Device, effect: Effect, now: datetime) -> None:
        minutes = int(effect.offline_minutes)
        if effect.emergency_was_applied:
            logger.info("Resetting failsafe mode for %s", device.device_id)
            plan = self._engine.recovery_plan(await self._kinds(device.device_id))
            await self._apply_actions(
                device.device_id, plan, TriggeredBy.AUTOMATION, resend_action="failsafe_reset"
            )
            await self._audit.record_system(
                device.device_id, "failsafe_reset", True, False, TriggeredBy.AUTOMATION,
                "Device reconnected - resetting to automatic modes",
            )
        await self._events.publish(FleetEvent(
            "device_online", device.device_id, Severity.INFO,
            f"Device {device.device_id} is back online",
            now, {"offlineDuration": minutes},
        ))
        await self._audit.record_system(
            device.device_id, "device_online", False, True, TriggeredBy.ALERT,
            f"Device came back online after {minutes} minutes offline",
        )

    async def _apply_actions(
        self,
        device_id: str,
        actions: list[Action],
        triggered_by: TriggeredBy,
        actor_id: Optional[str] = None,
        resend_action: Optional[str] = None,
    ) -> None:
        # Mode first, so a forced state is encoded as a MANUAL command
        for a in actions:
            if a.desired_mode is not None:
                await self._registry.set_mode(
                    device_id, a.actuator_kind, a.desired_mode, actor_id, a.description, triggered_by, resend_action
                )
            if a.desired_state is not None:
                await self._registry.set_state(
                    device_id, a.actuator_kind, a.desired_state, triggered_by, actor_id, a.description
                )

    async def _kinds(self, device_id: str) -> set[ActuatorKind]:
        return set(await self._repo.get_actuators(device_id))

    # --- operator actions & queries ---

    async def trigger_failsafe(
        self,
        device_id: str,
        actor_id: Optional[str] = None,
        reason: str = "Manual failsafe activation",
    ) -> list[str]:
        """Apply the emergency plan on demand. An offline episode in progress will not reapply it."""
        device = await self._repo.get_device(device_id)
        if device is None:
            raise DeviceNotFound(device_id)
        async with self._locks(device_id):
            done = await self._apply_emergency(
                device_id, now_utc(), TriggeredBy.ALERT, actor_id, reason, action="failsafe_activation"
            )
            tracker = self._trackers.get(device_id)
            if tracker is not None and not tracker.emergency_applied:
                self._trackers[device_id] = replace(tracker, emergency_applied=True)
        return done

    def tracker(self, device_id: str) -> Optional[OfflineTracker]:
        return self._trackers.get(device_id)

    def status_for(self, device: Device, now: Optional[datetime] = None) -> LivenessStatus:
        now = now or now_utc()
        age = minutes_between(device.last_heartbeat, now)
        tracker = self._trackers.get(device.device_id)
        return LivenessStatus(
            device_id=device.device_id,
            state=classify(tracker, age, self.policy),
            heartbeat_age_minutes=age,
            offline_since=tracker.offline_since if tracker else None,
            escalations_sent=tracker.escalations_sent if tracker else 0,
            emergency_applied=tracker.emergency_applied if tracker else False,
        )

    async def offline_status(self, now: Optional[datetime] = None) -> list[LivenessStatus]:
        now = now or now_utc()
        out: list[LivenessStatus] = []
        for device_id in sorted(self._trackers):
            device = await self._repo.get_device(device_id)
            if device is not None:
                out.append(self.status_for(device, now))
        return out
