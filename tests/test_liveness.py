"""Tests for the liveness state machine (pure, no I/O)."""

from datetime import datetime, timedelta, timezone

from fleetguard.domain.liveness import EffectKind, LivenessPolicy, classify, evaluate
from fleetguard.domain.models import LivenessState, OfflineTracker, Severity

T0 = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
POLICY = LivenessPolicy()


def at(minutes: float) -> datetime:
    return T0 + timedelta(minutes=minutes)


def run(sweep_minutes, policy=POLICY):
    """Sweep a silent device (last heartbeat T0); return {minute: [effect kinds]} for sweeps with effects."""
    tracker = None
    seen = {}
    for m in sweep_minutes:
        decision = evaluate(tracker, T0, at(m), policy)
        tracker = decision.tracker
        if decision.effects:
            seen[m] = [(e.kind, e.severity) for e in decision.effects]
    return seen, tracker


class TestEvaluate:

    def test_fresh_heartbeat_is_online(self):
        decision = evaluate(None, T0, at(5), POLICY)

        assert decision.tracker is None
        assert decision.state == LivenessState.ONLINE
        assert decision.effects == []

    def test_threshold_is_exclusive(self):
        assert evaluate(None, T0, at(10), POLICY).tracker is None
        assert evaluate(None, T0, at(10.5), POLICY).tracker is not None

    def test_seven_minute_sweeps(self):
        seen, tracker = run(range(7, 99, 7))

        assert seen == {
            14: [(EffectKind.WENT_OFFLINE, Severity.WARNING)],
            35: [(EffectKind.ESCALATE, Severity.HIGH)],
            63: [(EffectKind.ESCALATE, Severity.CRITICAL), (EffectKind.APPLY_EMERGENCY, Severity.CRITICAL)],
            91: [(EffectKind.ESCALATE, Severity.CRITICAL)],
        }
        assert tracker.escalations_sent == 3
        assert tracker.emergency_applied is True

    def test_five_minute_sweeps(self):
        seen, _ = run(range(5, 95, 5))

        assert seen[15] == [(EffectKind.WENT_OFFLINE, Severity.WARNING)]
        assert seen[30] == [(EffectKind.ESCALATE, Severity.HIGH)]
        # 60 is not beyond the emergency threshold yet
        assert seen[60] == [(EffectKind.ESCALATE, Severity.HIGH)]
        assert seen[65] == [(EffectKind.APPLY_EMERGENCY, Severity.CRITICAL)]
        assert seen[90] == [(EffectKind.ESCALATE, Severity.CRITICAL)]

    def test_escalations_are_capped(self):
        policy = LivenessPolicy(max_escalations=2)
        seen, tracker = run(range(5, 300, 5), policy)

        escalations = [m for m, effects in seen.items() if (EffectKind.ESCALATE, Severity.HIGH) in effects
                       or (EffectKind.ESCALATE, Severity.CRITICAL) in effects]
        assert escalations == [30, 60]
        assert tracker.escalations_sent == 2

    def test_emergency_fires_once(self):
        seen, _ = run(range(5, 400, 5))

        emergencies = [m for m, effects in seen.items() if any(k == EffectKind.APPLY_EMERGENCY for k, _ in effects)]
        assert emergencies == [65]

    def test_late_discovery_does_not_skip_warning(self):
        # First sweep after a long silence: offline notice now, emergency on the next sweep
        first = evaluate(None, T0, at(120), POLICY)
        assert [e.kind for e in first.effects] == [EffectKind.WENT_OFFLINE]
        assert first.tracker.escalation_boundary == 4

        second = evaluate(first.tracker, T0, at(125), POLICY)
        assert [e.kind for e in second.effects] == [EffectKind.APPLY_EMERGENCY]

    def test_recovery_reports_episode(self):
        tracker = OfflineTracker(offline_since=T0, escalations_sent=2, escalation_boundary=2, emergency_applied=True)
        heartbeat = at(70)

        decision = evaluate(tracker, heartbeat, at(72), POLICY)

        assert decision.tracker is None
        assert decision.state == LivenessState.ONLINE
        [effect] = decision.effects
        assert effect.kind == EffectKind.RECOVERED
        assert effect.emergency_was_applied is True
        assert effect.offline_minutes == 72


class TestClassify:

    def test_states(self):
        t = OfflineTracker(offline_since=T0)

        assert classify(None, 100, POLICY) == LivenessState.ONLINE
        assert classify(t, 15, POLICY) == LivenessState.OFFLINE_WARNING
        assert classify(t, 30, POLICY) == LivenessState.OFFLINE_ESCALATING
        assert classify(t, 61, POLICY) == LivenessState.OFFLINE_EMERGENCY

    def test_emergency_sticks_while_offline(self):
        t = OfflineTracker(offline_since=T0, emergency_applied=True)
        assert classify(t, 20, POLICY) == LivenessState.OFFLINE_EMERGENCY
