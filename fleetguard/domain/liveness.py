from __future__ import annotations
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional

from .models import LivenessState, OfflineTracker, Severity
from ..core.config import Settings
from ..core.timeutil import minutes_between


@dataclass(frozen=True)
class LivenessPolicy:
    offline_threshold_minutes: float = 10
    emergency_threshold_minutes: float = 60
    escalation_interval_minutes: float = 30
    max_escalations: int = 5

    @classmethod
    def from_settings(cls, s: Settings) -> "LivenessPolicy":
        return cls(
            offline_threshold_minutes=s.offline_threshold_minutes,
            emergency_threshold_minutes=s.emergency_threshold_minutes,
            escalation_interval_minutes=s.escalation_interval_minutes,
            max_escalations=s.max_escalations,
        )


class EffectKind(str, Enum):
    WENT_OFFLINE = "went_offline"
    ESCALATE = "escalate"
    APPLY_EMERGENCY = "apply_emergency"
    RECOVERED = "recovered"


@dataclass(frozen=True)
class Effect:
    kind: EffectKind
    offline_minutes: float
    severity: Severity = Severity.INFO
    emergency_was_applied: bool = False


@dataclass(frozen=True)
class LivenessDecision:
    tracker: Optional[OfflineTracker]
    state: LivenessState
    offline_minutes: float
    effects: list[Effect] = field(default_factory=list)


def _boundary(offline_minutes: float, policy: LivenessPolicy) -> int:
    return int(math.floor(offline_minutes / policy.escalation_interval_minutes))


def classify(
    tracker: Optional[OfflineTracker], offline_minutes: float, policy: LivenessPolicy
) -> LivenessState:
    if tracker is None:
        return LivenessState.ONLINE
    if tracker.emergency_applied or offline_minutes > policy.emergency_threshold_minutes:
        return LivenessState.OFFLINE_EMERGENCY
    if offline_minutes >= policy.escalation_interval_minutes:
        return LivenessState.OFFLINE_ESCALATING
    return LivenessState.OFFLINE_WARNING


def evaluate(
    tracker: Optional[OfflineTracker],
    last_heartbeat: datetime,
    now: datetime,
    policy: LivenessPolicy,
) -> LivenessDecision:
    """
    One sweep step for one device: current tracker + heartbeat age in,
    next tracker + effects out. No I/O.

    Escalations fire when the offline time crosses a new escalation-interval
    boundary since the last notification, so sweep intervals that do not
    divide the escalation interval still escalate once per boundary.
    """
    offline = minutes_between(last_heartbeat, now)
    is_offline = offline > policy.offline_threshold_minutes

    if tracker is None:
        if not is_offline:
            return LivenessDecision(None, LivenessState.ONLINE, offline)
        new_tracker = OfflineTracker(
            offline_since=last_heartbeat,
            escalation_boundary=_boundary(offline, policy),
        )
        return LivenessDecision(
            new_tracker,
            classify(new_tracker, offline, policy),
            offline,
            [Effect(EffectKind.WENT_OFFLINE, offline, Severity.WARNING)],
        )

    if not is_offline:
        episode = minutes_between(tracker.offline_since, now)
        return LivenessDecision(
            None,
            LivenessState.ONLINE,
            offline,
            [Effect(EffectKind.RECOVERED, episode, Severity.INFO, tracker.emergency_applied)],
        )

    effects: list[Effect] = []
    nxt = tracker

    boundary = _boundary(offline, policy)
    if boundary > tracker.escalation_boundary:
        if tracker.escalations_sent < policy.max_escalations:
            severity = Severity.CRITICAL if offline > policy.emergency_threshold_minutes else Severity.HIGH
            effects.append(Effect(EffectKind.ESCALATE, offline, severity))
            nxt = replace(nxt, escalations_sent=nxt.escalations_sent + 1)
        nxt = replace(nxt, escalation_boundary=boundary)

    if offline > policy.emergency_threshold_minutes and not tracker.emergency_applied:
        effects.append(Effect(EffectKind.APPLY_EMERGENCY, offline, Severity.CRITICAL))
        nxt = replace(nxt, emergency_applied=True)

    return LivenessDecision(nxt, classify(nxt, offline, policy), offline, effects)
