"""Tests for LivenessMonitor: sweeps, remediation and recovery."""

import asyncio

import pytest

from fleetguard.core.errors import DeviceNotFound, SweepError
from fleetguard.domain.models import (
    ActuatorKind,
    ActuatorMode,
    CommandPriority,
    LivenessState,
    SensorSnapshot,
    TriggeredBy,
)
from fleetguard.services.monitor import LivenessMonitor

PUMP = ActuatorKind.WATER_PUMP
FAN = ActuatorKind.VENTILATION_FAN
FERT = ActuatorKind.FERTILIZER_PUMP


def _types(events, device_id="gh-01"):
    return [e.type for e in events.recent(device_id)]


async def _commands(queue, device_id="gh-01"):
    return [c.payload.device_command for c in await queue.list_commands(device_id)]


class TestOfflineEpisode:

    @pytest.mark.asyncio
    async def test_full_episode(self, monitor, registry, queue, devices, events, audit, device, at):
        """Offline notice, escalations, emergency plan, then recovery back to AUTO."""
        for m in range(12, 58, 5):
            await monitor.sweep(at(m))

        assert _types(events) == ["device_offline", "device_offline_escalation"]
        assert await queue.list_commands(device.device_id) == []

        await monitor.sweep(at(63))

        assert _types(events)[-2:] == ["device_offline_escalation", "emergency_failsafe"]
        assert events.recent(device.device_id)[-2].severity.value == "critical"
        assert await registry.get_mode(device.device_id, PUMP) == ActuatorMode.MANUAL
        assert await registry.get_state(device.device_id, PUMP) is True
        assert await registry.get_mode(device.device_id, FAN) == ActuatorMode.MANUAL
        assert await registry.get_state(device.device_id, FAN) is True
        assert await registry.get_state(device.device_id, FERT) is False
        assert await _commands(queue) == ["WATER:MANUAL", "WATER:MANUAL:ON", "FAN:MANUAL", "FAN:MANUAL:ON"]
        states = [c for c in await queue.list_commands(device.device_id) if c.payload.desired_state is not None]
        assert all(c.priority == CommandPriority.CRITICAL for c in states)
        assert monitor.tracker(device.device_id).emergency_applied is True

        await devices.heartbeat(device.device_id, battery_level=87, received_at=at(65))
        await monitor.sweep(at(68))

        assert await _commands(queue) == [
            "WATER:MANUAL", "WATER:MANUAL:ON", "FAN:MANUAL", "FAN:MANUAL:ON", "WATER:AUTO", "FAN:AUTO",
        ]
        assert await registry.get_mode(device.device_id, PUMP) == ActuatorMode.AUTO
        assert await registry.get_mode(device.device_id, FAN) == ActuatorMode.AUTO
        assert monitor.tracker(device.device_id) is None

        online = events.recent(device.device_id)[-1]
        assert online.type == "device_online"
        assert online.data == {"offlineDuration": 68}

        actions = [e.action for e in (await audit.history(device.device_id, actuator="system")).entries]
        assert actions[:3] == ["device_online", "failsafe_reset", "emergency_failsafe"]
        assert actions[-1] == "device_offline"

    @pytest.mark.asyncio
    async def test_emergency_not_reapplied(self, monitor, queue, device, at):
        for m in range(12, 64, 5):
            await monitor.sweep(at(m))
        await monitor.sweep(at(63))
        before = await _commands(queue)

        for m in (68, 73, 78):
            await monitor.sweep(at(m))

        assert await _commands(queue) == before

    @pytest.mark.asyncio
    async def test_recovery_without_emergency_sends_nothing(self, monitor, queue, devices, events, device, at):
        await monitor.sweep(at(15))
        await devices.heartbeat(device.device_id, received_at=at(20))
        await monitor.sweep(at(22))

        assert _types(events) == ["device_offline", "device_online"]
        assert await queue.list_commands(device.device_id) == []

    @pytest.mark.asyncio
    async def test_recovery_always_resends_auto(self, monitor, registry, queue, devices, audit, device, at):
        """A fan switched back to AUTO during the outage still gets FAN:AUTO on reconnect."""
        await monitor.sweep(at(12))
        await monitor.sweep(at(63))
        await registry.set_mode(device.device_id, FAN, "AUTO")
        count = len(await queue.list_commands(device.device_id))

        await devices.heartbeat(device.device_id, received_at=at(65))
        await monitor.sweep(at(68))

        tail = (await queue.list_commands(device.device_id))[count:]
        assert [c.payload.device_command for c in tail] == ["WATER:AUTO", "FAN:AUTO"]
        assert all(c.priority == CommandPriority.HIGH for c in tail)
        assert await registry.get_mode(device.device_id, FAN) == ActuatorMode.AUTO

        fan_entries = (await audit.history(device.device_id, actuator="ventilation_fan")).entries
        assert fan_entries[0].action == "failsafe_reset"
        assert fan_entries[0].triggered_by == TriggeredBy.AUTOMATION
        assert (fan_entries[0].previous_value, fan_entries[0].new_value) == ("AUTO", "AUTO")


class TestCriticalConditions:

    @pytest.mark.asyncio
    async def test_offline_with_critical_readings(self, monitor, repo, registry, queue, events, audit, device, at):
        await repo.insert_snapshot(SensorSnapshot(device.device_id, at(0), 38.0, 45.0, 8.0))

        await monitor.sweep(at(12))

        assert await registry.get_mode(device.device_id, FAN) == ActuatorMode.MANUAL
        assert await registry.get_state(device.device_id, FAN) is True
        assert await registry.get_state(device.device_id, PUMP) is False
        assert await _commands(queue) == ["FAN:MANUAL", "FAN:MANUAL:ON"]

        alert = events.recent(device.device_id)[-1]
        assert alert.type == "critical_alert"
        assert alert.data == {"waterLevel": 8.0}

        latest = (await audit.history(device.device_id)).entries[0]
        assert latest.action == "critical_failsafe"
        assert latest.triggered_by == TriggeredBy.ALERT


class TestSweep:

    @pytest.mark.asyncio
    async def test_failing_device_does_not_stop_sweep(self, monitor, repo, devices, events, device, at, monkeypatch):
        await devices.provision("bad", heartbeat_at=at(0))
        original = repo.latest_snapshot

        async def flaky(device_id):
            if device_id == "bad":
                raise RuntimeError("sensor store unavailable")
            return await original(device_id)

        monkeypatch.setattr(repo, "latest_snapshot", flaky)
        report = await monitor.sweep(at(12))

        assert report.evaluated == 1
        assert [e.device_id for e in report.errors] == ["bad"]
        assert isinstance(report.errors[0], SweepError)
        assert monitor.tracker(device.device_id) is not None
        assert monitor.tracker("bad") is None

        monkeypatch.setattr(repo, "latest_snapshot", original)
        report = await monitor.sweep(at(17))

        assert report.errors == []
        assert monitor.tracker("bad") is not None

    @pytest.mark.asyncio
    async def test_in_flight_device_is_skipped(self, monitor, device, at):
        lock = monitor._locks(device.device_id)
        await lock.acquire()
        try:
            report = await monitor.sweep(at(12))
        finally:
            lock.release()

        assert report.skipped == [device.device_id]
        assert report.evaluated == 0
        assert monitor.tracker(device.device_id) is None

    @pytest.mark.asyncio
    async def test_online_device_has_no_tracker(self, monitor, events, device, at):
        report = await monitor.sweep(at(5))

        assert report.evaluated == 1
        assert monitor.tracker(device.device_id) is None
        assert events.recent() == []
        assert monitor.last_report is report

    @pytest.mark.asyncio
    async def test_loop_runs_and_stops(self, repo, registry, audit, events, device):
        monitor = LivenessMonitor(repo, repo, registry, audit, events, interval_s=0.05, initial_delay_s=0)
        await monitor.start()
        await asyncio.sleep(0.2)
        await monitor.stop()

        assert monitor.last_report is not None


class TestFailsafeAndStatus:

    @pytest.mark.asyncio
    async def test_trigger_failsafe(self, monitor, registry, audit, events, device):
        done = await monitor.trigger_failsafe(device.device_id, "op-9", "Storm incoming")

        assert done == ["Water pump activated", "Ventilation fan activated", "Fertilizer pump deactivated for safety"]
        assert await registry.get_state(device.device_id, PUMP) is True
        entry = (await audit.history(device.device_id, actuator="system")).entries[0]
        assert entry.action == "failsafe_activation"
        assert entry.actor_id == "op-9"
        assert events.recent(device.device_id)[-1].type == "emergency_failsafe"

    @pytest.mark.asyncio
    async def test_trigger_failsafe_marks_offline_episode(self, monitor, device, at):
        await monitor.sweep(at(12))
        await monitor.trigger_failsafe(device.device_id)

        assert monitor.tracker(device.device_id).emergency_applied is True

    @pytest.mark.asyncio
    async def test_trigger_failsafe_unknown_device(self, monitor):
        with pytest.raises(DeviceNotFound):
            await monitor.trigger_failsafe("ghost")

    @pytest.mark.asyncio
    async def test_offline_status(self, monitor, devices, device, at):
        await devices.provision("gh-02", heartbeat_at=at(20))
        await monitor.sweep(at(40))

        statuses = await monitor.offline_status(at(40))

        assert [s.device_id for s in statuses] == ["gh-01", "gh-02"]
        assert statuses[0].state == LivenessState.OFFLINE_ESCALATING
        assert statuses[1].state == LivenessState.OFFLINE_WARNING
        assert statuses[0].offline_since == device.last_heartbeat
        assert statuses[0].heartbeat_age_minutes == 40

    @pytest.mark.asyncio
    async def test_status_for_online_device(self, monitor, device, at):
        status = monitor.status_for(device, at(3))

        assert status.state == LivenessState.ONLINE
        assert status.offline_since is None
