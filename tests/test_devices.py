"""Tests for DeviceService: provisioning, heartbeats and sensor snapshots."""

from datetime import datetime, timezone

import pytest

from fleetguard.core.errors import DeviceNotFound
from fleetguard.domain.models import ActuatorKind, SensorSnapshot


class TestHeartbeat:

    @pytest.mark.asyncio
    async def test_unknown_device_is_provisioned(self, devices, repo, at):
        result = await devices.heartbeat("gh-09", battery_level=55, received_at=at(3))

        assert result.created is True
        assert result.device.last_heartbeat == at(3)
        assert set(await repo.get_actuators("gh-09")) == {
            ActuatorKind.WATER_PUMP, ActuatorKind.VENTILATION_FAN, ActuatorKind.FERTILIZER_PUMP,
        }

    @pytest.mark.asyncio
    async def test_known_device_updates_telemetry(self, devices, device, at):
        result = await devices.heartbeat(device.device_id, wifi_signal=-70, errors=["dht timeout"], received_at=at(4))

        assert result.created is False
        stored = await devices.get(device.device_id)
        assert stored.wifi_signal == -70
        assert stored.errors == ["dht timeout"]
        assert stored.last_heartbeat == at(4)

    @pytest.mark.asyncio
    async def test_get_unknown(self, devices):
        with pytest.raises(DeviceNotFound):
            await devices.get("ghost")


class TestSnapshots:

    @pytest.mark.asyncio
    async def test_naive_timestamp_after_aware_one(self, devices, device, at):
        await devices.record_snapshot(SensorSnapshot(device.device_id, at(1), 24.0, 40.0, 70.0))
        await devices.record_snapshot(SensorSnapshot(device.device_id, datetime(2030, 1, 1), 36.0, 40.0, 5.0))

        latest = await devices.latest_snapshot(device.device_id)

        assert latest.greenhouse_temperature == 36.0
        assert latest.ts_utc.tzinfo is not None
        assert latest.ts_utc == datetime(2030, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_older_snapshot_does_not_replace_latest(self, devices, device, at):
        await devices.record_snapshot(SensorSnapshot(device.device_id, at(10), 30.0))
        await devices.record_snapshot(SensorSnapshot(device.device_id, at(5), 20.0))

        assert (await devices.latest_snapshot(device.device_id)).greenhouse_temperature == 30.0

    @pytest.mark.asyncio
    async def test_unknown_device(self, devices):
        with pytest.raises(DeviceNotFound):
            await devices.record_snapshot(SensorSnapshot("ghost", datetime(2030, 1, 1)))
