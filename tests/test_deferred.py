"""Tests for DeferredEffects."""

import asyncio

import pytest

from fleetguard.domain.models import ActuatorKind

PUMP = ActuatorKind.WATER_PUMP


class TestDeferredEffects:

    @pytest.mark.asyncio
    async def test_fires_once_and_detaches(self, deferred):
        fired = []

        async def effect():
            fired.append(deferred.get("gh-01", PUMP))

        deferred.schedule("gh-01", PUMP, 0.01, effect, "auto-off")
        await asyncio.sleep(0.1)

        assert fired == [None]
        assert deferred.pending() == []

    @pytest.mark.asyncio
    async def test_cancel(self, deferred):
        fired = []

        async def effect():
            fired.append(True)

        deferred.schedule("gh-01", PUMP, 0.05, effect)

        assert deferred.cancel("gh-01", PUMP) is True
        assert deferred.cancel("gh-01", PUMP) is False
        await asyncio.sleep(0.1)
        assert fired == []

    @pytest.mark.asyncio
    async def test_reschedule_replaces_ticket(self, deferred):
        fired = []

        async def first():
            fired.append("first")

        async def second():
            fired.append("second")

        a = deferred.schedule("gh-01", PUMP, 0.02, first)
        b = deferred.schedule("gh-01", PUMP, 0.04, second)
        await asyncio.sleep(0.15)

        assert a.id != b.id
        assert fired == ["second"]

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, deferred):
        deferred.schedule("gh-01", PUMP, 10, _noop)
        deferred.schedule("gh-01", ActuatorKind.VENTILATION_FAN, 10, _noop)
        deferred.schedule("gh-02", PUMP, 10, _noop)

        assert len(deferred.pending()) == 3
        assert len(deferred.pending("gh-01")) == 2

    @pytest.mark.asyncio
    async def test_failing_effect_is_logged(self, deferred, caplog):
        async def boom():
            raise RuntimeError("device gone")

        deferred.schedule("gh-01", PUMP, 0.01, boom, "auto-off")
        await asyncio.sleep(0.1)

        assert "device gone" in caplog.text
        assert deferred.pending() == []

    @pytest.mark.asyncio
    async def test_shutdown_cancels_everything(self, deferred):
        deferred.schedule("gh-01", PUMP, 10, _noop)
        await deferred.shutdown()

        assert deferred.pending() == []


async def _noop():
    return None
