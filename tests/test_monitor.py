"""Tests for the post-deploy rollback monitor."""

import asyncio

import pytest

from rolloutctl.deploy.bus import ProgressBus
from rolloutctl.deploy.models import DeploymentPhase, HealthCheckSpec, RollbackPolicy
from rolloutctl.deploy.monitor import RollbackMonitor

SPEC = HealthCheckSpec(interval=0.01, timeout=0.1)
POLICY = RollbackPolicy(enabled=True, error_threshold=3, check_interval=0.01, callback="page-oncall")


class TestRollbackMonitor:
    """Tests for RollbackMonitor."""

    @pytest.mark.asyncio
    async def test_three_consecutive_failures_trigger_once(self, probe, bus: ProgressBus):
        probe.script(False, False, False, False, False)
        rollbacks = []

        async def on_rollback():
            rollbacks.append(1)

        monitor = RollbackMonitor(probe, SPEC, POLICY, "run-1", bus=bus, on_rollback=on_rollback)
        monitor.start()
        await monitor.wait()
        await asyncio.sleep(0.05)
        await bus.flush()

        failed = [e for e in bus.history("run-1") if e.phase == DeploymentPhase.FAILED]
        assert rollbacks == [1]
        assert len(failed) == 1
        assert failed[0].data["cause"] == "rollback-triggered"
        assert failed[0].data["callback"] == "page-oncall"
        assert failed[0].data["failures"] == 3
        assert monitor.triggered
        assert not monitor.running
        assert probe.checks == 3

    @pytest.mark.asyncio
    async def test_healthy_probe_resets_counter(self, probe, bus: ProgressBus, wait_until):
        probe.script(False, False, True, False, False, True)
        rollbacks = []

        monitor = RollbackMonitor(
            probe, SPEC, POLICY, "run-1", bus=bus, on_rollback=lambda: rollbacks.append(1)
        )
        monitor.start()
        await wait_until(lambda: monitor.checks >= 8)
        monitor.stop()
        await monitor.wait()

        assert rollbacks == []
        assert not monitor.triggered
        assert monitor.consecutive_failures == 0
        assert bus.history("run-1") == []

    @pytest.mark.asyncio
    async def test_disabled_policy_does_not_start(self, probe):
        monitor = RollbackMonitor(probe, SPEC, RollbackPolicy(enabled=False), "run-1")
        monitor.start()

        assert not monitor.running
        await asyncio.sleep(0.02)
        assert probe.checks == 0

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, probe):
        monitor = RollbackMonitor(probe, SPEC, POLICY, "run-1")
        monitor.start()
        assert monitor.running
        monitor.stop()
        monitor.stop()
        await monitor.wait()

        assert not monitor.running

    @pytest.mark.asyncio
    async def test_start_returns_immediately(self, probe):
        monitor = RollbackMonitor(probe, SPEC, RollbackPolicy(check_interval=60), "run-1")
        monitor.start()

        assert monitor.running
        assert probe.checks == 0
        monitor.stop()
        await monitor.wait()

    @pytest.mark.asyncio
    async def test_rollback_callback_error_is_logged(self, probe, bus: ProgressBus):
        probe.script(False)

        def broken():
            raise RuntimeError("hook failed")

        monitor = RollbackMonitor(probe, SPEC, POLICY, "run-1", bus=bus, on_rollback=broken)
        monitor.start()
        await monitor.wait()

        assert monitor.triggered
        assert not monitor.running
