"""Tests for the canary strategy engine."""

import asyncio

import pytest

from rolloutctl.core.exceptions import PlatformError, ValidationFault
from rolloutctl.deploy.metrics import MetricsSource, StaticMetricsSource
from rolloutctl.deploy.models import DeploymentPhase, MetricsWindow
from rolloutctl.deploy.strategies import CanaryEngine
from rolloutctl.deploy.traffic import InMemoryTrafficController

CANARY = "svc-a-canary"


def canary_plan(make_plan, steps, **params):
    return make_plan(strategy="canary", canary={"steps": steps, **params})


class TestCanaryEngine:
    """Tests for CanaryEngine."""

    @pytest.mark.asyncio
    async def test_three_steps_to_full_traffic(self, make_engine, make_plan, traffic, platform, bus):
        plan = canary_plan(make_plan, [{"weight": 10}, {"weight": 50}, {"weight": 100}])
        engine = make_engine(CanaryEngine, plan)

        snapshot = await engine.run()

        assert snapshot.phase == DeploymentPhase.COMPLETE
        assert snapshot.traffic_weight == 100
        assert traffic.weight_history(CANARY) == [10, 50, 100]
        assert platform.workloads[("default", CANARY)].labels["track"] == "canary"

        events = bus.history("run-1")
        step_weights = [e.data["weight"] for e in events if e.data and "step" in e.data]
        assert step_weights == [10, 50, 100]
        assert events[0].phase == DeploymentPhase.INIT
        assert events[-1].phase == DeploymentPhase.COMPLETE
        assert "promote" not in engine.transitions

    @pytest.mark.asyncio
    async def test_auto_promotes_partial_final_step(self, make_engine, make_plan, traffic):
        engine = make_engine(CanaryEngine, canary_plan(make_plan, [{"weight": 20}, {"weight": 50}]))

        snapshot = await engine.run()

        assert snapshot.phase == DeploymentPhase.COMPLETE
        assert traffic.weight_history(CANARY) == [20, 50, 100]
        assert "promote" in engine.transitions

    @pytest.mark.asyncio
    async def test_cancel_mid_step_reverts_promptly(
        self, make_engine, make_plan, traffic, platform, bus, wait_until
    ):
        steps = [
            {"weight": 10},
            {"weight": 25, "duration": 30},
            {"weight": 50, "duration": 30},
            {"weight": 100, "duration": 30},
        ]
        engine = make_engine(CanaryEngine, canary_plan(make_plan, steps))
        task = asyncio.create_task(engine.run())

        await wait_until(lambda: engine.current_step == 2 and engine.state.strategy_state == "hold")
        engine.control.cancel()
        snapshot = await asyncio.wait_for(task, 1.0)

        assert snapshot.phase == DeploymentPhase.FAILED
        assert snapshot.failure_cause == "cancelled"
        assert snapshot.cancelled
        assert snapshot.traffic_weight == 0
        assert traffic.weight_history(CANARY) == [10, 25, 0]
        assert CANARY in platform.torn_down
        assert bus.latest("run-1").data["failedState"] == "hold"

    @pytest.mark.asyncio
    async def test_cancel_with_promote_finishes_rollout(self, make_engine, make_plan, traffic, bus, wait_until):
        engine = make_engine(CanaryEngine, canary_plan(make_plan, [{"weight": 10, "duration": 30}]))
        task = asyncio.create_task(engine.run())

        await wait_until(lambda: engine.state.strategy_state == "hold")
        engine.control.cancel(promote=True)
        snapshot = await asyncio.wait_for(task, 1.0)

        assert snapshot.phase == DeploymentPhase.COMPLETE
        assert snapshot.cancelled
        assert snapshot.traffic_weight == 100
        assert traffic.weight_history(CANARY) == [10, 100]
        assert bus.latest("run-1").data["promotedOnCancel"] is True

    @pytest.mark.asyncio
    async def test_analysis_failure_rolls_back(self, make_engine, make_plan, traffic, bus, engine_context):
        engine_context.metrics = StaticMetricsSource(
            [MetricsWindow(error_rate=0.001), MetricsWindow(error_rate=0.2)]
        )
        plan = canary_plan(
            make_plan,
            [{"weight": 10}, {"weight": 50}, {"weight": 100}],
            analysis={"max_error_rate": 0.01},
        )
        engine = make_engine(CanaryEngine, plan)

        snapshot = await engine.run()

        assert snapshot.phase == DeploymentPhase.FAILED
        assert snapshot.failure_cause == "gate"
        assert traffic.weight_history(CANARY) == [10, 50, 0]

        failed = bus.latest("run-1")
        assert failed.data["failedState"] == "analysis"
        assert any("error_rate" in v for v in failed.data["violations"])

    @pytest.mark.asyncio
    async def test_unavailable_metrics_fail_the_gate(self, make_engine, make_plan, traffic, engine_context):
        class BrokenSource(MetricsSource):
            async def collect(self, destination, namespace, start, end):
                raise PlatformError("prometheus unreachable", status_code=503)

        engine_context.metrics = BrokenSource()
        plan = canary_plan(make_plan, [{"weight": 10}], analysis={"min_success_rate": 0.99})
        engine = make_engine(CanaryEngine, plan)

        snapshot = await engine.run()

        assert snapshot.failure_cause == "gate"
        assert traffic.weight_history(CANARY) == [10, 0]

    @pytest.mark.asyncio
    async def test_pause_waits_for_resume(self, make_engine, make_plan, traffic, wait_until):
        plan = canary_plan(make_plan, [{"weight": 20, "pause": True}, {"weight": 100}])
        engine = make_engine(CanaryEngine, plan)
        task = asyncio.create_task(engine.run())

        await wait_until(lambda: engine.control.waiting)
        snapshot = engine.state.snapshot()
        assert snapshot.paused
        assert snapshot.strategy_state == "paused"
        assert traffic.weight_history(CANARY) == [20]

        engine.control.resume()
        snapshot = await asyncio.wait_for(task, 2.0)

        assert snapshot.phase == DeploymentPhase.COMPLETE
        assert traffic.weight_history(CANARY) == [20, 100]

    @pytest.mark.asyncio
    async def test_manual_promotion(self, make_engine, make_plan, traffic, wait_until):
        plan = canary_plan(make_plan, [{"weight": 50}], auto_promote=False)
        engine = make_engine(CanaryEngine, plan)
        task = asyncio.create_task(engine.run())

        await wait_until(lambda: engine.control.waiting)
        assert traffic.weight_history(CANARY) == [50]

        engine.control.resume()
        snapshot = await asyncio.wait_for(task, 2.0)

        assert snapshot.traffic_weight == 100
        assert traffic.weight_history(CANARY) == [50, 100]

    @pytest.mark.asyncio
    async def test_plan_timeout_while_paused(self, make_engine, make_plan, traffic):
        plan = make_plan(strategy="canary", canary={"steps": [{"weight": 20, "pause": True}]}, timeout=0.05)
        engine = make_engine(CanaryEngine, plan)

        snapshot = await asyncio.wait_for(engine.run(), 2.0)

        assert snapshot.failure_cause == "timeout"
        assert traffic.weight_history(CANARY)[-1] == 0

    @pytest.mark.asyncio
    async def test_weight_calls_are_retried(self, make_engine, make_plan, engine_context):
        traffic = InMemoryTrafficController(failures={"set_weight": 2})
        engine_context.traffic = traffic
        engine = make_engine(CanaryEngine, canary_plan(make_plan, [{"weight": 100}]))

        snapshot = await engine.run()

        assert snapshot.phase == DeploymentPhase.COMPLETE
        assert traffic.weights[CANARY] == 100


class TestCanaryPlan:
    """Tests for canary plan validation."""

    def test_decreasing_weights_rejected(self, make_plan):
        with pytest.raises(ValidationFault, match="non-decreasing"):
            canary_plan(make_plan, [{"weight": 50}, {"weight": 10}])
