"""Canary deployment strategy engine."""

from enum import Enum

from rolloutctl.core.exceptions import GateFailure, RolloutError
from rolloutctl.deploy.models import DeploymentPhase, StrategyStep, utcnow
from rolloutctl.deploy.strategies.base import StrategyEngine


class CanaryState(str, Enum):
    INIT = "init"
    DEPLOY_CANARY = "deploy_canary"
    SET_WEIGHT = "set_weight"
    HOLD = "hold"
    ANALYSIS = "analysis"
    PAUSED = "paused"
    PROMOTE = "promote"
    ROLLBACK = "rollback"
    COMPLETE = "complete"
    FAILED = "failed"


class CanaryEngine(StrategyEngine):
    """Canary engine with stepped traffic shifting.

    Each step sets the canary weight, holds for the step duration, gates
    on metrics when analysis thresholds are configured, and parks for an
    explicit resume when the step asks for a pause.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        params = self.plan.canary
        self.destination = params.destination or f"{self.plan.target}-canary"
        self.current_step = 0
        self._deployed = False

    @property
    def strategy_name(self) -> str:
        return "canary"

    def _step_progress(self, index: int) -> int:
        total = len(self.plan.canary.steps)
        return 30 + int(60 * index / total)

    async def _execute(self) -> None:
        params = self.plan.canary

        self._transition(CanaryState.DEPLOY_CANARY)
        self._emit(
            DeploymentPhase.DEPLOY,
            10,
            f"Creating canary {self.destination} ({self.plan.new_version})",
        )
        await self._apply(
            self._descriptor(self.destination, self.plan.new_version, labels={"track": "canary"})
        )
        self._deployed = True
        await self._wait_ready(self.destination, params.ready_timeout, 10, 30)
        self._emit(DeploymentPhase.DEPLOY, 30, f"Canary {self.destination} is ready")

        for index, step in enumerate(params.steps, 1):
            await self._run_step(index, step)

        last = params.steps[-1]
        if last.weight < 100:
            if not params.auto_promote:
                self._transition(CanaryState.PAUSED)
                await self._park("resume to promote canary to 100%", 90)
            self._transition(CanaryState.PROMOTE)
            await self._set_weight(self.destination, 100)
            self._emit(DeploymentPhase.DEPLOY, 95, "Canary promoted to 100% traffic", weight=100)

    async def _run_step(self, index: int, step: StrategyStep) -> None:
        params = self.plan.canary
        total = len(params.steps)
        progress = self._step_progress(index)
        self.current_step = index

        self._transition(CanaryState.SET_WEIGHT)
        await self._set_weight(self.destination, step.weight)
        self._emit(
            DeploymentPhase.DEPLOY,
            progress,
            f"Step {index}/{total}: {step.weight}% traffic to canary",
            step=index,
            weight=step.weight,
        )

        window_start = utcnow()
        if step.duration > 0:
            self._transition(CanaryState.HOLD)
            await self._hold(step.duration, f"step {index} hold")

        if params.analysis is not None:
            self._transition(CanaryState.ANALYSIS)
            await self._analyze(index, window_start, progress)

        if step.pause:
            self._transition(CanaryState.PAUSED)
            await self._park(f"step {index} at {step.weight}%", progress)

    async def _analyze(self, index: int, window_start, progress: int) -> None:
        try:
            window = await self._ctx.metrics.collect(
                self.destination, self.plan.namespace, window_start, utcnow()
            )
        except Exception as e:
            message = e.message if isinstance(e, RolloutError) else str(e)
            raise GateFailure(
                f"Step {index} analysis failed: metrics unavailable: {message}",
                violations=[f"metrics unavailable: {message}"],
            )

        result = self._ctx.gate.evaluate(window, self.plan.canary.analysis)
        if not result.passed:
            raise GateFailure(
                f"Step {index} analysis failed: {'; '.join(result.violations)}",
                violations=list(result.violations),
            )

        self._emit(
            DeploymentPhase.HEALTH_CHECK,
            progress,
            f"Step {index} analysis passed",
            step=index,
            metrics=window.to_dict(),
        )

    async def _rollback(self, error: RolloutError) -> None:
        await self._withdraw()

    async def revert(self) -> None:
        await self._withdraw()

    async def _withdraw(self) -> None:
        self._logger.info(f"Reverting canary {self.destination} to 0% traffic")
        await self._set_weight(self.destination, 0)
        if self._deployed:
            await self._teardown(self.destination)
            self._deployed = False

    async def _promote_on_cancel(self) -> bool:
        if not self._deployed:
            return False
        self._logger.info("Cancel requested with promote, shifting all traffic to canary")
        self._set_state(CanaryState.PROMOTE)
        await self._set_weight(self.destination, 100)
        return True
