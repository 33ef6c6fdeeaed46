"""Rolling deployment strategy engine."""

from enum import Enum

from rolloutctl.core.exceptions import RolloutError
from rolloutctl.deploy.models import DeploymentPhase
from rolloutctl.deploy.strategies.base import StrategyEngine


class RollingState(str, Enum):
    INIT = "init"
    APPLYING = "applying"
    MONITORING = "monitoring"
    COMPLETE = "complete"
    FAILED = "failed"


class RollingEngine(StrategyEngine):
    """Rolling update engine.

    The platform replaces replicas in place; surge and unavailability
    budgets are handed through untouched.
    """

    @property
    def strategy_name(self) -> str:
        return "rolling"

    async def _execute(self) -> None:
        params = self.plan.rolling

        self._transition(RollingState.APPLYING)
        self._emit(
            DeploymentPhase.DEPLOY,
            10,
            f"Updating {self.plan.target} to {self.plan.new_version} "
            f"(max_surge={params.max_surge}, max_unavailable={params.max_unavailable})",
        )
        await self._apply(
            self._descriptor(
                self.plan.target,
                self.plan.new_version,
                rolling_update={
                    "max_surge": params.max_surge,
                    "max_unavailable": params.max_unavailable,
                },
            )
        )
        self._emit(DeploymentPhase.DEPLOY, 30, "Workload updated")

        self._transition(RollingState.MONITORING)
        status = await self._wait_ready(self.plan.target, params.timeout, 30, 90)
        self.state.traffic_weight = 100
        self._emit(
            DeploymentPhase.DEPLOY,
            90,
            f"Rollout complete: {status.ready_replicas}/{status.replicas} replicas ready",
        )

        await self._health_gate("Health check", 95)

    async def _rollback(self, error: RolloutError) -> None:
        await self._restore_previous()

    async def revert(self) -> None:
        await self._restore_previous()

    async def _restore_previous(self) -> None:
        if not self.plan.old_version:
            self._logger.warning("No previous version to roll back to")
            return

        self._logger.info(f"Rolling back to {self.plan.old_version}")
        await self._apply(self._descriptor(self.plan.target, self.plan.old_version))
        self.state.traffic_weight = 0
