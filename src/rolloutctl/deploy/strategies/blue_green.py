"""Blue-green deployment strategy engine."""

from datetime import timezone
from enum import Enum

from rolloutctl.core.exceptions import RolloutError
from rolloutctl.deploy.models import DeploymentPhase, utcnow
from rolloutctl.deploy.strategies.base import StrategyEngine


class BlueGreenState(str, Enum):
    INIT = "init"
    DEPLOY_GREEN = "deploy_green"
    HEALTH_CHECK_GREEN = "health_check_green"
    MANUAL_WAIT = "manual_wait"
    SCHEDULED_WAIT = "scheduled_wait"
    SWITCH_TRAFFIC = "switch_traffic"
    STABILIZE_GREEN = "stabilize_green"
    RETIRE_BLUE = "retire_blue"
    ROLLBACK = "rollback"
    COMPLETE = "complete"
    FAILED = "failed"


class BlueGreenEngine(StrategyEngine):
    """Blue-green engine.

    The new version is brought up beside the live one and the service
    selector is flipped once it has passed two health gates. "Blue" is
    whichever color is live when the run starts.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        params = self.plan.blue_green
        self.service = params.service or self.plan.target
        self.blue = params.active_color
        self.green = params.inactive_color
        self._green_applied = False

    @property
    def strategy_name(self) -> str:
        return "blue-green"

    def _workload(self, color: str) -> str:
        return f"{self.plan.target}-{color}"

    def _selector(self, color: str) -> dict[str, str]:
        return {"app": self.plan.target, "color": color}

    async def _execute(self) -> None:
        params = self.plan.blue_green
        green_name = self._workload(self.green)

        self._transition(BlueGreenState.DEPLOY_GREEN)
        self._emit(
            DeploymentPhase.DEPLOY,
            10,
            f"Deploying {green_name} ({self.plan.new_version})",
            color=self.green,
        )
        await self._apply(
            self._descriptor(green_name, self.plan.new_version, labels={"color": self.green})
        )
        self._green_applied = True
        await self._wait_ready(green_name, params.ready_timeout, 10, 40)
        self._emit(DeploymentPhase.DEPLOY, 40, f"{green_name} is ready", color=self.green)

        self._transition(BlueGreenState.HEALTH_CHECK_GREEN)
        await self._health_gate("Initial health check", 45, attempts=1)
        if params.stability_period > 0:
            self._emit(
                DeploymentPhase.HEALTH_CHECK,
                50,
                f"Waiting {params.stability_period:g}s stability period",
            )
            await self._hold(params.stability_period, "stability period")
        await self._health_gate("Post-stability health check", 60, attempts=1)

        switch = params.traffic_switch
        if switch.manual:
            self._transition(BlueGreenState.MANUAL_WAIT)
            await self._park(f"resume to switch traffic to {self.green}", 60)
        elif switch.scheduled_at is not None:
            self._transition(BlueGreenState.SCHEDULED_WAIT)
            scheduled_at = switch.scheduled_at
            if scheduled_at.tzinfo is None:
                scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
            delay = (scheduled_at - utcnow()).total_seconds()
            if delay > 0:
                self._emit(
                    DeploymentPhase.DEPLOY,
                    60,
                    f"Traffic switch scheduled at {scheduled_at.isoformat()}",
                )
                await self._hold(delay, "scheduled traffic switch")

        self._transition(BlueGreenState.SWITCH_TRAFFIC)
        await self._set_selector(self.service, self._selector(self.green))
        self.state.traffic_weight = 100
        self._emit(
            DeploymentPhase.DEPLOY,
            75,
            f"Traffic switched from {self.blue} to {self.green}",
            service=self.service,
            color=self.green,
        )

        self._transition(BlueGreenState.STABILIZE_GREEN)
        await self._hold(self.plan.health_check.stable_period, "stabilization")
        await self._health_gate("Stabilization health check", 85)

        self._transition(BlueGreenState.RETIRE_BLUE)
        blue_name = self._workload(self.blue)
        try:
            await self._teardown(blue_name)
            self._emit(DeploymentPhase.DEPLOY, 95, f"Retired {blue_name}")
        except RolloutError as e:
            self._logger.warning(f"Failed to retire {blue_name}: {e.message}")

    async def _rollback(self, error: RolloutError) -> None:
        self._logger.info(f"Pointing {self.service} back to {self.blue}")
        await self._set_selector(self.service, self._selector(self.blue))
        self.state.traffic_weight = 0

        if self._green_applied:
            await self._teardown(self._workload(self.green))
            self._green_applied = False

    async def revert(self) -> None:
        """Bring the previous version back as blue and route to it."""
        if not self.plan.old_version:
            self._logger.warning("No previous version to revert to")
            return

        blue_name = self._workload(self.blue)
        self._logger.info(f"Reverting {self.service} to {blue_name} ({self.plan.old_version})")
        await self._apply(
            self._descriptor(blue_name, self.plan.old_version, labels={"color": self.blue})
        )
        await self._set_selector(self.service, self._selector(self.blue))
        self.state.traffic_weight = 0
        await self._teardown(self._workload(self.green))
