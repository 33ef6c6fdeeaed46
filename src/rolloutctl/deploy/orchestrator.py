"""Rollout orchestrator."""

import asyncio
import inspect
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any

from rolloutctl.core.async_utils import RetryPolicy
from rolloutctl.core.exceptions import ValidationFault
from rolloutctl.core.logging import StructuredLogger
from rolloutctl.deploy.bus import ProgressBus
from rolloutctl.deploy.health import HealthProbe
from rolloutctl.deploy.metrics import MetricsGate, MetricsSource, StaticMetricsSource
from rolloutctl.deploy.models import DeploymentPhase, DeploymentPlan, validate_plan
from rolloutctl.deploy.monitor import RollbackMonitor
from rolloutctl.deploy.state import RunSnapshot, RunState
from rolloutctl.deploy.strategies import ENGINES, EngineContext, RunControl, StrategyEngine
from rolloutctl.deploy.traffic import (
    InMemoryPlatform,
    InMemoryTrafficController,
    Platform,
    TrafficController,
)

RollbackHook = Callable[[RunSnapshot], "Awaitable[Any] | Any"]


@dataclass
class OrchestratorContext:
    """Everything an orchestrator needs, passed in explicitly.

    Defaults give an in-memory dry-run setup.
    """

    probe: HealthProbe = field(default_factory=HealthProbe)
    traffic: TrafficController = field(default_factory=InMemoryTrafficController)
    platform: Platform = field(default_factory=InMemoryPlatform)
    gate: MetricsGate = field(default_factory=MetricsGate)
    metrics: MetricsSource = field(default_factory=StaticMetricsSource)
    bus: ProgressBus = field(default_factory=ProgressBus)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    hooks: dict[str, RollbackHook] = field(default_factory=dict)
    shutdown: asyncio.Event = field(default_factory=asyncio.Event)

    def register_hook(self, name: str, hook: RollbackHook) -> None:
        """Register a rollback hook referenced by RollbackPolicy.callback."""
        self.hooks[name] = hook

    def engine_context(self) -> EngineContext:
        return EngineContext(
            probe=self.probe,
            traffic=self.traffic,
            platform=self.platform,
            bus=self.bus,
            gate=self.gate,
            metrics=self.metrics,
            retry=self.retry,
        )

    async def aclose(self) -> None:
        """Close collaborators holding network clients."""
        await self.probe.aclose()
        close = getattr(self.metrics, "aclose", None)
        if close is not None:
            await close()


class RunHandle:
    """Caller's reference to one orchestrated run."""

    def __init__(
        self,
        run_id: str,
        plan: DeploymentPlan,
        state: RunState,
        engine: StrategyEngine,
        control: RunControl,
    ):
        self.run_id = run_id
        self.plan = plan
        self.engine = engine
        self.control = control
        self.task: asyncio.Task[RunSnapshot] | None = None
        self.monitor: RollbackMonitor | None = None
        self._state = state
        self._final: RunSnapshot | None = None

    @property
    def active(self) -> bool:
        """Whether the strategy is still executing."""
        return self.task is not None and not self.task.done()

    @property
    def rolling_back(self) -> bool:
        """Whether a monitor-triggered rollback is still reverting traffic."""
        return self.monitor is not None and self.monitor.rolling_back

    def snapshot(self) -> RunSnapshot:
        if self._final is not None:
            return self._final
        return self._state.snapshot()

    def __repr__(self) -> str:
        return f"RunHandle(run_id={self.run_id!r}, target={self.plan.target!r})"


class Orchestrator:
    """Starts rollouts and tracks them.

    At most one run per (target, environment) is active at a time.
    """

    def __init__(self, context: OrchestratorContext | None = None):
        self.context = context or OrchestratorContext()
        self._lock = asyncio.Lock()
        self._active: dict[tuple[str, str], RunHandle] = {}
        self._runs: dict[str, RunHandle] = {}
        self._logger = StructuredLogger(__name__)

    @property
    def bus(self) -> ProgressBus:
        return self.context.bus

    async def start(self, plan: DeploymentPlan | dict[str, Any]) -> RunHandle:
        """Validate a plan and start its rollout in the background.

        Args:
            plan: Deployment plan or raw plan mapping

        Returns:
            Handle for the started run

        Raises:
            ValidationFault: If the plan is invalid or the target already
                has an active run
        """
        plan = validate_plan(plan)

        async with self._lock:
            if self.context.shutdown.is_set():
                raise ValidationFault("Orchestrator is shutting down")

            existing = self._active.get(plan.key)
            if existing is not None and existing.active:
                message = (
                    f"A rollout of {plan.target} to {plan.environment} is already "
                    f"in progress ({existing.run_id})"
                )
                raise ValidationFault(message, errors=[message])

            if existing is not None and existing.rolling_back:
                message = (
                    f"A rollback of {plan.target} in {plan.environment} is still "
                    f"in progress ({existing.run_id})"
                )
                raise ValidationFault(message, errors=[message])

            if existing is not None and existing.monitor is not None:
                existing.monitor.stop()

            run_id = f"{plan.target}-{uuid.uuid4().hex[:8]}"
            state = RunState(run_id=run_id, plan=plan)
            control = RunControl()
            engine = ENGINES[plan.strategy](plan, state, self.context.engine_context(), control)

            handle = RunHandle(run_id, plan, state, engine, control)
            self._active[plan.key] = handle
            self._runs[run_id] = handle
            handle.task = asyncio.create_task(self._drive(handle), name=f"rollout-{run_id}")

        self._logger.info(
            f"Started {plan.strategy.value} rollout",
            run=run_id,
            target=plan.target,
            environment=plan.environment,
        )
        return handle

    async def _drive(self, handle: RunHandle) -> RunSnapshot:
        snapshot = await handle.engine.run()
        handle._final = snapshot

        if (
            snapshot.phase == DeploymentPhase.COMPLETE
            and handle.plan.rollback.enabled
            and not self.context.shutdown.is_set()
        ):
            self._start_monitor(handle, snapshot)
        else:
            self._retire(handle)
        return snapshot

    def _retire(self, handle: RunHandle) -> None:
        """Free the target for new runs if this handle still holds it."""
        if self._active.get(handle.plan.key) is handle:
            del self._active[handle.plan.key]

    def _start_monitor(self, handle: RunHandle, snapshot: RunSnapshot) -> None:
        async def on_rollback() -> None:
            try:
                await self._auto_rollback(handle)
            finally:
                self._retire(handle)

        handle.monitor = RollbackMonitor(
            probe=self.context.probe,
            health_check=handle.plan.health_check,
            policy=handle.plan.rollback,
            run_id=handle.run_id,
            bus=self.context.bus,
            on_rollback=on_rollback,
            progress=snapshot.progress,
        )
        handle.monitor.start()

    async def _auto_rollback(self, handle: RunHandle) -> None:
        monitor = handle.monitor
        failures = monitor.consecutive_failures if monitor else 0
        handle._final = handle.snapshot().with_rollback_trigger(
            f"Rollback triggered after {failures} consecutive health check failures"
        )
        self._logger.warning("Reverting completed rollout", run=handle.run_id)

        try:
            await handle.engine.revert()
        except Exception:
            self._logger.exception("Revert failed", run=handle.run_id)
        handle._final = replace(handle._final, traffic_weight=handle._state.traffic_weight)

        hook_name = handle.plan.rollback.callback
        if not hook_name:
            return
        hook = self.context.hooks.get(hook_name)
        if hook is None:
            self._logger.warning(f"Rollback hook '{hook_name}' is not registered", run=handle.run_id)
            return

        outcome = hook(handle.snapshot())
        if inspect.isawaitable(outcome):
            await outcome

    def cancel(self, handle: RunHandle, promote: bool = False) -> bool:
        """Request cancellation of a run.

        A finished run is not affected, apart from its rollback monitor
        being stopped. A rollback already triggered by the monitor is left
        to finish.

        Args:
            handle: Run to cancel
            promote: Finish the rollout instead of reverting, where the
                strategy supports it

        Returns:
            True if the request changed anything
        """
        if not handle.active:
            if handle.rolling_back:
                return False
            if handle.monitor is not None and handle.monitor.running:
                handle.monitor.stop()
                self._retire(handle)
                return True
            return False
        self._logger.info("Cancel requested", run=handle.run_id, promote=promote)
        return handle.control.cancel(promote=promote)

    def resume(self, handle: RunHandle) -> bool:
        """Release a paused run. No-op unless the run is paused."""
        if not handle.active:
            return False
        resumed = handle.control.resume()
        if resumed:
            self._logger.info("Resume requested", run=handle.run_id)
        return resumed

    def release(self, handle: RunHandle) -> bool:
        """Forget a finished run: its handle, monitor and retained events.

        Returns:
            False if the run is unknown

        Raises:
            ValidationFault: If the run is still executing or rolling back
        """
        if handle.active or handle.rolling_back:
            raise ValidationFault(f"Run {handle.run_id} is still in progress")
        if self._runs.pop(handle.run_id, None) is None:
            return False

        if handle.monitor is not None:
            handle.monitor.stop()
        self._retire(handle)
        self.context.bus.forget(handle.run_id)
        self._logger.debug("Released run", run=handle.run_id)
        return True

    def status(self, handle: RunHandle) -> RunSnapshot:
        return handle.snapshot()

    def get(self, run_id: str) -> RunHandle | None:
        return self._runs.get(run_id)

    def runs(self) -> list[RunHandle]:
        return list(self._runs.values())

    async def wait(self, handle: RunHandle, timeout: float | None = None) -> RunSnapshot:
        """Wait for a run's strategy to finish.

        Raises:
            asyncio.TimeoutError: If timeout elapses first
        """
        if handle.task is None:
            return handle.snapshot()
        await asyncio.wait_for(asyncio.shield(handle.task), timeout=timeout)
        return handle.snapshot()

    async def shutdown(self, grace: float | None = None) -> None:
        """Cancel active runs, stop monitors and wait for everything to settle."""
        self.context.shutdown.set()

        async with self._lock:
            handles = list(self._runs.values())

        for handle in handles:
            if handle.active:
                handle.control.cancel()
            if handle.monitor is not None:
                handle.monitor.stop()

        tasks = [h.task for h in handles if h.task is not None and not h.task.done()]
        if tasks:
            await asyncio.wait(tasks, timeout=grace)

        for handle in handles:
            if handle.monitor is not None:
                await handle.monitor.wait()

        await self.context.bus.flush()
