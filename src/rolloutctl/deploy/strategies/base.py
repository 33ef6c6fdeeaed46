"""Base strategy engine."""

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from rolloutctl.core.async_utils import RetryPolicy, retry_async, wait_for_any, wait_for_event
from rolloutctl.core.exceptions import (
    CancelledFault,
    ProbeFailure,
    RolloutError,
    TimeoutFault,
)
from rolloutctl.core.logging import StructuredLogger
from rolloutctl.deploy.bus import ProgressBus
from rolloutctl.deploy.health import HealthProbe
from rolloutctl.deploy.metrics import MetricsGate, MetricsSource, StaticMetricsSource
from rolloutctl.deploy.models import (
    DeploymentPhase,
    DeploymentPlan,
    HealthResult,
    ProgressEvent,
)
from rolloutctl.deploy.state import RunSnapshot, RunState
from rolloutctl.deploy.traffic import (
    Platform,
    ResourceDescriptor,
    RolloutStatus,
    RoutingRule,
    TrafficController,
)

T = TypeVar("T")


class RunControl:
    """External cancel/resume signals for one run."""

    def __init__(self) -> None:
        self.cancel_event = asyncio.Event()
        self.resume_event = asyncio.Event()
        self.promote_on_cancel = False
        self._waiting = False

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def waiting(self) -> bool:
        return self._waiting

    def cancel(self, promote: bool = False) -> bool:
        """Request cancellation. Returns False if already requested."""
        if self.cancel_event.is_set():
            return False
        self.promote_on_cancel = promote
        self.cancel_event.set()
        return True

    def resume(self) -> bool:
        """Release a parked run. Returns False if the run is not parked."""
        if not self._waiting or self.resume_event.is_set():
            return False
        self.resume_event.set()
        return True

    def enter_wait(self) -> None:
        self.resume_event.clear()
        self._waiting = True

    def leave_wait(self) -> None:
        self._waiting = False
        self.resume_event.clear()


@dataclass
class EngineContext:
    """Collaborators shared by strategy engines."""

    probe: HealthProbe
    traffic: TrafficController
    platform: Platform
    bus: ProgressBus
    gate: MetricsGate = field(default_factory=MetricsGate)
    metrics: MetricsSource = field(default_factory=StaticMetricsSource)
    retry: RetryPolicy = field(default_factory=RetryPolicy)


class StrategyEngine(ABC):
    """State machine driving one rollout.

    Subclasses implement ``_execute`` as a sequence of ``_transition`` calls
    and waits; the base class turns faults into rollback and a single
    terminal event.
    """

    def __init__(
        self,
        plan: DeploymentPlan,
        state: RunState,
        context: EngineContext,
        control: RunControl | None = None,
    ):
        self.plan = plan
        self.state = state
        self.control = control or RunControl()
        self._ctx = context
        self._traffic_lock = asyncio.Lock()
        self._deadline = time.monotonic() + plan.timeout if plan.timeout else None
        self._logger = StructuredLogger.for_run(
            f"deploy.strategies.{self.strategy_name}",
            state.run_id,
            target=plan.target,
        )
        self.transitions: list[str] = [state.strategy_state]

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Get strategy name."""

    @abstractmethod
    async def _execute(self) -> None:
        """Drive the strategy from its first state to just before complete."""

    @abstractmethod
    async def _rollback(self, error: RolloutError) -> None:
        """Restore the pre-run traffic state after a failure or cancel."""

    @abstractmethod
    async def revert(self) -> None:
        """Roll a completed run back to the previous version."""

    async def _promote_on_cancel(self) -> bool:
        """Finish the rollout instead of reverting when cancel asks for it.

        Returns False when the strategy has nothing to promote.
        """
        return False

    async def run(self) -> RunSnapshot:
        """Execute the rollout and return the final state."""
        self._emit(
            DeploymentPhase.INIT,
            0,
            f"Starting {self.strategy_name} rollout of {self.plan.target} to {self.plan.new_version}",
            fromVersion=self.plan.old_version,
            toVersion=self.plan.new_version,
        )

        try:
            self._checkpoint()
            self._emit(DeploymentPhase.VALIDATE, 5, "Deployment plan validated")
            await self._execute()
            self._checkpoint()
            self._set_state("complete")
            self._emit(
                DeploymentPhase.COMPLETE,
                100,
                f"{self.strategy_name.capitalize()} rollout completed",
                weight=self.state.traffic_weight,
            )

        except CancelledFault as e:
            await self._handle_cancel(e)

        except RolloutError as e:
            await self._handle_failure(e)

        except Exception as e:
            self._logger.exception("Unexpected strategy error")
            await self._handle_failure(RolloutError(f"Unexpected error: {e}"))

        return self.state.snapshot()

    async def _handle_cancel(self, error: CancelledFault) -> None:
        self.state.cancelled = True

        if self.control.promote_on_cancel:
            try:
                promoted = await self._promote_on_cancel()
            except RolloutError as e:
                await self._handle_failure(e)
                return
            if promoted:
                self._set_state("complete")
                self._emit(
                    DeploymentPhase.COMPLETE,
                    100,
                    "Rollout promoted on cancel",
                    weight=self.state.traffic_weight,
                    promotedOnCancel=True,
                )
                return

        await self._handle_failure(error)

    async def _handle_failure(self, error: RolloutError) -> None:
        failed_state = self.state.strategy_state
        self.state.failure_cause = error.cause
        self._logger.error(f"Rollout failed in {failed_state}: {error.message}", cause=error.cause)

        self._set_state("rollback")
        try:
            await self._rollback(error)
            rolled_back = True
        except Exception as e:
            rolled_back = False
            self._logger.exception(f"Rollback failed: {e}")

        self._set_state("failed")
        data: dict[str, Any] = {
            "cause": error.cause,
            "failedState": failed_state,
            "error": error.message,
            "rolledBack": rolled_back,
            "weight": self.state.traffic_weight,
        }
        violations = getattr(error, "violations", None)
        if violations:
            data["violations"] = list(violations)

        self._emit(
            DeploymentPhase.FAILED,
            self.state.progress,
            f"{self.strategy_name.capitalize()} rollout failed: {error.message}",
            **data,
        )

    # State and events

    def _emit(
        self,
        phase: DeploymentPhase,
        progress: int,
        message: str,
        **data: Any,
    ) -> ProgressEvent:
        """Publish a progress event and fold it into the run state."""
        if phase != DeploymentPhase.FAILED:
            progress = max(progress, self.state.progress)
        progress = max(0, min(100, progress))

        event = ProgressEvent(
            run_id=self.state.run_id,
            phase=phase,
            progress=progress,
            message=message,
            data={"strategy": self.strategy_name, "state": self.state.strategy_state, **data},
        )
        self.state.apply(event)
        self._ctx.bus.publish(event)
        self._logger.info(f"[{progress}%] {message}")
        return event

    def _checkpoint(self) -> None:
        """Raise if the run was cancelled or ran out of time."""
        if self.control.cancelled:
            raise CancelledFault(f"Run cancelled in state {self.state.strategy_state}")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise TimeoutFault(
                f"Run exceeded its {self.plan.timeout}s timeout",
                timeout_seconds=self.plan.timeout,
            )

    def _transition(self, state: Enum | str) -> None:
        self._checkpoint()
        self._set_state(state)

    def _set_state(self, state: Enum | str) -> None:
        value = state.value if isinstance(state, Enum) else state
        self.state.strategy_state = value
        self.transitions.append(value)
        self._logger.debug(f"State -> {value}")

    def _remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    # Waits

    async def _hold(self, seconds: float, reason: str) -> None:
        """Sleep for seconds, waking early on cancel."""
        self._checkpoint()
        if seconds <= 0:
            return

        remaining = self._remaining()
        bound = seconds if remaining is None else min(seconds, remaining)
        if await wait_for_event(self.control.cancel_event, bound):
            raise CancelledFault(f"Run cancelled during {reason}")
        if remaining is not None and remaining < seconds:
            raise TimeoutFault(
                f"Run timed out during {reason}",
                timeout_seconds=self.plan.timeout,
            )
        self._checkpoint()

    async def _park(self, reason: str, progress: int) -> None:
        """Wait for an external resume; bounded only by the run timeout."""
        self._checkpoint()
        self.state.paused = True
        self.control.enter_wait()
        phase = self.state.phase
        self._emit(phase, progress, f"Paused: {reason}", paused=True)

        try:
            fired = await wait_for_any(
                [self.control.cancel_event, self.control.resume_event],
                self._remaining(),
            )
        finally:
            self.control.leave_wait()
            self.state.paused = False

        if fired is None:
            raise TimeoutFault(f"Run timed out while paused: {reason}", timeout_seconds=self.plan.timeout)
        if fired is self.control.cancel_event:
            raise CancelledFault(f"Run cancelled while paused: {reason}")

        self._emit(phase, progress, f"Resumed: {reason}", paused=False)

    async def _health_gate(
        self, label: str, progress: int, attempts: int | None = None
    ) -> HealthResult:
        """Probe until healthy, failing after a run of unhealthy results.

        The run length is ``attempts`` when given, else the health check
        failure_threshold. With ``attempts=1`` one unhealthy result fails
        the gate.
        """
        spec = self.plan.health_check
        limit = attempts or spec.failure_threshold
        result: HealthResult | None = None

        for attempt in range(1, limit + 1):
            self._checkpoint()
            result = await self._ctx.probe.check(spec)
            self.state.last_health = result

            if result.healthy:
                self._emit(
                    DeploymentPhase.HEALTH_CHECK,
                    progress,
                    f"{label}: {result.message}",
                    health=result.to_dict(),
                )
                return result

            self._logger.warning(
                f"{label} unhealthy ({attempt}/{limit}): {result.message}"
            )
            if attempt < limit:
                await self._hold(spec.interval, label)

        message = result.message if result else "no result"
        raise ProbeFailure(
            f"{label} failed after {limit} consecutive unhealthy checks: {message}"
        )

    async def _wait_ready(
        self,
        name: str,
        timeout: float,
        progress_from: int,
        progress_to: int,
    ) -> RolloutStatus:
        """Poll the platform until the workload is ready."""
        start = time.monotonic()
        last_progress = -1

        while True:
            self._checkpoint()
            try:
                status: RolloutStatus | None = await self._ctx.platform.rollout_status(
                    name, self.plan.namespace
                )
            except Exception as e:
                self._logger.warning(f"Rollout status for {name} unavailable: {e}")
                status = None

            if status is not None:
                if status.ready:
                    return status
                if status.replicas > 0:
                    ratio = status.ready_replicas / status.replicas
                    progress = progress_from + int(ratio * (progress_to - progress_from))
                    if progress != last_progress:
                        last_progress = progress
                        self._emit(
                            DeploymentPhase.DEPLOY,
                            progress,
                            f"Waiting for {name}: {status.ready_replicas}/{status.replicas} ready",
                        )

            elapsed = time.monotonic() - start
            if elapsed >= timeout:
                raise TimeoutFault(
                    f"{name} did not become ready within {timeout}s",
                    timeout_seconds=timeout,
                )
            await self._hold(min(self.plan.poll_interval, timeout - elapsed), f"{name} rollout")

    # Platform calls

    async def _call(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        async with self._traffic_lock:
            return await retry_async(func, operation, self._ctx.retry)

    async def _set_weight(self, destination: str, percent: int) -> None:
        await self._call(
            f"set_weight({destination}={percent}%)",
            lambda: self._ctx.traffic.set_weight(destination, percent),
        )
        self.state.traffic_weight = percent

    async def _set_split(self, weights: dict[str, int]) -> None:
        split = ", ".join(f"{destination}={percent}%" for destination, percent in weights.items())
        await self._call(
            f"set_split({split})",
            lambda: self._ctx.traffic.set_split(weights),
        )

    async def _set_selector(self, service: str, labels: dict[str, str]) -> None:
        await self._call(
            f"set_selector({service})",
            lambda: self._ctx.traffic.set_selector(service, labels),
        )

    async def _set_routes(self, service: str, routes: list[RoutingRule]) -> None:
        await self._call(
            f"set_routes({service})",
            lambda: self._ctx.traffic.set_routes(service, routes),
        )

    async def _apply(self, descriptor: ResourceDescriptor) -> None:
        await self._call(
            f"apply({descriptor.name})",
            lambda: self._ctx.platform.apply(self.plan.namespace, descriptor),
        )

    async def _teardown(self, name: str) -> None:
        await self._call(
            f"teardown({name})",
            lambda: self._ctx.platform.teardown(name, self.plan.namespace),
        )

    def _descriptor(
        self,
        name: str,
        version: str,
        labels: dict[str, str] | None = None,
        replicas: int | None = None,
        rolling_update: dict[str, Any] | None = None,
    ) -> ResourceDescriptor:
        return ResourceDescriptor(
            name=name,
            version=version,
            resources=dict(self.plan.resources),
            labels={**self.plan.labels, "app": self.plan.target, "version": version, **(labels or {})},
            replicas=self.plan.replicas if replicas is None else replicas,
            rolling_update=rolling_update,
        )
