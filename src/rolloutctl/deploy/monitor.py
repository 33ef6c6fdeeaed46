"""Post-deploy health monitor with automatic rollback."""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from rolloutctl.core.logging import StructuredLogger
from rolloutctl.deploy.bus import ProgressBus
from rolloutctl.deploy.health import HealthProbe, MonitorHandle
from rolloutctl.deploy.models import (
    DeploymentPhase,
    HealthCheckSpec,
    HealthResult,
    ProgressEvent,
    RollbackPolicy,
)

RollbackCallback = Callable[[], "Awaitable[Any] | Any"]


class RollbackMonitor:
    """Watches a serving rollout and triggers rollback after repeated failures.

    The monitor runs on its own schedule; ``start`` returns immediately and
    ``stop`` may be called any number of times. Once triggered, the rollback
    callback runs as a separate task that ``stop`` does not interrupt.
    """

    def __init__(
        self,
        probe: HealthProbe,
        health_check: HealthCheckSpec,
        policy: RollbackPolicy,
        run_id: str,
        bus: ProgressBus | None = None,
        on_rollback: RollbackCallback | None = None,
        on_result: Callable[[HealthResult], None] | None = None,
        progress: int = 100,
    ):
        self._probe = probe
        self._health_check = health_check
        self._policy = policy
        self._run_id = run_id
        self._bus = bus
        self._on_rollback = on_rollback
        self._on_result = on_result
        self._progress = progress
        self._handle: MonitorHandle | None = None
        self._rollback_task: asyncio.Task[None] | None = None
        self._logger = StructuredLogger.for_run(__name__, run_id)

        self.consecutive_failures = 0
        self.checks = 0
        self.triggered = False
        self.last_result: HealthResult | None = None

    @property
    def running(self) -> bool:
        return self._handle is not None and not self._handle.cancelled

    @property
    def rolling_back(self) -> bool:
        """Whether a triggered rollback is still in flight."""
        return self._rollback_task is not None and not self._rollback_task.done()

    def start(self) -> None:
        """Begin polling. Does nothing when the policy is disabled."""
        if not self._policy.enabled:
            self._logger.info("Auto-rollback is disabled")
            return
        if self._handle is not None:
            return

        self._logger.info(
            "Starting auto-rollback monitoring",
            threshold=self._policy.error_threshold,
            interval=self._policy.check_interval,
        )
        self.consecutive_failures = 0
        self._handle = self._probe.monitor(
            self._health_check,
            self._handle_result,
            interval=self._policy.check_interval,
        )

    def stop(self) -> None:
        """Stop polling. An in-flight rollback keeps running."""
        if self._handle is None or self._handle.cancelled:
            return
        self._handle.cancel()
        self._logger.info("Auto-rollback monitoring stopped")

    async def wait(self) -> None:
        """Wait for the polling loop and any triggered rollback to finish."""
        if self._handle is not None:
            await self._handle.wait()
        if self._rollback_task is not None:
            await asyncio.shield(self._rollback_task)

    async def _handle_result(self, result: HealthResult) -> None:
        if self.triggered:
            return

        self.checks += 1
        self.last_result = result
        if self._on_result is not None:
            self._on_result(result)

        if result.healthy:
            if self.consecutive_failures > 0:
                self._logger.info("Service recovered", after=self.consecutive_failures)
            self.consecutive_failures = 0
            return

        self.consecutive_failures += 1
        self._logger.warning(
            f"Health check failed ({self.consecutive_failures}/{self._policy.error_threshold})",
            reason=result.message,
        )

        if self.consecutive_failures >= self._policy.error_threshold:
            await self._trigger(result)

    async def _trigger(self, result: HealthResult) -> None:
        self.triggered = True
        self._logger.error("Error threshold reached, triggering auto-rollback")

        if self._bus is not None:
            self._bus.publish(
                ProgressEvent(
                    run_id=self._run_id,
                    phase=DeploymentPhase.FAILED,
                    progress=self._progress,
                    message=f"Rollback triggered after {self.consecutive_failures} consecutive health check failures",
                    data={
                        "cause": "rollback-triggered",
                        "failures": self.consecutive_failures,
                        "lastHealth": result.to_dict(),
                        "callback": self._policy.callback,
                    },
                )
            )

        if self._on_rollback is not None:
            self._rollback_task = asyncio.create_task(
                self._run_rollback(self._on_rollback), name=f"rollback-{self._run_id}"
            )
        self.stop()

    async def _run_rollback(self, callback: RollbackCallback) -> None:
        try:
            outcome = callback()
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            self._logger.exception("Auto-rollback callback failed")
