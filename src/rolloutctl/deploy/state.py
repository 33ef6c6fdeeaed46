"""Run state owned by a single orchestrated rollout."""

import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from rolloutctl.deploy.models import (
    DeploymentPhase,
    DeploymentPlan,
    HealthResult,
    ProgressEvent,
    utcnow,
)


@dataclass(frozen=True)
class RunSnapshot:
    """Read-only copy of a RunState handed to status callers."""

    run_id: str
    target: str
    environment: str
    strategy: str
    phase: DeploymentPhase
    progress: int
    strategy_state: str
    message: str
    elapsed_seconds: float
    cancelled: bool
    paused: bool
    traffic_weight: int
    rollback_triggers: int
    failure_cause: str | None = None
    last_health: HealthResult | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "run_id": self.run_id,
            "target": self.target,
            "environment": self.environment,
            "strategy": self.strategy,
            "phase": self.phase.value,
            "progress": self.progress,
            "strategy_state": self.strategy_state,
            "message": self.message,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "cancelled": self.cancelled,
            "paused": self.paused,
            "traffic_weight": self.traffic_weight,
            "rollback_triggers": self.rollback_triggers,
            "failure_cause": self.failure_cause,
            "last_health": self.last_health.to_dict() if self.last_health else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def with_rollback_trigger(self, message: str) -> "RunSnapshot":
        return replace(
            self,
            phase=DeploymentPhase.FAILED,
            failure_cause="rollback-triggered",
            message=message,
            rollback_triggers=self.rollback_triggers + 1,
        )


@dataclass
class RunState:
    """Mutable state of one rollout attempt.

    Only the strategy engine driving the run writes to it; everything else
    reads snapshots.
    """

    run_id: str
    plan: DeploymentPlan
    phase: DeploymentPhase = DeploymentPhase.INIT
    progress: int = 0
    strategy_state: str = "init"
    message: str = ""
    cancelled: bool = False
    paused: bool = False
    traffic_weight: int = 0
    rollback_triggers: int = 0
    failure_cause: str | None = None
    last_health: HealthResult | None = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    _started_monotonic: float = field(default_factory=time.monotonic, repr=False)
    _finished_monotonic: float | None = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    @property
    def elapsed_seconds(self) -> float:
        end = self._finished_monotonic if self._finished_monotonic is not None else time.monotonic()
        return end - self._started_monotonic

    def apply(self, event: ProgressEvent) -> None:
        """Fold an emitted event into the state."""
        self.phase = event.phase
        self.message = event.message
        if event.phase == DeploymentPhase.FAILED:
            self.progress = event.progress
        else:
            self.progress = max(self.progress, event.progress)
        if event.phase.is_terminal:
            self.completed_at = event.timestamp
            self._finished_monotonic = time.monotonic()

    def snapshot(self) -> RunSnapshot:
        return RunSnapshot(
            run_id=self.run_id,
            target=self.plan.target,
            environment=self.plan.environment,
            strategy=self.plan.strategy.value,
            phase=self.phase,
            progress=self.progress,
            strategy_state=self.strategy_state,
            message=self.message,
            elapsed_seconds=self.elapsed_seconds,
            cancelled=self.cancelled,
            paused=self.paused,
            traffic_weight=self.traffic_weight,
            rollback_triggers=self.rollback_triggers,
            failure_cause=self.failure_cause,
            last_health=self.last_health,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )
