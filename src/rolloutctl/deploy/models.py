"""Deployment data models."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from rolloutctl.core.exceptions import ValidationFault


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentStrategy(str, Enum):
    """Deployment strategies."""

    ROLLING = "rolling"
    BLUE_GREEN = "blue-green"
    CANARY = "canary"
    AB_TEST = "ab-test"


class DeploymentPhase(str, Enum):
    """Progress phases.

    The values are part of the event stream contract and must stay stable.
    """

    INIT = "init"
    PRE_CHECK = "preCheck"
    VALIDATE = "validate"
    PRE_HOOKS = "preHooks"
    BUILD = "build"
    PUSH = "push"
    DEPLOY = "deploy"
    HEALTH_CHECK = "healthCheck"
    POST_HOOKS = "postHooks"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentPhase.COMPLETE, DeploymentPhase.FAILED)


class _PlanModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)


class HealthCheckSpec(_PlanModel):
    """Health check configuration."""

    enabled: bool = True
    scheme: Literal["http", "https"] = "http"
    host: str = "localhost"
    path: str = "/health"
    port: int = Field(default=3000, ge=1, le=65535)
    interval: float = Field(default=30.0, gt=0)  # seconds
    timeout: float = Field(default=5.0, gt=0)  # seconds
    failure_threshold: int = Field(default=3, ge=1)
    stable_period: float = Field(default=0.0, ge=0)  # seconds

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("path must start with '/'")
        return v

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}{self.path}"


class RollbackPolicy(_PlanModel):
    """Automatic rollback policy applied once a run is serving."""

    enabled: bool = True
    error_threshold: int = Field(default=3, ge=1)
    check_interval: float = Field(default=30.0, gt=0)  # seconds
    callback: str | None = None


class StrategyStep(_PlanModel):
    """A single canary or A/B traffic step."""

    weight: int = Field(ge=0, le=100)
    duration: float = Field(default=0.0, ge=0)  # seconds
    pause: bool = False


class MetricThresholds(_PlanModel):
    """Analysis thresholds; unset thresholds are not evaluated."""

    min_success_rate: float | None = Field(default=None, ge=0, le=1)
    max_error_rate: float | None = Field(default=None, ge=0, le=1)
    max_latency_ms: float | None = Field(default=None, ge=0)


class RollingParams(_PlanModel):
    """Rolling update parameters passed through to the platform."""

    max_surge: int | str = "25%"
    max_unavailable: int | str = "25%"
    timeout: float = Field(default=300.0, gt=0)


class TrafficSwitch(_PlanModel):
    """Blue-green traffic switch mode."""

    manual: bool = False
    scheduled_at: datetime | None = None

    @model_validator(mode="after")
    def validate_mode(self) -> "TrafficSwitch":
        if self.manual and self.scheduled_at is not None:
            raise ValueError("traffic switch cannot be both manual and scheduled")
        return self


class BlueGreenParams(_PlanModel):
    """Blue-green parameters."""

    service: str | None = None
    active_color: Literal["blue", "green"] = "blue"
    traffic_switch: TrafficSwitch = Field(default_factory=TrafficSwitch)
    stability_period: float = Field(default=30.0, ge=0)  # seconds between the two health gates
    ready_timeout: float = Field(default=300.0, gt=0)

    @property
    def inactive_color(self) -> str:
        return "green" if self.active_color == "blue" else "blue"


class CanaryParams(_PlanModel):
    """Canary parameters."""

    steps: list[StrategyStep] = Field(min_length=1)
    analysis: MetricThresholds | None = None
    destination: str | None = None
    auto_promote: bool = True
    ready_timeout: float = Field(default=300.0, gt=0)

    @field_validator("steps")
    @classmethod
    def validate_monotonic(cls, steps: list[StrategyStep]) -> list[StrategyStep]:
        for previous, current in zip(steps, steps[1:]):
            if current.weight < previous.weight:
                raise ValueError(
                    f"step weights must be non-decreasing: {previous.weight} -> {current.weight}"
                )
        return steps


class TargetingRule(_PlanModel):
    """A/B routing predicate."""

    type: Literal["header", "cookie", "query", "ip", "user"]
    key: str = ""
    value: str
    operator: Literal["equals", "contains", "regex"] = "equals"
    version: Literal["a", "b"]

    @model_validator(mode="after")
    def validate_rule(self) -> "TargetingRule":
        if self.type in ("header", "cookie", "query") and not self.key:
            raise ValueError(f"{self.type} rule requires a key")
        if self.operator == "regex":
            try:
                re.compile(self.value)
            except re.error as e:
                raise ValueError(f"invalid regex {self.value!r}: {e}")
        return self


class TrafficSplit(_PlanModel):
    a: int = Field(default=50, ge=0, le=100)
    b: int = Field(default=50, ge=0, le=100)

    @model_validator(mode="after")
    def validate_total(self) -> "TrafficSplit":
        if self.a + self.b != 100:
            raise ValueError(f"traffic split must total 100, got {self.a + self.b}")
        return self


class SuccessCriteria(_PlanModel):
    metric: Literal["success_rate", "error_rate", "latency_ms"]
    threshold: float
    comparison: Literal["greater", "less", "equal"] = "greater"

    def evaluate(self, value: float) -> bool:
        if self.comparison == "greater":
            return value > self.threshold
        if self.comparison == "less":
            return value < self.threshold
        return abs(value - self.threshold) < 1e-9


class ABTestParams(_PlanModel):
    """A/B test parameters."""

    variant_a: str | None = None
    variant_b: str | None = None
    service: str | None = None
    traffic_split: TrafficSplit = Field(default_factory=TrafficSplit)
    targeting_rules: list[TargetingRule] = Field(default_factory=list)
    duration: float = Field(default=0.0, ge=0)
    success_criteria: SuccessCriteria | None = None
    ready_timeout: float = Field(default=300.0, gt=0)


class DeploymentPlan(_PlanModel):
    """Immutable description of one rollout."""

    target: str = Field(min_length=1)
    environment: str = "default"
    namespace: str = "default"
    old_version: str | None = None
    new_version: str = Field(min_length=1)
    strategy: DeploymentStrategy = DeploymentStrategy.ROLLING

    rolling: RollingParams = Field(default_factory=RollingParams)
    blue_green: BlueGreenParams = Field(default_factory=BlueGreenParams)
    canary: CanaryParams | None = None
    ab_test: ABTestParams | None = None

    health_check: HealthCheckSpec = Field(default_factory=HealthCheckSpec)
    rollback: RollbackPolicy = Field(default_factory=RollbackPolicy)
    timeout: float | None = Field(default=None, gt=0)
    poll_interval: float = Field(default=5.0, gt=0)
    replicas: int = Field(default=1, ge=0)

    resources: dict[str, Any] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_strategy_params(self) -> "DeploymentPlan":
        if self.strategy == DeploymentStrategy.CANARY and self.canary is None:
            raise ValueError("canary strategy requires 'canary' parameters")
        if self.strategy == DeploymentStrategy.AB_TEST and self.ab_test is None:
            raise ValueError("ab-test strategy requires 'ab_test' parameters")
        return self

    @property
    def key(self) -> tuple[str, str]:
        """Identity used to enforce one active run per target."""
        return (self.target, self.environment)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def validate_plan(data: "DeploymentPlan | dict[str, Any]") -> DeploymentPlan:
    """Validate raw plan data.

    Args:
        data: Plan mapping (from YAML/JSON) or an already built plan

    Returns:
        Validated DeploymentPlan

    Raises:
        ValidationFault: If the plan is malformed
    """
    if isinstance(data, DeploymentPlan):
        return data
    try:
        return DeploymentPlan.model_validate(data)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or 'plan'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationFault(
            f"Invalid deployment plan: {'; '.join(errors)}",
            errors=errors,
        )


@dataclass(frozen=True)
class ProgressEvent:
    """Immutable progress event."""

    run_id: str
    phase: DeploymentPhase
    progress: int
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the event stream wire shape."""
        result: dict[str, Any] = {
            "runId": self.run_id,
            "phase": self.phase.value,
            "progress": self.progress,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.data is not None:
            result["data"] = dict(self.data)
        return result


@dataclass(frozen=True)
class HealthResult:
    """Result of a single health probe."""

    healthy: bool
    message: str
    duration_ms: float = 0.0
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "message": self.message,
            "durationMs": round(self.duration_ms, 3),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class MetricsWindow:
    """Metrics observed over a window; None means not observed."""

    success_rate: float | None = None
    error_rate: float | None = None
    latency_ms: float | None = None
    start: datetime | None = None
    end: datetime | None = None

    def get(self, metric: str) -> float | None:
        return getattr(self, metric, None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success_rate": self.success_rate,
            "error_rate": self.error_rate,
            "latency_ms": self.latency_ms,
        }


@dataclass(frozen=True)
class GateResult:
    """Result of a metrics gate evaluation."""

    passed: bool
    violations: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"passed": self.passed, "violations": list(self.violations)}
