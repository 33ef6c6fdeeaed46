"""Progressive delivery orchestration."""

from rolloutctl.deploy.models import (
    DeploymentPhase,
    DeploymentPlan,
    DeploymentStrategy,
    ProgressEvent,
    validate_plan,
)
from rolloutctl.deploy.state import RunSnapshot, RunState

__all__ = [
    "DeploymentPhase",
    "DeploymentPlan",
    "DeploymentStrategy",
    "ProgressEvent",
    "RunSnapshot",
    "RunState",
    "validate_plan",
]
