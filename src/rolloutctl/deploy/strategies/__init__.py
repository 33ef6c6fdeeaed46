"""Deployment strategy engines."""

from rolloutctl.deploy.models import DeploymentStrategy
from rolloutctl.deploy.strategies.base import EngineContext, RunControl, StrategyEngine
from rolloutctl.deploy.strategies.rolling import RollingEngine
from rolloutctl.deploy.strategies.blue_green import BlueGreenEngine
from rolloutctl.deploy.strategies.canary import CanaryEngine
from rolloutctl.deploy.strategies.ab_test import ABTestEngine, RequestContext, RoutingTable

ENGINES: dict[DeploymentStrategy, type[StrategyEngine]] = {
    DeploymentStrategy.ROLLING: RollingEngine,
    DeploymentStrategy.BLUE_GREEN: BlueGreenEngine,
    DeploymentStrategy.CANARY: CanaryEngine,
    DeploymentStrategy.AB_TEST: ABTestEngine,
}

__all__ = [
    "ENGINES",
    "EngineContext",
    "RunControl",
    "StrategyEngine",
    "RollingEngine",
    "BlueGreenEngine",
    "CanaryEngine",
    "ABTestEngine",
    "RequestContext",
    "RoutingTable",
]
