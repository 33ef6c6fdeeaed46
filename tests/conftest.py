"""Pytest fixtures for rolloutctl tests."""

import asyncio
from typing import Any, Callable

import pytest
from click.testing import CliRunner

from rolloutctl.config import RolloutConfig
from rolloutctl.core.async_utils import RetryPolicy
from rolloutctl.deploy.bus import ProgressBus
from rolloutctl.deploy.health import HealthProbe
from rolloutctl.deploy.metrics import MetricsGate, StaticMetricsSource
from rolloutctl.deploy.models import DeploymentPlan, HealthCheckSpec, HealthResult, validate_plan
from rolloutctl.deploy.orchestrator import OrchestratorContext
from rolloutctl.deploy.state import RunState
from rolloutctl.deploy.strategies import EngineContext
from rolloutctl.deploy.traffic import InMemoryPlatform, InMemoryTrafficController


class ScriptedProbe(HealthProbe):
    """Health probe returning scripted results, repeating the last one."""

    def __init__(self, results: list[bool] | None = None):
        super().__init__()
        self.results = list(results if results is not None else [True])
        self.checks = 0

    def script(self, *results: bool) -> None:
        self.results = list(results)
        self.checks = 0

    async def check(self, spec: HealthCheckSpec) -> HealthResult:
        index = min(self.checks, len(self.results) - 1)
        self.checks += 1
        healthy = self.results[index]
        return HealthResult(
            healthy=healthy,
            message="Health check passed" if healthy else "Health check failed: HTTP 503",
            duration_ms=1.0,
        )


def build_plan(**overrides: Any) -> DeploymentPlan:
    """Plan with fast intervals suitable for tests."""
    data: dict[str, Any] = {
        "target": "svc-a",
        "environment": "staging",
        "old_version": "1.0.0",
        "new_version": "1.1.0",
        "poll_interval": 0.01,
        "health_check": {"interval": 0.01, "timeout": 0.5, "failure_threshold": 3},
        "rollback": {"enabled": False},
    }
    data.update(overrides)
    return validate_plan(data)


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI runner."""
    return CliRunner()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def probe() -> ScriptedProbe:
    return ScriptedProbe()


@pytest.fixture
def bus() -> ProgressBus:
    return ProgressBus()


@pytest.fixture
def traffic() -> InMemoryTrafficController:
    return InMemoryTrafficController()


@pytest.fixture
def platform() -> InMemoryPlatform:
    return InMemoryPlatform()


@pytest.fixture
def metrics() -> StaticMetricsSource:
    return StaticMetricsSource()


@pytest.fixture
def engine_context(
    probe: ScriptedProbe,
    bus: ProgressBus,
    traffic: InMemoryTrafficController,
    platform: InMemoryPlatform,
    metrics: StaticMetricsSource,
    fast_retry: RetryPolicy,
) -> EngineContext:
    return EngineContext(
        probe=probe,
        traffic=traffic,
        platform=platform,
        bus=bus,
        gate=MetricsGate(),
        metrics=metrics,
        retry=fast_retry,
    )


@pytest.fixture
def orchestrator_context(
    probe: ScriptedProbe,
    bus: ProgressBus,
    traffic: InMemoryTrafficController,
    platform: InMemoryPlatform,
    metrics: StaticMetricsSource,
    fast_retry: RetryPolicy,
) -> OrchestratorContext:
    return OrchestratorContext(
        probe=probe,
        traffic=traffic,
        platform=platform,
        metrics=metrics,
        bus=bus,
        retry=fast_retry,
    )


@pytest.fixture
def make_engine(engine_context: EngineContext) -> Callable[..., Any]:
    """Build an engine of the given class for a plan."""

    def factory(engine_class: type, plan: DeploymentPlan, run_id: str = "run-1"):
        state = RunState(run_id=run_id, plan=plan)
        return engine_class(plan, state, engine_context)

    return factory


@pytest.fixture
def mock_config() -> RolloutConfig:
    """Create a configuration without touching the filesystem."""
    return RolloutConfig()


@pytest.fixture
def make_plan() -> Callable[..., DeploymentPlan]:
    return build_plan


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    """Poll a predicate on the running loop until it holds."""

    async def waiter(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.005)

    return waiter
