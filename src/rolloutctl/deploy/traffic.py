"""Traffic and platform capabilities used by strategy engines.

Real implementations talk to the target platform's control plane; the
in-memory ones back dry runs and tests.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from rolloutctl.core.exceptions import PlatformError
from rolloutctl.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RoutingRule:
    """A resolved routing predicate bound to a destination."""

    type: str
    key: str
    operator: str
    value: str
    destination: str

    def to_dict(self) -> dict[str, str]:
        return {
            "type": self.type,
            "key": self.key,
            "operator": self.operator,
            "value": self.value,
            "destination": self.destination,
        }


@dataclass(frozen=True)
class ResourceDescriptor:
    """Opaque workload description handed to the platform."""

    name: str
    version: str
    resources: dict[str, Any] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    rolling_update: dict[str, Any] | None = None
    replicas: int | None = None


@dataclass(frozen=True)
class RolloutStatus:
    """Platform-reported rollout progress for one workload."""

    ready: bool
    replicas: int = 0
    ready_replicas: int = 0
    updated_replicas: int = 0
    message: str = ""


def check_split(weights: dict[str, int]) -> None:
    """Reject a split whose weights do not total 100."""
    if sum(weights.values()) != 100:
        raise PlatformError(f"Traffic split must total 100, got {weights}")


class TrafficController(ABC):
    """Capability to move traffic between destinations.

    Every call is a fallible network operation; callers await it and retry.
    """

    @abstractmethod
    async def set_weight(self, destination_id: str, percent: int) -> None:
        """Route percent of traffic to destination_id."""

    async def set_split(self, weights: dict[str, int]) -> None:
        """Route traffic across several destinations in one change.

        Weights must total 100. This fallback applies them with one
        ``set_weight`` per destination, so the total is briefly off 100
        between calls; controllers that can update every destination in one
        request override it.
        """
        check_split(weights)
        for destination_id, percent in weights.items():
            await self.set_weight(destination_id, percent)

    @abstractmethod
    async def set_selector(self, service_id: str, labels: dict[str, str]) -> None:
        """Point service_id at the workloads matching labels."""

    async def set_routes(self, service_id: str, routes: list[RoutingRule]) -> None:
        """Install request-routing predicates for service_id."""
        raise PlatformError(f"{type(self).__name__} does not support request routing")


class Platform(ABC):
    """Capability to apply and observe workloads."""

    @abstractmethod
    async def apply(self, namespace: str, descriptor: ResourceDescriptor) -> None:
        """Create or update the workload described by descriptor."""

    @abstractmethod
    async def teardown(self, name: str, namespace: str) -> None:
        """Remove a workload."""

    @abstractmethod
    async def rollout_status(self, name: str, namespace: str) -> RolloutStatus:
        """Get the workload's rollout status."""


class InMemoryTrafficController(TrafficController):
    """Traffic controller keeping state in memory."""

    def __init__(
        self,
        failures: dict[str, int] | None = None,
        on_call: Callable[[str, tuple[Any, ...]], Any] | None = None,
    ):
        self.weights: dict[str, int] = {}
        self.selectors: dict[str, dict[str, str]] = {}
        self.routes: dict[str, list[RoutingRule]] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self._failures = dict(failures or {})
        self._on_call = on_call
        self._in_flight: set[str] = set()

    def weight_history(self, destination_id: str) -> list[int]:
        return [args[1] for op, args in self.calls if op == "set_weight" and args[0] == destination_id]

    async def _record(self, operation: str, key: str, args: tuple[Any, ...]) -> None:
        if key in self._in_flight:
            raise PlatformError(f"Overlapping {operation} for {key}")
        self._in_flight.add(key)
        try:
            self.calls.append((operation, args))
            if self._on_call is not None:
                self._on_call(operation, args)
            # yield so overlapping calls would be observable
            await asyncio.sleep(0)
            remaining = self._failures.get(operation, 0)
            if remaining:
                self._failures[operation] = remaining - 1
                raise PlatformError(f"Simulated {operation} failure for {key}")
        finally:
            self._in_flight.discard(key)

    async def set_weight(self, destination_id: str, percent: int) -> None:
        await self._record("set_weight", destination_id, (destination_id, percent))
        self.weights[destination_id] = percent
        logger.debug(f"Weight {destination_id}={percent}%")

    async def set_split(self, weights: dict[str, int]) -> None:
        check_split(weights)
        key = ",".join(sorted(weights))
        await self._record("set_split", key, (dict(weights),))
        self.weights.update(weights)
        logger.debug(f"Split {weights}")

    async def set_selector(self, service_id: str, labels: dict[str, str]) -> None:
        await self._record("set_selector", service_id, (service_id, dict(labels)))
        self.selectors[service_id] = dict(labels)
        logger.debug(f"Selector {service_id}={labels}")

    async def set_routes(self, service_id: str, routes: list[RoutingRule]) -> None:
        await self._record("set_routes", service_id, (service_id, list(routes)))
        self.routes[service_id] = list(routes)


class InMemoryPlatform(Platform):
    """Platform keeping workloads in memory.

    Workloads become ready after ``ready_after`` status polls.
    """

    def __init__(
        self,
        ready_after: int = 0,
        never_ready: set[str] | None = None,
        failures: dict[str, int] | None = None,
    ):
        self.workloads: dict[tuple[str, str], ResourceDescriptor] = {}
        self.torn_down: list[str] = []
        self.calls: list[tuple[str, str]] = []
        self._ready_after = ready_after
        self._never_ready = set(never_ready or ())
        self._polls: dict[str, int] = {}
        self._failures = dict(failures or {})

    def _maybe_fail(self, operation: str, name: str) -> None:
        self.calls.append((operation, name))
        remaining = self._failures.get(operation, 0)
        if remaining:
            self._failures[operation] = remaining - 1
            raise PlatformError(f"Simulated {operation} failure for {name}")

    async def apply(self, namespace: str, descriptor: ResourceDescriptor) -> None:
        self._maybe_fail("apply", descriptor.name)
        self.workloads[(namespace, descriptor.name)] = descriptor
        self._polls[descriptor.name] = 0

    async def teardown(self, name: str, namespace: str) -> None:
        self._maybe_fail("teardown", name)
        self.workloads.pop((namespace, name), None)
        self.torn_down.append(name)

    async def rollout_status(self, name: str, namespace: str) -> RolloutStatus:
        self._maybe_fail("rollout_status", name)
        descriptor = self.workloads.get((namespace, name))
        if descriptor is None:
            raise PlatformError(f"Workload not found: {namespace}/{name}", status_code=404)

        polls = self._polls.get(name, 0) + 1
        self._polls[name] = polls
        replicas = descriptor.replicas or 1
        ready = name not in self._never_ready and polls > self._ready_after
        return RolloutStatus(
            ready=ready,
            replicas=replicas,
            ready_replicas=replicas if ready else 0,
            updated_replicas=replicas,
            message="ready" if ready else "waiting for replicas",
        )
