"""A/B test deployment strategy engine."""

import ipaddress
import random
import re
from dataclasses import dataclass, field
from enum import Enum

from rolloutctl.core.exceptions import GateFailure, RolloutError
from rolloutctl.deploy.models import DeploymentPhase, TargetingRule, TrafficSplit, utcnow
from rolloutctl.deploy.strategies.base import StrategyEngine
from rolloutctl.deploy.traffic import RoutingRule

# Dimensions are consulted in this order; the first one with a match decides.
DIMENSION_PRECEDENCE = ("user", "header", "cookie", "query", "ip")


class ABTestState(str, Enum):
    INIT = "init"
    DEPLOY_VARIANT_B = "deploy_variant_b"
    CONFIGURE_SPLIT = "configure_split"
    APPLY_TARGETING_RULES = "apply_targeting_rules"
    COLLECTING = "collecting"
    ROLLBACK = "rollback"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class RequestContext:
    """The request attributes targeting rules can inspect."""

    headers: dict[str, str] = field(default_factory=dict)
    cookies: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)
    ip: str | None = None
    user: str | None = None

    def lookup(self, rule_type: str, key: str) -> str | None:
        if rule_type == "header":
            wanted = key.lower()
            for name, value in self.headers.items():
                if name.lower() == wanted:
                    return value
            return None
        if rule_type == "cookie":
            return self.cookies.get(key)
        if rule_type == "query":
            return self.query.get(key)
        if rule_type == "ip":
            return self.ip
        if rule_type == "user":
            return self.user
        return None


def rule_matches(rule: TargetingRule, request: RequestContext) -> bool:
    """Check whether a targeting rule applies to a request."""
    actual = request.lookup(rule.type, rule.key)
    if actual is None:
        return False

    if rule.operator == "contains":
        return rule.value in actual
    if rule.operator == "regex":
        return re.search(rule.value, actual) is not None

    if rule.type == "ip" and "/" in rule.value:
        try:
            return ipaddress.ip_address(actual) in ipaddress.ip_network(rule.value, strict=False)
        except ValueError:
            return False
    return actual == rule.value


class RoutingTable:
    """Resolves requests to a variant.

    Within one dimension the last matching rule wins. Across dimensions
    DIMENSION_PRECEDENCE decides. Requests no rule matches follow the
    weighted split.
    """

    def __init__(
        self,
        rules: list[TargetingRule],
        split: TrafficSplit,
        variant_a: str,
        variant_b: str,
        rng: random.Random | None = None,
    ):
        self.rules = list(rules)
        self.split = split
        self.variant_a = variant_a
        self.variant_b = variant_b
        self._rng = rng or random.Random()

    def resolve(self, request: RequestContext) -> str:
        """Get the variant ("a" or "b") serving a request."""
        for dimension in DIMENSION_PRECEDENCE:
            matched = [
                rule for rule in self.rules
                if rule.type == dimension and rule_matches(rule, request)
            ]
            if matched:
                return matched[-1].version

        return "a" if self._rng.random() * 100 < self.split.a else "b"

    def destination(self, request: RequestContext) -> str:
        return self.variant_a if self.resolve(request) == "a" else self.variant_b

    def effective_routes(self) -> list[RoutingRule]:
        """Rules as a first-match-ordered list for the traffic controller.

        Duplicate predicates collapse to the last one declared, and later
        rules are listed first within their dimension so a first-match
        router gives the same answer as ``resolve``.
        """
        latest: dict[tuple[str, str, str, str], TargetingRule] = {}
        for rule in self.rules:
            predicate = (rule.type, rule.key, rule.operator, rule.value)
            latest.pop(predicate, None)
            latest[predicate] = rule

        ordered = list(latest.values())
        routes: list[RoutingRule] = []
        for dimension in DIMENSION_PRECEDENCE:
            for rule in reversed([r for r in ordered if r.type == dimension]):
                routes.append(
                    RoutingRule(
                        type=rule.type,
                        key=rule.key,
                        operator=rule.operator,
                        value=rule.value,
                        destination=self.variant_a if rule.version == "a" else self.variant_b,
                    )
                )
        return routes


class ABTestEngine(StrategyEngine):
    """A/B test engine.

    Runs variant B beside variant A, splits traffic by weight, installs
    targeting rules, then collects metrics for the test duration.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        params = self.plan.ab_test
        self.variant_a = params.variant_a or self.plan.target
        self.variant_b = params.variant_b or f"{self.plan.target}-b"
        self.service = params.service or self.plan.target
        self.routing = RoutingTable(
            params.targeting_rules,
            params.traffic_split,
            self.variant_a,
            self.variant_b,
        )
        self._deployed = False
        self._routes_installed = False

    @property
    def strategy_name(self) -> str:
        return "ab-test"

    async def _execute(self) -> None:
        params = self.plan.ab_test

        self._transition(ABTestState.DEPLOY_VARIANT_B)
        self._emit(
            DeploymentPhase.DEPLOY,
            10,
            f"Deploying variant B {self.variant_b} ({self.plan.new_version})",
        )
        await self._apply(
            self._descriptor(self.variant_b, self.plan.new_version, labels={"variant": "b"})
        )
        self._deployed = True
        await self._wait_ready(self.variant_b, params.ready_timeout, 10, 30)
        self._emit(DeploymentPhase.DEPLOY, 30, f"Variant B {self.variant_b} is ready")

        self._transition(ABTestState.CONFIGURE_SPLIT)
        split = params.traffic_split
        await self._set_split({self.variant_a: split.a, self.variant_b: split.b})
        self.state.traffic_weight = split.b
        self._emit(
            DeploymentPhase.DEPLOY,
            50,
            f"Traffic split A={split.a}% B={split.b}%",
            split={"a": split.a, "b": split.b},
            weight=split.b,
        )

        self._transition(ABTestState.APPLY_TARGETING_RULES)
        routes = self.routing.effective_routes()
        if routes:
            await self._set_routes(self.service, routes)
            self._routes_installed = True
        self._emit(
            DeploymentPhase.DEPLOY,
            60,
            f"Applied {len(routes)} targeting rule(s)",
            routes=[route.to_dict() for route in routes],
        )

        self._transition(ABTestState.COLLECTING)
        window_start = utcnow()
        if params.duration > 0:
            self._emit(
                DeploymentPhase.HEALTH_CHECK,
                65,
                f"Collecting metrics for {params.duration:g}s",
            )
            await self._hold(params.duration, "A/B collection")

        await self._health_gate("Variant B health check", 80)

        if params.success_criteria is not None:
            await self._evaluate_criteria(window_start)

    async def _evaluate_criteria(self, window_start) -> None:
        criteria = self.plan.ab_test.success_criteria
        try:
            window = await self._ctx.metrics.collect(
                self.variant_b, self.plan.namespace, window_start, utcnow()
            )
        except Exception as e:
            message = e.message if isinstance(e, RolloutError) else str(e)
            raise GateFailure(
                f"Success criteria could not be evaluated: {message}",
                violations=[f"metrics unavailable: {message}"],
            )

        value = window.get(criteria.metric)
        if value is None:
            self._logger.warning(f"No {criteria.metric} observed for {self.variant_b}, skipping criteria")
            return

        if not criteria.evaluate(value):
            violation = f"{criteria.metric}={value:g}, expected {criteria.comparison} {criteria.threshold:g}"
            raise GateFailure(f"Variant B failed success criteria: {violation}", violations=[violation])

        self._emit(
            DeploymentPhase.HEALTH_CHECK,
            90,
            f"Variant B met success criteria ({criteria.metric}={value:g})",
            metrics=window.to_dict(),
        )

    async def _rollback(self, error: RolloutError) -> None:
        await self._withdraw()

    async def revert(self) -> None:
        await self._withdraw()

    async def _withdraw(self) -> None:
        self._logger.info(f"Routing all traffic back to variant A {self.variant_a}")
        if self._routes_installed:
            await self._set_routes(self.service, [])
            self._routes_installed = False
        await self._set_split({self.variant_a: 100, self.variant_b: 0})
        self.state.traffic_weight = 0
        if self._deployed:
            await self._teardown(self.variant_b)
            self._deployed = False
