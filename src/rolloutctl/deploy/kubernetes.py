"""Kubernetes platform and traffic adapters using the official kubernetes client.

The kubernetes client is synchronous; every API call runs in a worker
thread so strategy engines keep the event loop free.
"""

import asyncio
import math
import re
from collections.abc import Callable
from typing import Any, TypeVar

from rolloutctl.config import K8sConfig
from rolloutctl.core.exceptions import ConfigError, PlatformError
from rolloutctl.core.logging import get_logger
from rolloutctl.deploy.traffic import (
    Platform,
    ResourceDescriptor,
    RolloutStatus,
    RoutingRule,
    TrafficController,
    check_split,
)

logger = get_logger(__name__)

T = TypeVar("T")

ISTIO_GROUP = "networking.istio.io"
ISTIO_VERSION = "v1beta1"


class KubernetesClient:
    """Lazily configured kubernetes API clients."""

    def __init__(self, config: K8sConfig | None = None):
        self._config = config or K8sConfig()
        self._core_v1: Any = None
        self._apps_v1: Any = None
        self._custom_objects: Any = None
        self._loaded = False

    def _load_config(self) -> None:
        """Load kubernetes configuration."""
        if self._loaded:
            return

        from kubernetes import config

        kubeconfig = self._config.get_kubeconfig()
        context = self._config.get_context()

        try:
            if kubeconfig:
                config.load_kube_config(config_file=kubeconfig, context=context)
            else:
                # Try in-cluster config first, then default kubeconfig
                try:
                    config.load_incluster_config()
                except config.ConfigException:
                    config.load_kube_config(context=context)
        except Exception as e:
            raise ConfigError(f"Failed to load k8s config: {e}")

        self._loaded = True
        logger.debug(f"Loaded k8s config (context={context})")

    @property
    def core_v1(self) -> Any:
        """Get CoreV1Api client (services)."""
        if self._core_v1 is None:
            self._load_config()
            from kubernetes import client

            self._core_v1 = client.CoreV1Api()
        return self._core_v1

    @property
    def apps_v1(self) -> Any:
        """Get AppsV1Api client (deployments)."""
        if self._apps_v1 is None:
            self._load_config()
            from kubernetes import client

            self._apps_v1 = client.AppsV1Api()
        return self._apps_v1

    @property
    def custom_objects(self) -> Any:
        """Get CustomObjectsApi client (Istio resources)."""
        if self._custom_objects is None:
            self._load_config()
            from kubernetes import client

            self._custom_objects = client.CustomObjectsApi()
        return self._custom_objects


async def _call(action: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking API call in a thread, mapping API errors to PlatformError."""
    from kubernetes.client.rest import ApiException

    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except ApiException as e:
        raise PlatformError(f"Failed to {action}: {e.reason}", status_code=e.status)


def build_deployment(namespace: str, descriptor: ResourceDescriptor) -> dict[str, Any]:
    """Build a Deployment body from a resource descriptor.

    Recognized descriptor resources: ``image`` (defaults to
    ``<app>:<version>``), ``port``, ``env`` and ``resources``
    (requests/limits).
    """
    spec = descriptor.resources
    app = descriptor.labels.get("app", descriptor.name)
    image = spec.get("image") or f"{app}:{descriptor.version}"
    selector = {k: v for k, v in descriptor.labels.items() if k != "version"} or {"app": app}

    container: dict[str, Any] = {"name": app, "image": image}
    if spec.get("port"):
        container["ports"] = [{"containerPort": int(spec["port"])}]
    if spec.get("env"):
        container["env"] = [{"name": k, "value": str(v)} for k, v in spec["env"].items()]
    if spec.get("resources"):
        container["resources"] = spec["resources"]

    body: dict[str, Any] = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": descriptor.name,
            "namespace": namespace,
            "labels": dict(descriptor.labels),
        },
        "spec": {
            "replicas": descriptor.replicas if descriptor.replicas is not None else 1,
            "selector": {"matchLabels": selector},
            "template": {
                "metadata": {"labels": dict(descriptor.labels)},
                "spec": {"containers": [container]},
            },
        },
    }

    if descriptor.rolling_update:
        body["spec"]["strategy"] = {
            "type": "RollingUpdate",
            "rollingUpdate": {
                "maxSurge": descriptor.rolling_update.get("max_surge", "25%"),
                "maxUnavailable": descriptor.rolling_update.get("max_unavailable", "25%"),
            },
        }

    return body


def deployment_status(deployment: Any) -> RolloutStatus:
    """Derive rollout status from a Deployment object."""
    spec_replicas = deployment.spec.replicas if deployment.spec.replicas is not None else 1
    status = deployment.status
    ready = status.ready_replicas or 0
    updated = status.updated_replicas or 0
    available = status.available_replicas or 0
    generation = deployment.metadata.generation or 0
    observed = status.observed_generation or 0

    conditions = status.conditions or []
    progressing = next((c for c in conditions if c.type == "Progressing"), None)
    if progressing is not None and progressing.reason == "ProgressDeadlineExceeded":
        return RolloutStatus(
            ready=False,
            replicas=spec_replicas,
            ready_replicas=ready,
            updated_replicas=updated,
            message=f"Progress deadline exceeded: {progressing.message}",
        )

    done = (
        observed >= generation
        and updated >= spec_replicas
        and ready >= spec_replicas
        and available >= spec_replicas
    )
    return RolloutStatus(
        ready=done,
        replicas=spec_replicas,
        ready_replicas=ready,
        updated_replicas=updated,
        message="rollout complete" if done else f"{ready}/{spec_replicas} replicas ready",
    )


class KubernetesPlatform(Platform):
    """Applies descriptors as Deployments."""

    def __init__(self, client: KubernetesClient):
        self._client = client

    async def apply(self, namespace: str, descriptor: ResourceDescriptor) -> None:
        body = build_deployment(namespace, descriptor)
        apps_v1 = self._client.apps_v1

        try:
            await _call("read deployment", apps_v1.read_namespaced_deployment, descriptor.name, namespace)
        except PlatformError as e:
            if e.status_code != 404:
                raise
            await _call("create deployment", apps_v1.create_namespaced_deployment, namespace, body)
            logger.info(f"Created deployment {namespace}/{descriptor.name}")
            return

        await _call("update deployment", apps_v1.patch_namespaced_deployment, descriptor.name, namespace, body)
        logger.info(f"Updated deployment {namespace}/{descriptor.name} to {descriptor.version}")

    async def teardown(self, name: str, namespace: str) -> None:
        apps_v1 = self._client.apps_v1
        try:
            await _call(
                "scale deployment",
                apps_v1.patch_namespaced_deployment_scale,
                name,
                namespace,
                {"spec": {"replicas": 0}},
            )
            await _call("delete deployment", apps_v1.delete_namespaced_deployment, name, namespace)
        except PlatformError as e:
            if e.status_code != 404:
                raise
            logger.debug(f"Deployment {namespace}/{name} already gone")
            return
        logger.info(f"Deleted deployment {namespace}/{name}")

    async def rollout_status(self, name: str, namespace: str) -> RolloutStatus:
        deployment = await _call(
            "get deployment", self._client.apps_v1.read_namespaced_deployment, name, namespace
        )
        return deployment_status(deployment)


class KubernetesTrafficController(TrafficController):
    """Moves traffic by Service selector, replica ratio or Istio VirtualService.

    Weights are tracked per destination against a baseline workload: setting
    a destination's weight gives the baseline whatever is left of 100.
    """

    def __init__(
        self,
        client: KubernetesClient,
        namespace: str,
        baseline: str,
        mode: str = "replicas",
        virtual_service: str | None = None,
        total_replicas: int | None = None,
    ):
        if mode not in ("replicas", "istio"):
            raise ConfigError(f"Unknown traffic mode: {mode}")
        self._client = client
        self._namespace = namespace
        self._baseline = baseline
        self._mode = mode
        self._virtual_service = virtual_service or baseline
        self._total_replicas = total_replicas
        self._weights: dict[str, int] = {baseline: 100}
        self._routes: list[RoutingRule] = []

    @property
    def weights(self) -> dict[str, int]:
        return dict(self._weights)

    def _rebalance(self, destination: str, percent: int) -> None:
        others = [d for d in self._weights if d != self._baseline]
        if destination != self._baseline:
            self._weights[destination] = percent
            remaining = 100 - sum(w for d, w in self._weights.items() if d != self._baseline)
            if remaining < 0:
                raise PlatformError(f"Weights for {self._virtual_service} exceed 100%")
            self._weights[self._baseline] = remaining
        elif not others:
            self._weights[self._baseline] = 100
        elif len(others) == 1:
            self._weights[self._baseline] = percent
            self._weights[others[0]] = 100 - percent
        else:
            raise PlatformError(
                f"Cannot set baseline weight with {len(others)} other destinations"
            )

    async def set_weight(self, destination_id: str, percent: int) -> None:
        previous = dict(self._weights)
        self._rebalance(destination_id, percent)
        await self._push_weights(previous)

    async def set_split(self, weights: dict[str, int]) -> None:
        """Replace every weight at once; destinations not named drop to 0."""
        check_split(weights)
        previous = dict(self._weights)
        self._weights = {destination: 0 for destination in self._weights}
        self._weights.update(weights)
        self._weights.setdefault(self._baseline, 0)
        await self._push_weights(previous)

    async def _push_weights(self, previous: dict[str, int]) -> None:
        try:
            if self._mode == "istio":
                await self._patch_virtual_service()
            else:
                await self._scale_by_ratio()
        except PlatformError:
            self._weights = previous
            raise
        logger.info(f"Traffic weights for {self._virtual_service}: {self._weights}")

    async def set_selector(self, service_id: str, labels: dict[str, str]) -> None:
        await _call(
            "patch service selector",
            self._client.core_v1.patch_namespaced_service,
            service_id,
            self._namespace,
            {"spec": {"selector": dict(labels)}},
        )
        logger.info(f"Service {self._namespace}/{service_id} selector set to {labels}")

    async def set_routes(self, service_id: str, routes: list[RoutingRule]) -> None:
        if self._mode != "istio":
            raise PlatformError("Request routing requires traffic_mode 'istio'")
        unsupported = sorted({route.type for route in routes if _istio_match(route) is None})
        if unsupported:
            raise PlatformError(
                f"Istio routing cannot match {', '.join(unsupported)} rules on {service_id}"
            )

        previous = self._routes
        self._routes = list(routes)
        try:
            await self._patch_virtual_service()
        except PlatformError:
            self._routes = previous
            raise

    async def _baseline_total(self) -> int:
        if self._total_replicas is None:
            deployment = await _call(
                "get deployment",
                self._client.apps_v1.read_namespaced_deployment,
                self._baseline,
                self._namespace,
            )
            self._total_replicas = max(1, deployment.spec.replicas or 1)
        return self._total_replicas

    async def _scale_by_ratio(self) -> None:
        total = await self._baseline_total()
        for destination, weight in self._weights.items():
            if destination == self._baseline:
                continue
            replicas = math.ceil(total * weight / 100) if weight > 0 else 0
            await _call(
                "scale deployment",
                self._client.apps_v1.patch_namespaced_deployment_scale,
                destination,
                self._namespace,
                {"spec": {"replicas": replicas}},
            )

        baseline_weight = self._weights[self._baseline]
        baseline_replicas = math.ceil(total * baseline_weight / 100) if baseline_weight > 0 else 0
        await _call(
            "scale deployment",
            self._client.apps_v1.patch_namespaced_deployment_scale,
            self._baseline,
            self._namespace,
            {"spec": {"replicas": baseline_replicas}},
        )

    def _virtual_service_http(self) -> list[dict[str, Any]]:
        http: list[dict[str, Any]] = []
        for route in self._routes:
            http.append(
                {
                    "match": [_istio_match(route)],
                    "route": [{"destination": {"host": route.destination}, "weight": 100}],
                }
            )

        http.append(
            {
                "route": [
                    {"destination": {"host": destination}, "weight": weight}
                    for destination, weight in self._weights.items()
                ]
            }
        )
        return http

    async def _patch_virtual_service(self) -> None:
        await _call(
            "patch virtual service",
            self._client.custom_objects.patch_namespaced_custom_object,
            ISTIO_GROUP,
            ISTIO_VERSION,
            self._namespace,
            "virtualservices",
            self._virtual_service,
            {"spec": {"http": self._virtual_service_http()}},
        )


def _string_match(operator: str, value: str) -> dict[str, str]:
    if operator == "regex":
        return {"regex": value}
    if operator == "contains":
        return {"regex": f".*{re.escape(value)}.*"}
    return {"exact": value}


def _istio_match(route: RoutingRule) -> dict[str, Any] | None:
    """Translate a routing rule to an Istio HTTPMatchRequest."""
    if route.type == "header":
        return {"headers": {route.key.lower(): _string_match(route.operator, route.value)}}
    if route.type == "query":
        return {"queryParams": {route.key: _string_match(route.operator, route.value)}}
    if route.type == "cookie":
        if route.operator == "regex":
            pattern = f".*{route.key}={route.value}.*"
        elif route.operator == "contains":
            pattern = f".*{re.escape(route.key)}=[^;]*{re.escape(route.value)}.*"
        else:
            pattern = f".*{re.escape(route.key)}={re.escape(route.value)}(;.*)?$"
        return {"headers": {"cookie": {"regex": pattern}}}
    return None
