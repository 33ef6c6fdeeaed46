"""Metrics analysis gate and metrics sources."""

import math
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import httpx

from rolloutctl.core.exceptions import PlatformError
from rolloutctl.core.logging import get_logger
from rolloutctl.deploy.models import GateResult, MetricThresholds, MetricsWindow

logger = get_logger(__name__)


class MetricsGate:
    """Evaluates an observed metrics window against thresholds."""

    def evaluate(self, window: MetricsWindow, thresholds: MetricThresholds) -> GateResult:
        """Evaluate every threshold that has observed data.

        A metric missing from the window is not evaluated and cannot fail
        the gate. All violations are reported.
        """
        violations: list[str] = []

        if thresholds.min_success_rate is not None and window.success_rate is not None:
            if window.success_rate < thresholds.min_success_rate:
                violations.append(
                    f"Success rate {window.success_rate:.4f} below threshold "
                    f"{thresholds.min_success_rate:.4f}"
                )

        if thresholds.max_error_rate is not None and window.error_rate is not None:
            if window.error_rate > thresholds.max_error_rate:
                violations.append(
                    f"Error rate {window.error_rate:.4f} above threshold "
                    f"{thresholds.max_error_rate:.4f}"
                )

        if thresholds.max_latency_ms is not None and window.latency_ms is not None:
            if window.latency_ms > thresholds.max_latency_ms:
                violations.append(
                    f"Latency {window.latency_ms:.1f}ms above threshold "
                    f"{thresholds.max_latency_ms:.1f}ms"
                )

        return GateResult(passed=not violations, violations=tuple(violations))


class MetricsSource(ABC):
    """Provides observed metrics for a traffic destination over a window."""

    @abstractmethod
    async def collect(
        self,
        destination: str,
        namespace: str,
        start: datetime,
        end: datetime,
    ) -> MetricsWindow:
        """Collect metrics observed between start and end."""


class StaticMetricsSource(MetricsSource):
    """Returns preconfigured windows in order, repeating the last one.

    Used for dry runs and tests.
    """

    def __init__(self, windows: list[MetricsWindow] | MetricsWindow | None = None):
        if windows is None:
            windows = [MetricsWindow()]
        elif isinstance(windows, MetricsWindow):
            windows = [windows]
        self._windows = list(windows)
        self.calls: list[tuple[str, datetime, datetime]] = []

    async def collect(
        self,
        destination: str,
        namespace: str,
        start: datetime,
        end: datetime,
    ) -> MetricsWindow:
        index = min(len(self.calls), len(self._windows) - 1)
        self.calls.append((destination, start, end))
        window = self._windows[index]
        return MetricsWindow(
            success_rate=window.success_rate,
            error_rate=window.error_rate,
            latency_ms=window.latency_ms,
            start=start,
            end=end,
        )


DEFAULT_PROMETHEUS_QUERIES = {
    "success_rate": (
        'sum(rate(http_requests_total{{service="{destination}",namespace="{namespace}",status!~"5.."}}[{window}]))'
        ' / sum(rate(http_requests_total{{service="{destination}",namespace="{namespace}"}}[{window}]))'
    ),
    "error_rate": (
        'sum(rate(http_requests_total{{service="{destination}",namespace="{namespace}",status=~"5.."}}[{window}]))'
        ' / sum(rate(http_requests_total{{service="{destination}",namespace="{namespace}"}}[{window}]))'
    ),
    "latency_ms": (
        "histogram_quantile(0.95, sum(rate(http_request_duration_seconds_bucket"
        '{{service="{destination}",namespace="{namespace}"}}[{window}])) by (le)) * 1000'
    ),
}


class PrometheusMetricsSource(MetricsSource):
    """Queries success rate, error rate and p95 latency from Prometheus."""

    def __init__(
        self,
        url: str,
        queries: dict[str, str] | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url.rstrip("/")
        self._queries = {**DEFAULT_PROMETHEUS_QUERIES, **(queries or {})}
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._url,
                timeout=self._timeout,
                transport=self._transport,
            )
            logger.debug(f"Created Prometheus client for {self._url}")
        return self._client

    async def collect(
        self,
        destination: str,
        namespace: str,
        start: datetime,
        end: datetime,
    ) -> MetricsWindow:
        seconds = max(1, int(math.ceil((end - start).total_seconds())))
        values: dict[str, float | None] = {}

        for metric in ("success_rate", "error_rate", "latency_ms"):
            query = self._queries[metric].format(
                destination=destination,
                namespace=namespace,
                window=f"{seconds}s",
            )
            values[metric] = await self._query_scalar(query, end)

        return MetricsWindow(start=start, end=end, **values)

    async def _query_scalar(self, query: str, at: datetime) -> float | None:
        """Run an instant query and return the first sample value."""
        try:
            response = await self.client.get(
                "/api/v1/query",
                params={"query": query, "time": at.timestamp()},
            )
            response.raise_for_status()
            payload: dict[str, Any] = response.json()
        except httpx.HTTPStatusError as e:
            raise PlatformError(
                f"Prometheus query failed: HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            )
        except httpx.RequestError as e:
            raise PlatformError(f"Prometheus request failed: {e}")

        if payload.get("status") != "success":
            raise PlatformError(f"Prometheus query error: {payload.get('error', 'unknown')}")

        result = payload.get("data", {}).get("result", [])
        if not result:
            return None

        try:
            value = float(result[0]["value"][1])
        except (KeyError, IndexError, TypeError, ValueError):
            return None

        if math.isnan(value) or math.isinf(value):
            return None
        return value

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
