"""Health probing for rollout gates and post-deploy monitoring."""

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from rolloutctl.core.logging import get_logger
from rolloutctl.deploy.models import HealthCheckSpec, HealthResult

logger = get_logger(__name__)

ResultCallback = Callable[[HealthResult], "Awaitable[Any] | Any"]


class MonitorHandle:
    """Cancellation handle for a continuous health monitor."""

    def __init__(self) -> None:
        self._task: asyncio.Task[None] | None = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    def cancel(self) -> None:
        """Stop scheduling probes. Safe to call more than once."""
        if self._cancelled:
            return
        self._cancelled = True
        task = self._task
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # a callback cancelling its own monitor just lets the loop exit
        if task is not current:
            task.cancel()

    async def wait(self) -> None:
        """Wait for the monitor loop to exit."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class HealthProbe:
    """HTTP health probe.

    A probe never raises for an unhealthy service: transport errors,
    non-200 responses and timeouts all come back as an unhealthy result.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = client
        self._transport = transport
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                follow_redirects=False,
            )
        return self._client

    async def check(self, spec: HealthCheckSpec) -> HealthResult:
        """Perform a single health check.

        Args:
            spec: Health check specification

        Returns:
            HealthResult; healthy only for a 200 response within the timeout
        """
        if not spec.enabled:
            return HealthResult(healthy=True, message="Health check disabled", duration_ms=0.0)

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self.client.get(spec.url, timeout=spec.timeout),
                timeout=spec.timeout,
            )
            healthy = response.status_code == 200
            if healthy:
                message = "Health check passed"
            else:
                message = f"Health check failed: HTTP {response.status_code}"
        except (asyncio.TimeoutError, httpx.TimeoutException):
            healthy = False
            message = f"Health check timed out after {spec.timeout}s"
        except httpx.HTTPError as e:
            healthy = False
            message = f"Health check error: {e}"
        except Exception as e:
            healthy = False
            message = f"Health check error: {e}"

        duration_ms = (time.monotonic() - start) * 1000
        return HealthResult(healthy=healthy, message=message, duration_ms=duration_ms)

    def monitor(
        self,
        spec: HealthCheckSpec,
        on_result: ResultCallback,
        interval: float | None = None,
    ) -> MonitorHandle:
        """Probe repeatedly on a fixed interval.

        Must be called from a running event loop. The first probe runs one
        interval after the call.

        Args:
            spec: Health check specification
            on_result: Called with every result (sync or async)
            interval: Override for spec.interval, in seconds

        Returns:
            MonitorHandle used to stop the loop
        """
        handle = MonitorHandle()
        period = interval if interval is not None else spec.interval
        handle._task = asyncio.get_running_loop().create_task(
            self._monitor_loop(spec, on_result, period, handle)
        )
        return handle

    async def _monitor_loop(
        self,
        spec: HealthCheckSpec,
        on_result: ResultCallback,
        interval: float,
        handle: MonitorHandle,
    ) -> None:
        while not handle.cancelled:
            await asyncio.sleep(interval)
            if handle.cancelled:
                break

            result = await self.check(spec)
            if handle.cancelled:
                # result of an in-flight probe is dropped after cancel
                break

            if not result.healthy:
                logger.warning(f"Health check failed: {result.message}")

            try:
                outcome = on_result(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Health monitor callback failed")

    async def aclose(self) -> None:
        """Close the HTTP client if this probe created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
