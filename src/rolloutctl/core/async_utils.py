"""Async utilities for bounded waits and retried platform calls."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from rolloutctl.core.exceptions import TransportFault
from rolloutctl.core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for fallible platform calls."""

    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))


async def retry_async(
    func: Callable[[], Awaitable[T]],
    operation: str,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call an async function, retrying failures with bounded backoff.

    Args:
        func: Zero-argument coroutine factory to call
        operation: Name used in logs and in the escalated fault
        policy: Retry policy (defaults to RetryPolicy())
        sleep: Sleep function, replaceable in tests

    Returns:
        Result of the first successful call

    Raises:
        TransportFault: If every attempt failed
    """
    policy = policy or RetryPolicy()
    last_error: Exception | None = None

    for attempt in range(1, policy.attempts + 1):
        try:
            return await func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e
            if attempt >= policy.attempts:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{operation} failed (attempt {attempt}/{policy.attempts}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            await sleep(delay)

    raise TransportFault(
        f"{operation} failed after {policy.attempts} attempts: {last_error}",
        operation=operation,
        attempts=policy.attempts,
    )


async def wait_for_event(event: asyncio.Event, timeout: float | None) -> bool:
    """Wait until an event is set or the timeout elapses.

    Returns:
        True if the event was set, False on timeout
    """
    if event.is_set():
        return True
    if timeout is not None and timeout <= 0:
        return False
    try:
        await asyncio.wait_for(event.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


async def wait_for_any(
    events: list[asyncio.Event],
    timeout: float | None,
) -> asyncio.Event | None:
    """Wait until any of the events is set.

    Returns:
        The first event found set, or None on timeout
    """
    for event in events:
        if event.is_set():
            return event

    waiters = [asyncio.ensure_future(e.wait()) for e in events]
    try:
        await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()

    for event in events:
        if event.is_set():
            return event
    return None
