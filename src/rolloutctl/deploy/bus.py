"""In-process progress event bus."""

import asyncio
import inspect
import itertools
from collections import defaultdict, deque
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from rolloutctl.core.logging import get_logger
from rolloutctl.deploy.models import ProgressEvent

logger = get_logger(__name__)

Listener = Callable[[ProgressEvent], "Awaitable[Any] | Any"]

_subscription_ids = itertools.count(1)


class Subscription:
    """A registered listener with its own delivery queue."""

    def __init__(self, bus: "ProgressBus", listener: Listener, run_id: str | None):
        self.id = next(_subscription_ids)
        self.run_id = run_id
        self._bus = bus
        self._listener = listener
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self.delivered = 0
        self.failures = 0

    @property
    def active(self) -> bool:
        return self in self._bus._subscriptions

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def matches(self, event: ProgressEvent) -> bool:
        return self.run_id is None or self.run_id == event.run_id

    def enqueue(self, event: ProgressEvent) -> None:
        self._queue.put_nowait(event)
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._deliver())

    async def _deliver(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                outcome = self._listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
                self.delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failures += 1
                logger.exception(
                    f"Progress listener {self.id} failed on {event.phase.value} event for run {event.run_id}"
                )
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        await self._queue.join()

    def unsubscribe(self) -> None:
        self._bus.unsubscribe(self)

    def _stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None


class ProgressBus:
    """Publish/subscribe channel for progress events.

    Publishing never waits on listeners: each subscription is drained by its
    own task, so a slow or failing listener only affects itself. Events are
    delivered to every subscription in publish order.
    """

    def __init__(self, history_limit: int = 1000):
        self._subscriptions: list[Subscription] = []
        self._history: dict[str, deque[ProgressEvent]] = defaultdict(
            lambda: deque(maxlen=history_limit)
        )
        self._latest: dict[str, ProgressEvent] = {}
        self._watchers: dict[str, list[asyncio.Queue[ProgressEvent]]] = defaultdict(list)

    def subscribe(self, listener: Listener, run_id: str | None = None) -> Subscription:
        """Register a listener for one run, or for all runs when run_id is None."""
        subscription = Subscription(self, listener, run_id)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a listener. Unknown subscriptions are ignored."""
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        subscription._stop()

    def publish(self, event: ProgressEvent) -> None:
        """Record an event and queue it for every matching listener."""
        self._history[event.run_id].append(event)
        self._latest[event.run_id] = event

        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.enqueue(event)

        for queue in self._watchers.get(event.run_id, []):
            queue.put_nowait(event)

    def latest(self, run_id: str) -> ProgressEvent | None:
        """Most recent event for a run."""
        return self._latest.get(run_id)

    def history(self, run_id: str) -> list[ProgressEvent]:
        """All retained events for a run, oldest first."""
        return list(self._history.get(run_id, ()))

    def forget(self, run_id: str) -> None:
        """Drop the retained history and latest event of a run.

        Subscriptions are owned by their callers and stay registered.
        """
        self._history.pop(run_id, None)
        self._latest.pop(run_id, None)

    async def stream(self, run_id: str) -> AsyncIterator[ProgressEvent]:
        """Yield a run's events (past, then live) up to its first terminal event."""
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        for event in self.history(run_id):
            queue.put_nowait(event)
        self._watchers[run_id].append(queue)
        try:
            while True:
                event = await queue.get()
                yield event
                if event.phase.is_terminal:
                    return
        finally:
            self._watchers[run_id].remove(queue)
            if not self._watchers[run_id]:
                del self._watchers[run_id]

    async def flush(self) -> None:
        """Wait until every queued event has been handed to its listener."""
        for subscription in list(self._subscriptions):
            await subscription.drain()

    def close(self) -> None:
        """Stop all delivery tasks."""
        for subscription in list(self._subscriptions):
            self.unsubscribe(subscription)
