"""Live rendering of rollout progress events."""

from contextlib import contextmanager
from typing import Generator

from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from rolloutctl.core.output import PHASE_STYLES
from rolloutctl.deploy.bus import ProgressBus, Subscription
from rolloutctl.deploy.models import ProgressEvent


def format_event(event: ProgressEvent) -> str:
    """One-line rich markup for an event."""
    style = PHASE_STYLES.get(event.phase, "white")
    line = f"[dim]{event.timestamp:%H:%M:%S}[/dim] [{style}]{event.phase.value:<11}[/{style}] {event.progress:>3}%  {escape(event.message)}"
    cause = (event.data or {}).get("cause")
    if cause:
        line += f" [dim](cause: {cause})[/dim]"
    return line


class ProgressRenderer:
    """Renders a run's events as a progress bar plus an event log.

    Subscribes to the bus, so rendering runs on the bus delivery task and
    never slows the rollout.
    """

    def __init__(self, console: Console | None = None, show_events: bool = True):
        self._console = console or Console()
        self._show_events = show_events
        self._progress: Progress | None = None
        self._tasks: dict[str, TaskID] = {}
        self.events: list[ProgressEvent] = []

    @contextmanager
    def attach(
        self,
        bus: ProgressBus,
        run_id: str | None = None,
        transient: bool = False,
    ) -> Generator[Subscription, None, None]:
        """Render events from the bus while the context is open."""
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=self._console,
            transient=transient,
        ) as progress:
            self._progress = progress
            subscription = bus.subscribe(self.handle, run_id=run_id)
            try:
                yield subscription
            finally:
                bus.unsubscribe(subscription)
                self._progress = None
                self._tasks.clear()

    def handle(self, event: ProgressEvent) -> None:
        """Bus listener."""
        self.events.append(event)

        if self._show_events:
            self._console.print(format_event(event))

        if self._progress is None:
            return
        task_id = self._tasks.get(event.run_id)
        if task_id is None:
            task_id = self._progress.add_task(event.run_id, total=100)
            self._tasks[event.run_id] = task_id

        description = f"{event.run_id} ({event.phase.value})"
        self._progress.update(task_id, completed=event.progress, description=description)
        if event.phase.is_terminal:
            self._progress.stop_task(task_id)
