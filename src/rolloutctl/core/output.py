"""Output formatting for rolloutctl commands.

Structured formats (json, yaml, raw) print data as-is so they can be piped;
the table format renders Rich tables, with a dedicated view for run
snapshots.
"""

import json
from enum import Enum
from typing import Any

import yaml
from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table
from tabulate import tabulate

from rolloutctl.deploy.models import DeploymentPhase

console = Console()
error_console = Console(stderr=True)

# Phases without an entry render white
PHASE_STYLES = {
    DeploymentPhase.COMPLETE: "green",
    DeploymentPhase.FAILED: "red",
    DeploymentPhase.HEALTH_CHECK: "cyan",
    DeploymentPhase.DEPLOY: "blue",
}

# Snapshot fields shown in the table view, in display order
SNAPSHOT_FIELDS = (
    "run_id",
    "target",
    "environment",
    "strategy",
    "phase",
    "strategy_state",
    "progress",
    "traffic_weight",
    "elapsed_seconds",
    "rollback_triggers",
    "failure_cause",
    "message",
)


class OutputFormat(str, Enum):
    """Supported output formats."""

    TABLE = "table"
    JSON = "json"
    YAML = "yaml"
    RAW = "raw"

    @property
    def structured(self) -> bool:
        """Machine-readable formats that should not carry decoration."""
        return self is not OutputFormat.TABLE


class OutputFormatter:
    """Routes command output to the configured format."""

    def __init__(
        self,
        format: OutputFormat = OutputFormat.TABLE,
        color: bool = True,
        quiet: bool = False,
        console: Console | None = None,
    ):
        self.format = format
        self.color = color
        self.quiet = quiet
        self._console = console or Console(
            force_terminal=True if color else None,
            no_color=not color,
            highlight=color,
        )

    @property
    def console(self) -> Console:
        return self._console

    def _emit(self, message: str, style: str | None = None) -> None:
        if not self.quiet:
            self._console.print(message, style=style)

    def print(self, message: str, style: str | None = None) -> None:
        """Print a message to stdout."""
        self._emit(message, style=style)

    def print_error(self, message: str) -> None:
        """Print an error to stderr; not silenced by quiet mode."""
        error_console.print(f"[red]Error:[/red] {escape(message)}")

    def print_warning(self, message: str) -> None:
        self._emit(f"[yellow]Warning:[/yellow] {escape(message)}")

    def print_success(self, message: str) -> None:
        self._emit(f"[green]✓[/green] {escape(message)}")

    def print_info(self, message: str) -> None:
        self._emit(f"[blue]ℹ[/blue] {escape(message)}")

    def print_data(
        self,
        data: list[dict[str, Any]] | dict[str, Any],
        headers: list[str] | None = None,
        title: str | None = None,
    ) -> None:
        """Print data in the configured format."""
        if self.format == OutputFormat.JSON:
            self._print_syntax(json.dumps(data, indent=2, default=str), "json")
        elif self.format == OutputFormat.YAML:
            text = yaml.safe_dump(data, default_flow_style=False, allow_unicode=True, sort_keys=False)
            self._print_syntax(text, "yaml")
        elif self.format == OutputFormat.RAW:
            self._print_raw(data, headers)
        elif isinstance(data, dict):
            self._print_record(data, title)
        else:
            self._print_rows(data, headers, title)

    def print_snapshot(self, snapshot: dict[str, Any], title: str | None = None) -> None:
        """Print a run snapshot.

        Structured formats get the full snapshot; the table view shows the
        fields an operator needs, with the phase coloured and a weight bar.
        """
        if self.format.structured:
            self.print_data(snapshot)
            return

        table = Table(title=title or f"Run {snapshot.get('run_id', '')}", show_header=False)
        table.add_column("Field", style="dim")
        table.add_column("Value")
        for key in SNAPSHOT_FIELDS:
            value = snapshot.get(key)
            if value is None or value == "":
                continue
            table.add_row(key, self._snapshot_cell(key, value))
        health = snapshot.get("last_health")
        if health:
            verdict = "[green]healthy[/green]" if health.get("healthy") else "[red]unhealthy[/red]"
            table.add_row("last_health", f"{verdict} {escape(str(health.get('message', '')))}")
        self._console.print(table)

    def _snapshot_cell(self, key: str, value: Any) -> str:
        if key == "phase":
            style = PHASE_STYLES.get(value, "white")
            phase = value.value if isinstance(value, DeploymentPhase) else value
            return f"[{style}]{phase}[/{style}]"
        if key == "traffic_weight":
            return f"{weight_bar(int(value))} {value}%"
        if key == "progress":
            return f"{value}%"
        if key == "elapsed_seconds":
            return format_duration(float(value))
        return escape(str(value))

    def _print_syntax(self, text: str, lexer: str) -> None:
        if self.color:
            self._console.print(Syntax(text, lexer, theme="monokai"))
        else:
            self._console.print(text, markup=False, highlight=False)

    def _print_raw(self, data: Any, headers: list[str] | None = None) -> None:
        """Print plain text, tabulating lists of records."""
        if isinstance(data, list) and data and isinstance(data[0], dict):
            keys = headers or list(data[0].keys())
            rows = [[row.get(k, "") for k in keys] for row in data]
            text = tabulate(rows, headers=keys, tablefmt="plain")
        elif isinstance(data, dict):
            text = tabulate(list(data.items()), tablefmt="plain")
        elif isinstance(data, list):
            text = "\n".join(str(item) for item in data)
        else:
            text = str(data)
        self._console.print(text, markup=False, highlight=False)

    def _print_record(self, data: dict[str, Any], title: str | None) -> None:
        table = Table(title=title, show_header=True, header_style="bold cyan")
        table.add_column("Field", style="dim")
        table.add_column("Value")
        for key, value in data.items():
            table.add_row(str(key), "" if value is None else escape(str(value)))
        self._console.print(table)

    def _print_rows(
        self,
        data: list[dict[str, Any]],
        headers: list[str] | None,
        title: str | None,
    ) -> None:
        if not data:
            self._console.print("[dim]No data to display[/dim]")
            return

        headers = headers or list(data[0].keys())
        table = Table(title=title, show_header=True, header_style="bold cyan")
        for header in headers:
            table.add_column(header)
        for row in data:
            table.add_row(*[escape(str(row.get(h, ""))) for h in headers])
        self._console.print(table)


def weight_bar(weight: int, width: int = 20) -> str:
    """Render a traffic weight (0-100) as a fixed-width bar."""
    weight = max(0, min(100, weight))
    filled = round(weight * width / 100)
    return "█" * filled + "░" * (width - filled)


def format_duration(seconds: float) -> str:
    """Format seconds to human-readable duration."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        return f"{seconds / 60:.1f}m"
    elif seconds < 86400:
        return f"{seconds / 3600:.1f}h"
    return f"{seconds / 86400:.1f}d"
