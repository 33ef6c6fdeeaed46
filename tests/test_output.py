"""Tests for output formatting utilities."""

import io
import json

import yaml
from rich.console import Console

from rolloutctl.core.output import (
    PHASE_STYLES,
    OutputFormat,
    OutputFormatter,
    format_duration,
    weight_bar,
)
from rolloutctl.deploy.models import DeploymentPhase

SNAPSHOT = {"run_id": "checkout-1a2b3c4d", "phase": "complete", "progress": 100, "traffic_weight": 100}


def formatter_with_buffer(**kwargs) -> tuple[OutputFormatter, io.StringIO]:
    buffer = io.StringIO()
    console = Console(file=buffer, width=120, no_color=True, highlight=False)
    return OutputFormatter(color=False, console=console, **kwargs), buffer


class TestFormatDuration:
    """Tests for format_duration."""

    def test_units(self):
        assert format_duration(4.0) == "4.0s"
        assert format_duration(90) == "1.5m"
        assert format_duration(7200) == "2.0h"
        assert format_duration(172800) == "2.0d"


class TestOutputFormatter:
    """Tests for OutputFormatter."""

    def test_quiet_suppresses_messages(self):
        formatter, buffer = formatter_with_buffer(quiet=True)
        formatter.print("plain")
        formatter.print_info("info")
        formatter.print_warning("warning")
        formatter.print_success("success")

        assert buffer.getvalue() == ""

    def test_error_goes_to_stderr(self, capsys):
        formatter, buffer = formatter_with_buffer(quiet=True)
        formatter.print_error("rollout failed")

        assert "rollout failed" in capsys.readouterr().err
        assert buffer.getvalue() == ""

    def test_json_snapshot(self):
        formatter, buffer = formatter_with_buffer(format=OutputFormat.JSON)
        formatter.print_data(SNAPSHOT)

        assert json.loads(buffer.getvalue()) == SNAPSHOT

    def test_yaml_keeps_key_order(self):
        formatter, buffer = formatter_with_buffer(format=OutputFormat.YAML)
        formatter.print_data(SNAPSHOT)

        text = buffer.getvalue()
        assert yaml.safe_load(text) == SNAPSHOT
        assert text.index("run_id") < text.index("traffic_weight")

    def test_raw_records_are_tabulated(self):
        formatter, buffer = formatter_with_buffer(format=OutputFormat.RAW)
        formatter.print_data(
            [
                {"run_id": "checkout-1", "phase": "complete"},
                {"run_id": "search-2", "phase": "failed"},
            ]
        )

        lines = buffer.getvalue().splitlines()
        assert lines[0].split() == ["run_id", "phase"]
        assert lines[2].split() == ["search-2", "failed"]

    def test_raw_mapping(self):
        formatter, buffer = formatter_with_buffer(format=OutputFormat.RAW)
        formatter.print_data({"phase": "complete"})

        assert buffer.getvalue().split() == ["phase", "complete"]

    def test_table_with_title(self):
        formatter, buffer = formatter_with_buffer()
        formatter.print_data(SNAPSHOT, title="Run status")

        text = buffer.getvalue()
        assert "Run status" in text
        assert "checkout-1a2b3c4d" in text

    def test_empty_table(self):
        formatter, buffer = formatter_with_buffer()
        formatter.print_data([])

        assert "No data" in buffer.getvalue()


class TestOutputFormat:
    """Tests for OutputFormat enum."""

    def test_values(self):
        assert [f.value for f in OutputFormat] == ["table", "json", "yaml", "raw"]


class TestSnapshotOutput:
    """Tests for print_snapshot and weight_bar."""

    def test_weight_bar(self):
        assert weight_bar(0, width=10) == "░" * 10
        assert weight_bar(50, width=10) == "█" * 5 + "░" * 5
        assert weight_bar(150, width=10) == "█" * 10

    def test_table_view(self):
        formatter, buffer = formatter_with_buffer()
        formatter.print_snapshot(
            {
                **SNAPSHOT,
                "elapsed_seconds": 90.0,
                "failure_cause": None,
                "last_health": {"healthy": True, "message": "HTTP 200"},
            }
        )

        text = buffer.getvalue()
        assert "Run checkout-1a2b3c4d" in text
        assert "1.5m" in text
        assert "healthy HTTP 200" in text
        assert "failure_cause" not in text

    def test_structured_view_is_full(self):
        formatter, buffer = formatter_with_buffer(format=OutputFormat.JSON)
        formatter.print_snapshot({**SNAPSHOT, "failure_cause": None})

        assert json.loads(buffer.getvalue())["failure_cause"] is None

    def test_phase_styles_cover_event_phases(self):
        formatter, _ = formatter_with_buffer()

        assert all(isinstance(phase, DeploymentPhase) for phase in PHASE_STYLES)
        assert formatter._snapshot_cell("phase", "healthCheck") == "[cyan]healthCheck[/cyan]"
        assert formatter._snapshot_cell("phase", DeploymentPhase.FAILED) == "[red]failed[/red]"
        assert formatter._snapshot_cell("phase", "preHooks") == "[white]preHooks[/white]"
