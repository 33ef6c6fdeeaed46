"""Main CLI entry point for rolloutctl."""

import sys
from typing import Any

import click
from rich.console import Console

from rolloutctl import __version__
from rolloutctl.config import load_config
from rolloutctl.core.context import RolloutContext, pass_context
from rolloutctl.core.exceptions import ConfigError, RolloutError
from rolloutctl.core.output import OutputFormat

CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
    "max_content_width": 120,
}


class OutputFormatType(click.ParamType):
    """Custom Click parameter type for output format."""

    name = "format"

    def convert(
        self,
        value: Any,
        param: click.Parameter | None,
        ctx: click.Context | None,
    ) -> OutputFormat:
        if isinstance(value, OutputFormat):
            return value
        try:
            return OutputFormat(value.lower())
        except ValueError:
            self.fail(
                f"Invalid format '{value}'. Choose from: table, json, yaml, raw",
                param,
                ctx,
            )


OUTPUT_FORMAT = OutputFormatType()


def print_version(ctx: click.Context, param: click.Parameter, value: bool) -> None:
    """Print version and exit."""
    if not value or ctx.resilient_parsing:
        return
    click.echo(f"rolloutctl version {__version__}")
    ctx.exit()


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "-o",
    "--output",
    "output_format",
    type=OUTPUT_FORMAT,
    metavar="FORMAT",
    envvar="ROLLOUTCTL_OUTPUT",
    help="Output format: table, json, yaml, raw",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="Increase verbosity (-v for info, -vv for debug)",
)
@click.option(
    "-q",
    "--quiet",
    is_flag=True,
    help="Suppress non-essential output",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Simulate traffic moves in memory without touching the cluster",
)
@click.option(
    "--no-color",
    is_flag=True,
    help="Disable colored output",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True),
    metavar="FILE",
    envvar="ROLLOUTCTL_CONFIG",
    help="Path to config file",
)
@click.option(
    "--version",
    is_flag=True,
    callback=print_version,
    expose_value=False,
    is_eager=True,
    help="Show version and exit",
)
@click.pass_context
def cli(
    ctx: click.Context,
    output_format: OutputFormat | None,
    verbose: int,
    quiet: bool,
    dry_run: bool,
    no_color: bool,
    config_file: str | None,
) -> None:
    """rolloutctl - progressive delivery for services.

    Runs rolling, blue-green, canary and A/B rollouts with health gates,
    metrics analysis and automatic rollback.

    \b
    Examples:
        rolloutctl plan validate rollout.yaml
        rolloutctl run rollout.yaml
        rolloutctl --dry-run run rollout.yaml

    \b
    Configuration:
        ~/.rolloutctl/config.yaml    User configuration
        ./rolloutctl.yaml            Project configuration
        ROLLOUTCTL_*                 Environment variables
    """
    try:
        config = load_config(config_file)

        ctx.obj = RolloutContext(
            config=config,
            output_format=output_format,
            verbose=verbose,
            quiet=quiet,
            dry_run=dry_run,
            color=not no_color,
        )

    except ConfigError as e:
        console = Console(stderr=True)
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


def register_commands() -> None:
    """Register all command groups."""
    from rolloutctl.commands.plan import plan
    from rolloutctl.commands.run import run

    cli.add_command(plan)
    cli.add_command(run)


register_commands()


@cli.group()
def config() -> None:
    """Configuration management."""
    pass


@config.command("show")
@pass_context
def config_show(rollout_ctx: RolloutContext) -> None:
    """Show current configuration."""
    cfg = rollout_ctx.config
    config_data = {
        "output_format": rollout_ctx.output_format.value,
        "verbosity": cfg.global_settings.verbosity.value,
        "dry_run": rollout_ctx.dry_run,
        "timeout": cfg.global_settings.timeout,
        "retry_attempts": cfg.retry.attempts,
        "prometheus_url": cfg.prometheus.get_url(),
        "k8s_context": cfg.k8s.get_context(),
        "k8s_namespace": cfg.k8s.get_namespace(),
        "traffic_mode": cfg.k8s.traffic_mode,
        "plans": ", ".join(sorted(cfg.plans)) or "-",
    }
    rollout_ctx.output.print_data(config_data, title="Current Configuration")


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except RolloutError as e:
        console = Console(stderr=True)
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console = Console(stderr=True)
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
