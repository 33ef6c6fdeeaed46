"""Run command."""

import asyncio
from contextlib import nullcontext

import click

from rolloutctl.commands.plan import resolve_plan
from rolloutctl.core.context import RolloutContext, pass_context
from rolloutctl.core.output import format_duration
from rolloutctl.core.progress import ProgressRenderer
from rolloutctl.deploy.models import DeploymentPhase, DeploymentPlan
from rolloutctl.deploy.orchestrator import Orchestrator
from rolloutctl.deploy.state import RunSnapshot


async def execute_plan(
    ctx: RolloutContext,
    deployment_plan: DeploymentPlan,
    watch: bool = True,
    follow: bool = False,
) -> RunSnapshot:
    """Run a plan to completion.

    Args:
        ctx: CLI context
        deployment_plan: Plan to run
        watch: Render progress events live
        follow: After completion, keep the rollback monitor running until
            it triggers or the command is interrupted

    Returns:
        Final run snapshot
    """
    context = ctx.orchestrator_context(deployment_plan)
    orchestrator = Orchestrator(context)
    renderer = ProgressRenderer(console=ctx.output.console) if watch and not ctx.quiet else None

    try:
        with renderer.attach(orchestrator.bus) if renderer else nullcontext():
            handle = await orchestrator.start(deployment_plan)
            await orchestrator.wait(handle)
            if follow and handle.monitor is not None:
                ctx.output.print_info("Monitoring health, press Ctrl-C to stop")
                await handle.monitor.wait()
            await orchestrator.bus.flush()
        return handle.snapshot()
    finally:
        await orchestrator.shutdown(grace=30)
        await context.aclose()


@click.command("run")
@click.argument("plan_file", metavar="PLAN")
@click.option("--watch/--no-watch", default=True, help="Render progress live")
@click.option("--follow", is_flag=True, help="Keep monitoring health after completion")
@pass_context
def run(ctx: RolloutContext, plan_file: str, watch: bool, follow: bool) -> None:
    """Run a deployment plan from a file or the configured plans.

    \b
    Examples:
        rolloutctl run rollout.yaml
        rolloutctl --dry-run run rollout.yaml
        rolloutctl run rollout.yaml --follow
        rolloutctl run checkout-canary
    """
    deployment_plan = ctx.prepare_plan(resolve_plan(ctx, plan_file))

    if ctx.dry_run and not ctx.quiet:
        ctx.output.print_warning("Dry-run mode: traffic moves are simulated in memory")

    snapshot = asyncio.run(execute_plan(ctx, deployment_plan, watch=watch, follow=follow))

    if ctx.output_format.structured:
        ctx.output.print_snapshot(snapshot.to_dict())
    else:
        if ctx.verbose and not ctx.quiet:
            ctx.output.print_snapshot(snapshot.to_dict())
        if snapshot.phase == DeploymentPhase.COMPLETE:
            ctx.output.print_success(
                f"Rollout {snapshot.run_id} completed in {format_duration(snapshot.elapsed_seconds)}"
            )
        else:
            ctx.output.print_error(
                f"Rollout {snapshot.run_id} failed ({snapshot.failure_cause}): {snapshot.message}"
            )

    if snapshot.phase != DeploymentPhase.COMPLETE:
        raise click.exceptions.Exit(1)
