"""Plan command group."""

from pathlib import Path
from typing import Any

import click

from rolloutctl.config import load_plan
from rolloutctl.core.context import RolloutContext, pass_context
from rolloutctl.core.exceptions import ValidationFault
from rolloutctl.deploy.models import DeploymentPlan, DeploymentStrategy


@click.group()
def plan() -> None:
    """Deployment plans - validate and inspect.

    \b
    Examples:
        rolloutctl plan validate rollout.yaml
        rolloutctl plan show rollout.yaml -o yaml
        rolloutctl plan list
    """
    pass


def resolve_plan(ctx: RolloutContext, ref: str) -> DeploymentPlan:
    """Load a plan from a file path, or by name from the configured plans."""
    if Path(ref).is_file():
        return load_plan(ref)
    return ctx.config.get_plan(ref)


def plan_summary(deployment_plan: DeploymentPlan) -> dict[str, Any]:
    """Key facts about a plan for display."""
    summary: dict[str, Any] = {
        "target": deployment_plan.target,
        "environment": deployment_plan.environment,
        "namespace": deployment_plan.namespace,
        "strategy": deployment_plan.strategy.value,
        "from": deployment_plan.old_version or "-",
        "to": deployment_plan.new_version,
        "health_check": deployment_plan.health_check.url if deployment_plan.health_check.enabled else "disabled",
        "auto_rollback": deployment_plan.rollback.enabled,
        "timeout": f"{deployment_plan.timeout:g}s" if deployment_plan.timeout else "-",
    }

    if deployment_plan.strategy == DeploymentStrategy.CANARY:
        summary["steps"] = " -> ".join(
            f"{step.weight}%" + (" (pause)" if step.pause else "")
            for step in deployment_plan.canary.steps
        )
    elif deployment_plan.strategy == DeploymentStrategy.BLUE_GREEN:
        switch = deployment_plan.blue_green.traffic_switch
        if switch.manual:
            summary["switch"] = "manual"
        elif switch.scheduled_at:
            summary["switch"] = f"scheduled at {switch.scheduled_at.isoformat()}"
        else:
            summary["switch"] = "automatic"
    elif deployment_plan.strategy == DeploymentStrategy.AB_TEST:
        split = deployment_plan.ab_test.traffic_split
        summary["split"] = f"A={split.a}% B={split.b}%"
        summary["targeting_rules"] = len(deployment_plan.ab_test.targeting_rules)

    return summary


@plan.command("validate")
@click.argument("plan_file", metavar="PLAN")
@pass_context
def validate(ctx: RolloutContext, plan_file: str) -> None:
    """Validate a deployment plan file.

    \b
    Examples:
        rolloutctl plan validate rollout.yaml
    """
    try:
        deployment_plan = resolve_plan(ctx, plan_file)
    except ValidationFault as e:
        ctx.output.print_error(f"Invalid plan: {plan_file}")
        for error in e.errors:
            ctx.output.print(f"  - {error}", style="red")
        raise click.exceptions.Exit(1)

    ctx.output.print_success(
        f"Plan is valid: {deployment_plan.strategy.value} rollout of "
        f"{deployment_plan.target} to {deployment_plan.new_version}"
    )


@plan.command("show")
@click.argument("plan_file", metavar="PLAN")
@pass_context
def show(ctx: RolloutContext, plan_file: str) -> None:
    """Show a deployment plan with defaults filled in."""
    deployment_plan = resolve_plan(ctx, plan_file)

    if ctx.output_format.structured:
        ctx.output.print_data(deployment_plan.to_dict())
    else:
        ctx.output.print_data(plan_summary(deployment_plan), title=f"Plan: {deployment_plan.target}")


@plan.command("list")
@pass_context
def list_plans(ctx: RolloutContext) -> None:
    """List plans defined under `plans:` in the configuration."""
    rows = []
    for name in sorted(ctx.config.plans):
        deployment_plan = ctx.config.get_plan(name)
        rows.append(
            {
                "name": name,
                "target": deployment_plan.target,
                "environment": deployment_plan.environment,
                "strategy": deployment_plan.strategy.value,
                "version": deployment_plan.new_version,
            }
        )
    ctx.output.print_data(rows, title="Configured plans")
