"""Click context object for sharing state across commands."""

from __future__ import annotations

import click

from rolloutctl.config import RolloutConfig, get_default_config
from rolloutctl.core.logging import StructuredLogger, level_for_verbosity, setup_logging
from rolloutctl.core.output import OutputFormat, OutputFormatter
from rolloutctl.deploy.health import HealthProbe
from rolloutctl.deploy.metrics import MetricsSource, PrometheusMetricsSource, StaticMetricsSource
from rolloutctl.deploy.models import DeploymentPlan
from rolloutctl.deploy.orchestrator import OrchestratorContext
from rolloutctl.deploy.traffic import InMemoryPlatform, InMemoryTrafficController


class RolloutContext:
    """Shared context object for rolloutctl commands.

    This object is passed through Click's context mechanism and provides
    access to configuration, output and the collaborators a rollout needs.
    """

    def __init__(
        self,
        config: RolloutConfig | None = None,
        output_format: OutputFormat | None = None,
        verbose: int = 0,
        quiet: bool = False,
        dry_run: bool = False,
        color: bool = True,
    ):
        self._config = config or get_default_config()

        # Output settings (CLI overrides config)
        self._output_format = output_format or self._config.global_settings.output_format
        self._verbose = verbose
        self._quiet = quiet
        self._dry_run = dry_run or self._config.global_settings.dry_run
        self._color = color and self._config.global_settings.color != "never"

        log_level = level_for_verbosity(verbose, quiet, self._config.global_settings.verbosity)
        setup_logging(log_level, rich_output=self._color)
        self._logger = StructuredLogger("context")

        self._output = OutputFormatter(
            format=self._output_format,
            color=self._color,
            quiet=quiet,
        )

    @property
    def config(self) -> RolloutConfig:
        """Get the loaded configuration."""
        return self._config

    @property
    def output(self) -> OutputFormatter:
        """Get the output formatter."""
        return self._output

    @property
    def output_format(self) -> OutputFormat:
        return self._output_format

    @property
    def dry_run(self) -> bool:
        """Check if dry-run mode is enabled."""
        return self._dry_run

    @property
    def verbose(self) -> int:
        return self._verbose

    @property
    def quiet(self) -> bool:
        return self._quiet

    @property
    def color(self) -> bool:
        return self._color

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    def prepare_plan(self, plan: DeploymentPlan) -> DeploymentPlan:
        """Apply configured defaults and dry-run adjustments to a plan.

        Plans without an explicit namespace take the configured one.

        A dry run moves in-memory traffic only, so probing and post-deploy
        monitoring are switched off.
        """
        updates: dict[str, object] = {}
        if "namespace" not in plan.model_fields_set:
            updates["namespace"] = self._config.k8s.get_namespace()
        if plan.timeout is None and self._config.global_settings.timeout:
            updates["timeout"] = float(self._config.global_settings.timeout)
        if self._dry_run:
            updates["health_check"] = plan.health_check.model_copy(update={"enabled": False})
            updates["rollback"] = plan.rollback.model_copy(update={"enabled": False})
        return plan.model_copy(update=updates) if updates else plan

    def orchestrator_context(self, plan: DeploymentPlan) -> OrchestratorContext:
        """Build the collaborators for running a plan."""
        retry = self._config.retry.to_policy()

        if self._dry_run:
            self._logger.info("Dry run: using in-memory platform and traffic controller")
            return OrchestratorContext(
                probe=HealthProbe(),
                traffic=InMemoryTrafficController(),
                platform=InMemoryPlatform(),
                metrics=StaticMetricsSource(),
                retry=retry,
            )

        from rolloutctl.deploy.kubernetes import (
            KubernetesClient,
            KubernetesPlatform,
            KubernetesTrafficController,
        )

        k8s_config = self._config.k8s
        client = KubernetesClient(k8s_config)
        traffic = KubernetesTrafficController(
            client,
            namespace=plan.namespace,
            baseline=plan.target,
            mode=k8s_config.traffic_mode,
        )

        metrics: MetricsSource
        prometheus_url = self._config.prometheus.get_url()
        if prometheus_url:
            metrics = PrometheusMetricsSource(
                prometheus_url,
                queries=self._config.prometheus.queries or None,
                timeout=self._config.prometheus.timeout,
            )
        else:
            metrics = StaticMetricsSource()

        return OrchestratorContext(
            probe=HealthProbe(),
            traffic=traffic,
            platform=KubernetesPlatform(client),
            metrics=metrics,
            retry=retry,
        )


# Click decorator for passing context
pass_context = click.make_pass_decorator(RolloutContext, ensure=True)
