"""Configuration management for rolloutctl using Pydantic."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from rolloutctl.core.async_utils import RetryPolicy
from rolloutctl.core.exceptions import ConfigError
from rolloutctl.core.logging import LogLevel
from rolloutctl.core.output import OutputFormat
from rolloutctl.deploy.models import DeploymentPlan, validate_plan


class K8sConfig(BaseModel):
    """Kubernetes configuration."""

    kubeconfig: str | None = None
    context: str | None = None
    namespace: str = "default"
    traffic_mode: str = "replicas"  # replicas, istio

    @field_validator("traffic_mode")
    @classmethod
    def validate_traffic_mode(cls, v: str) -> str:
        if v not in ("replicas", "istio"):
            raise ValueError("traffic_mode must be 'replicas' or 'istio'")
        return v

    def get_kubeconfig(self) -> str | None:
        """Get kubeconfig path from config or environment."""
        return (
            os.environ.get("ROLLOUTCTL_KUBECONFIG")
            or os.environ.get("KUBECONFIG")
            or self.kubeconfig
        )

    def get_context(self) -> str | None:
        """Get k8s context from config or environment."""
        return (
            os.environ.get("ROLLOUTCTL_K8S_CONTEXT")
            or os.environ.get("K8S_CONTEXT")
            or self.context
        )

    def get_namespace(self) -> str:
        """Get default namespace from config or environment."""
        return (
            os.environ.get("ROLLOUTCTL_K8S_NAMESPACE")
            or os.environ.get("K8S_NAMESPACE")
            or self.namespace
        )


class PrometheusConfig(BaseModel):
    """Prometheus configuration for canary analysis."""

    url: str | None = None
    timeout: float = 10.0
    queries: dict[str, str] = Field(default_factory=dict)

    def get_url(self) -> str | None:
        """Get Prometheus URL from config or environment."""
        return (
            os.environ.get("ROLLOUTCTL_PROMETHEUS_URL")
            or os.environ.get("PROMETHEUS_URL")
            or self.url
        )


class RetryConfig(BaseModel):
    """Retry policy for traffic and platform calls."""

    attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=5.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            multiplier=self.multiplier,
        )


class GlobalConfig(BaseModel):
    """Global settings."""

    output_format: OutputFormat = OutputFormat.TABLE
    color: str = "auto"  # auto, always, never
    verbosity: LogLevel = LogLevel.INFO
    dry_run: bool = False
    timeout: int = 1800

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        if v not in ("auto", "always", "never"):
            raise ValueError("color must be 'auto', 'always', or 'never'")
        return v


class RolloutConfig(BaseModel):
    """Main configuration model."""

    model_config = {"populate_by_name": True}

    version: str = "1"
    global_settings: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    retry: RetryConfig = Field(default_factory=RetryConfig)
    prometheus: PrometheusConfig = Field(default_factory=PrometheusConfig)
    k8s: K8sConfig = Field(default_factory=K8sConfig)
    plans: dict[str, dict[str, Any]] = Field(default_factory=dict)

    def get_plan(self, name: str) -> DeploymentPlan:
        """Get a named plan, validated."""
        if name not in self.plans:
            raise ConfigError(f"Plan '{name}' not found")
        return validate_plan(self.plans[name])


class EnvSettings(BaseSettings):
    """ROLLOUTCTL_* environment overrides for global settings."""

    model_config = SettingsConfigDict(env_prefix="ROLLOUTCTL_", extra="ignore")

    output: OutputFormat | None = None
    log_level: LogLevel | None = None
    dry_run: bool | None = None
    timeout: int | None = None
    retry_attempts: int | None = None

    def overrides(self) -> dict[str, Any]:
        """Config fragment to merge on top of file configuration."""
        global_settings: dict[str, Any] = {}
        if self.output is not None:
            global_settings["output_format"] = self.output.value
        if self.log_level is not None:
            global_settings["verbosity"] = self.log_level.value
        if self.dry_run is not None:
            global_settings["dry_run"] = self.dry_run
        if self.timeout is not None:
            global_settings["timeout"] = self.timeout

        result: dict[str, Any] = {}
        if global_settings:
            result["global"] = global_settings
        if self.retry_attempts is not None:
            result["retry"] = {"attempts": self.retry_attempts}
        return result


class ConfigLoader:
    """Loads and merges configuration from multiple sources."""

    CONFIG_FILENAMES = ["rolloutctl.yaml", "rolloutctl.yml", ".rolloutctl.yaml", ".rolloutctl.yml"]

    def __init__(self, user_config_path: Path | None = None):
        self._user_config_path = user_config_path or Path.home() / ".rolloutctl" / "config.yaml"

    def load(self, config_file: str | Path | None = None) -> RolloutConfig:
        """Load configuration from files and environment.

        Priority (highest to lowest):
        1. ROLLOUTCTL_* environment variables
        2. Explicitly specified config file
        3. Project config (./rolloutctl.yaml, searched upward)
        4. User config (~/.rolloutctl/config.yaml)

        Args:
            config_file: Optional explicit config file path

        Returns:
            Merged configuration
        """
        configs: list[dict[str, Any]] = []

        if self._user_config_path.exists():
            configs.append(self._load_yaml_file(self._user_config_path))

        project_config = self._find_project_config()
        if project_config:
            configs.append(self._load_yaml_file(project_config))

        if config_file:
            config_path = Path(config_file)
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {config_file}")
            configs.append(self._load_yaml_file(config_path))

        try:
            configs.append(EnvSettings().overrides())
        except ValidationError as e:
            raise ConfigError(f"Invalid ROLLOUTCTL_* environment setting: {e}")

        merged = self._merge_configs(configs)

        try:
            return RolloutConfig(**merged)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}")

    def _find_project_config(self) -> Path | None:
        """Find project config file in current or parent directories."""
        current = Path.cwd()

        while current != current.parent:
            for filename in self.CONFIG_FILENAMES:
                config_path = current / filename
                if config_path.exists():
                    return config_path
            current = current.parent

        return None

    def _load_yaml_file(self, path: Path) -> dict[str, Any]:
        """Load a YAML config file."""
        try:
            with open(path) as f:
                content = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}")

        if not isinstance(content, dict):
            raise ConfigError(f"Expected a mapping in {path}")
        return content

    def _merge_configs(self, configs: list[dict[str, Any]]) -> dict[str, Any]:
        """Deep merge multiple configuration dictionaries."""
        result: dict[str, Any] = {}
        for config in configs:
            result = self._deep_merge(result, config)
        return result

    def _deep_merge(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result


def load_config(config_file: str | Path | None = None) -> RolloutConfig:
    """Load rolloutctl configuration.

    Args:
        config_file: Optional explicit config file path

    Returns:
        Loaded configuration
    """
    return ConfigLoader().load(config_file)


def get_default_config() -> RolloutConfig:
    """Get default configuration without loading from files."""
    return RolloutConfig()


def load_plan(path: str | Path) -> DeploymentPlan:
    """Load and validate a deployment plan from a YAML or JSON file.

    A file holding a single top-level ``plan`` key is unwrapped.

    Raises:
        ConfigError: If the file cannot be read or parsed
        ValidationFault: If the plan is invalid
    """
    plan_path = Path(path)
    if not plan_path.exists():
        raise ConfigError(f"Plan file not found: {path}")

    try:
        with open(plan_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {plan_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read {plan_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping in {plan_path}")
    if set(data) == {"plan"}:
        data = data["plan"]
    return validate_plan(data)
