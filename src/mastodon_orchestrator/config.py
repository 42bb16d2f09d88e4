"""Orchestrator settings (pydantic-settings) and environment file loading."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings

from mastodon_orchestrator.domain.errors import ConfigValidationError
from mastodon_orchestrator.domain.models.environment import EnvironmentConfig, parse_environment
from mastodon_orchestrator.domain.models.policy import PollPolicy, RetryPolicy


class KubectlSettings(BaseSettings):
    """How the orchestrator reaches the cluster."""

    binary: str = Field(default="kubectl", alias="ORCH_KUBECTL")
    kubeconfig: str | None = Field(default=None, alias="ORCH_KUBECONFIG")
    context: str | None = Field(default=None, alias="ORCH_KUBE_CONTEXT")
    request_timeout: int = Field(default=30, alias="ORCH_KUBE_REQUEST_TIMEOUT")
    delete_timeout: int = Field(default=300, alias="ORCH_KUBE_DELETE_TIMEOUT")
    field_manager: str = Field(default="mastodon-orchestrator", alias="ORCH_FIELD_MANAGER")

    model_config = {"env_prefix": "ORCH_", "extra": "ignore", "populate_by_name": True}


class RetrySettings(BaseSettings):
    """Stage-level retry with bounded exponential backoff."""

    max_attempts: int = Field(default=3, alias="ORCH_MAX_ATTEMPTS")
    backoff_initial: float = Field(default=2.0, alias="ORCH_BACKOFF_INITIAL")
    backoff_factor: float = Field(default=2.0, alias="ORCH_BACKOFF_FACTOR")
    backoff_max: float = Field(default=60.0, alias="ORCH_BACKOFF_MAX")

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff_initial=self.backoff_initial,
            backoff_factor=self.backoff_factor,
            backoff_max=self.backoff_max,
        )

    model_config = {"env_prefix": "ORCH_", "extra": "ignore", "populate_by_name": True}


class PollingSettings(BaseSettings):
    """Readiness polling."""

    interval: float = Field(default=1.0, alias="ORCH_POLL_INTERVAL")
    factor: float = Field(default=1.5, alias="ORCH_POLL_FACTOR")
    max_interval: float = Field(default=15.0, alias="ORCH_POLL_MAX_INTERVAL")
    stage_timeout: float = Field(default=600.0, alias="ORCH_STAGE_TIMEOUT")

    def policy(self) -> PollPolicy:
        return PollPolicy(
            interval=self.interval,
            factor=self.factor,
            max_interval=self.max_interval,
            timeout=self.stage_timeout,
        )

    model_config = {"env_prefix": "ORCH_", "extra": "ignore", "populate_by_name": True}


class StateSettings(BaseSettings):
    """Where plan run ledgers are recorded."""

    url: str = Field(
        default="sqlite+aiosqlite:///.mastodon-orchestrator/state.db",
        alias="ORCH_STATE_URL",
    )
    echo: bool = Field(default=False, alias="ORCH_STATE_ECHO")

    model_config = {"env_prefix": "ORCH_STATE_", "extra": "ignore", "populate_by_name": True}


class ObservabilitySettings(BaseSettings):
    """Observability configuration."""

    service_name: str = Field(default="mastodon-orchestrator", alias="SERVICE_NAME")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    json_logs: bool = Field(default=False, alias="JSON_LOGS")
    metrics_textfile: str | None = Field(default=None, alias="METRICS_TEXTFILE")
    tracing_enabled: bool = Field(default=False, alias="TRACING_ENABLED")

    model_config = {"env_prefix": "OBS_", "extra": "ignore", "populate_by_name": True}


class OrchestratorSettings(BaseSettings):
    """Main orchestrator settings."""

    rollback_on_abort: bool = Field(default=True, alias="ORCH_ROLLBACK_ON_ABORT")

    kubectl: KubectlSettings = Field(default_factory=KubectlSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    state: StateSettings = Field(default_factory=StateSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    model_config = {"env_prefix": "", "extra": "ignore", "populate_by_name": True}


@lru_cache
def get_settings() -> OrchestratorSettings:
    """Get cached orchestrator settings."""
    return OrchestratorSettings()


def load_environment(path: str | Path) -> EnvironmentConfig:
    """Read and validate an environment YAML file."""
    source = Path(path)
    try:
        data = yaml.safe_load(source.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigValidationError(f"Cannot read environment file {source}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Environment file {source} is not valid YAML: {exc}") from exc
    return parse_environment(data)
