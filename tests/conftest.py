"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml

from mastodon_orchestrator.config import (
    ObservabilitySettings,
    OrchestratorSettings,
    PollingSettings,
    RetrySettings,
    StateSettings,
)
from mastodon_orchestrator.domain.models.environment import EnvironmentConfig, parse_environment
from mastodon_orchestrator.domain.models.plan import DeploymentPlan
from mastodon_orchestrator.domain.models.policy import PollPolicy, RetryPolicy
from mastodon_orchestrator.domain.models.secrets import REQUIRED_SECRET_KEYS
from mastodon_orchestrator.domain.services.orchestrator import DeploymentOrchestrator
from mastodon_orchestrator.domain.services.planner import build_plan, SECRET_GENERATION_JOB
from mastodon_orchestrator.infrastructure.cluster.in_memory import InMemoryCluster
from mastodon_orchestrator.infrastructure.messaging.event_publisher import InMemoryEventPublisher
from mastodon_orchestrator.infrastructure.persistence.repositories.in_memory import (
    InMemoryPlanRunRepository,
)


@pytest.fixture(autouse=True)
def clear_stores() -> None:
    """Clear in-memory stores before each test."""
    InMemoryPlanRunRepository.clear()


@pytest.fixture
def env_data() -> dict[str, Any]:
    return {
        "name": "social-test",
        "namespace": "mastodon",
        "domain": "social.example.org",
        "storage": {
            "nfs_server": "10.0.0.20",
            "postgres": {"path": "/exports/postgres", "size": "20Gi"},
            "redis": {"path": "/exports/redis", "size": "2Gi"},
            "system": {"path": "/exports/system", "size": "50Gi"},
        },
        "images": {
            "mastodon": "ghcr.io/mastodon/mastodon:v4.3.0",
            "streaming": "ghcr.io/mastodon/mastodon-streaming:v4.3.0",
        },
        "replicas": {"web": 2, "streaming": 1, "sidekiq": 1},
        "database": {"password": "db-password-123"},
        "exposure": {"tls_secret": "social-tls"},
    }


@pytest.fixture
def environment(env_data: dict[str, Any]) -> EnvironmentConfig:
    return parse_environment(env_data)


@pytest.fixture
def plan(environment: EnvironmentConfig) -> DeploymentPlan:
    return build_plan(environment)


@pytest.fixture
def secret_output() -> list[str]:
    lines = ["Running via Spring preloader", "", "Copy the following to your .env:"]
    lines.extend(f"{key}=generated-{key.lower()}-value" for key in REQUIRED_SECRET_KEYS)
    return lines


@pytest.fixture
def cluster(secret_output: list[str]) -> InMemoryCluster:
    return InMemoryCluster(job_logs={SECRET_GENERATION_JOB: secret_output})


@pytest.fixture
def event_publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture
def run_repo() -> InMemoryPlanRunRepository:
    return InMemoryPlanRunRepository()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, backoff_initial=0.01, backoff_factor=1.0, backoff_max=0.01)


@pytest.fixture
def poll_policy() -> PollPolicy:
    return PollPolicy(interval=0.01, factor=1.5, max_interval=0.05, timeout=0.5)


@pytest.fixture
def orchestrator(
    plan: DeploymentPlan,
    cluster: InMemoryCluster,
    event_publisher: InMemoryEventPublisher,
    run_repo: InMemoryPlanRunRepository,
    retry_policy: RetryPolicy,
    poll_policy: PollPolicy,
) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(
        plan=plan,
        cluster=cluster,
        event_publisher=event_publisher,
        run_repo=run_repo,
        retry_policy=retry_policy,
        poll_policy=poll_policy,
    )


@pytest.fixture
def env_file(tmp_path: Path, env_data: dict[str, Any]) -> Path:
    path = tmp_path / "environment.yaml"
    path.write_text(yaml.safe_dump(env_data), encoding="utf-8")
    return path


@pytest.fixture
def settings(tmp_path: Path) -> OrchestratorSettings:
    return OrchestratorSettings(
        retry=RetrySettings(max_attempts=3, backoff_initial=0.01, backoff_factor=1.0, backoff_max=0.01),
        polling=PollingSettings(interval=0.01, factor=1.5, max_interval=0.05, stage_timeout=0.5),
        state=StateSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'state' / 'state.db'}"),
        observability=ObservabilitySettings(log_level="WARNING", json_logs=False),
    )
