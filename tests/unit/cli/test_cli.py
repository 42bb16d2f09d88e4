"""Unit tests for the command-line interface."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
import structlog
import yaml
from click.testing import CliRunner, Result

from mastodon_orchestrator.cli import (
    cli,
    CliState,
    EXIT_CONFIG_INVALID,
    EXIT_OK,
    EXIT_STAGE_FAILED,
    masked_manifest,
)
from mastodon_orchestrator.config import OrchestratorSettings
from mastodon_orchestrator.domain.models.resource import ResourceKind, ResourceRef
from mastodon_orchestrator.domain.services.planner import ENV_SECRET
from mastodon_orchestrator.infrastructure.cluster.in_memory import InMemoryCluster


INGRESS = ResourceRef(kind=ResourceKind.INGRESS, name="mastodon")
MIGRATION_JOB = ResourceRef(kind=ResourceKind.JOB, name="mastodon-db-migrate-v4-3-0")


@pytest.fixture(autouse=True)
def reset_logging() -> Iterator[None]:
    yield
    structlog.reset_defaults()


@pytest.fixture
def invoke(
    settings: OrchestratorSettings, cluster: InMemoryCluster, env_file: Path
):
    runner = CliRunner()

    def _invoke(*args: str, env: Path | None = env_file, input: str | None = None) -> Result:
        state = CliState(settings=settings, cluster_factory=lambda _: cluster)
        prefix = ["--env-file", str(env)] if env is not None else []
        return runner.invoke(cli, [*prefix, *args], obj=state, input=input)

    return _invoke


class TestPlanCommand:
    def test_lists_stages(self, invoke) -> None:
        result = invoke("plan")

        assert result.exit_code == EXIT_OK, result.output
        for stage in ("storage", "core-services", "secret-generation", "migration", "exposure"):
            assert stage in result.output
        assert "manual" in result.output

    def test_manifests_mask_secrets(self, invoke) -> None:
        result = invoke("plan", "--show-manifests")

        assert result.exit_code == EXIT_OK, result.output
        assert "kind: PersistentVolume" in result.output
        assert "server: 10.0.0.20" in result.output
        assert "db-password-123" not in result.output
        assert "ZGItcGFzc3dvcmQtMTIz" not in result.output

    def test_without_environment_file(self, invoke, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("ORCH_ENV_FILE", raising=False)

        result = invoke("plan", env=None)

        assert result.exit_code == EXIT_CONFIG_INVALID
        assert "No environment file" in result.output

    def test_invalid_environment(self, invoke, tmp_path: Path, env_data: dict[str, Any]) -> None:
        env_data["replica_count"] = 3
        path = tmp_path / "invalid.yaml"
        path.write_text(yaml.safe_dump(env_data), encoding="utf-8")

        result = invoke("plan", env=path)

        assert result.exit_code == EXIT_CONFIG_INVALID
        assert "replica_count" in result.output


class TestApplyCommand:
    def test_apply_all(self, invoke, cluster: InMemoryCluster) -> None:
        result = invoke("apply", "all")

        assert result.exit_code == EXIT_OK, result.output
        assert "Plan complete" in result.output
        assert cluster.exists(INGRESS, "mastodon")

    def test_failing_stage(self, invoke, cluster: InMemoryCluster) -> None:
        cluster.failures.add("web")

        result = invoke("apply", "all")

        assert result.exit_code == EXIT_STAGE_FAILED
        assert "Stage application-services failed: ProbeFailed" in result.output
        assert not cluster.exists(INGRESS, "mastodon")

    def test_single_stage_without_predecessors(self, invoke, cluster: InMemoryCluster) -> None:
        result = invoke("apply", "config-materialization")

        assert result.exit_code == EXIT_STAGE_FAILED
        assert "UnsatisfiedDependency" in result.output
        assert cluster.mutations == []

    def test_unknown_stage(self, invoke) -> None:
        result = invoke("apply", "frontend")

        assert result.exit_code == 2
        assert "Invalid value" in result.output

    def test_secret_values_never_printed(self, invoke, cluster: InMemoryCluster) -> None:
        result = invoke("apply", "all")

        assert result.exit_code == EXIT_OK, result.output
        assert "generated-otp_secret-value" not in result.output
        assert cluster.exists(ResourceRef(kind=ResourceKind.SECRET, name=ENV_SECRET), "mastodon")


class TestStatusAndHistory:
    def test_status_before_rollout(self, invoke) -> None:
        result = invoke("status")

        assert result.exit_code == EXIT_OK, result.output
        assert "missing" in result.output
        assert "No recorded runs" in result.output

    def test_status_after_rollout(self, invoke) -> None:
        invoke("apply", "all")

        result = invoke("status")

        assert result.exit_code == EXIT_OK, result.output
        assert "satisfied" in result.output
        assert "missing" not in result.output

    def test_history(self, invoke, cluster: InMemoryCluster) -> None:
        invoke("apply", "all")
        cluster.failures.add("mastodon-db-migrate-v4-3-0")
        cluster.clear_mutations()
        invoke("apply", "migration")

        result = invoke("history")

        assert result.exit_code == EXIT_OK, result.output
        assert "complete" in result.output
        assert "aborted" in result.output


class TestRollbackAndDestroy:
    def test_exposure_refused(self, invoke, cluster: InMemoryCluster) -> None:
        invoke("apply", "all")

        result = invoke("rollback", "exposure", "--yes")

        assert result.exit_code == EXIT_STAGE_FAILED
        assert "RollbackRefused" in result.output
        assert cluster.exists(INGRESS, "mastodon")

    def test_rollback_stage(self, invoke, cluster: InMemoryCluster) -> None:
        invoke("apply", "all")

        result = invoke("rollback", "migration", "--yes")

        assert result.exit_code == EXIT_OK, result.output
        assert "1 resource(s) deleted" in result.output
        assert not cluster.exists(MIGRATION_JOB, "mastodon")

    def test_rollback_needs_confirmation(self, invoke, cluster: InMemoryCluster) -> None:
        invoke("apply", "all")

        result = invoke("rollback", "migration", input="n\n")

        assert result.exit_code == EXIT_OK
        assert "Rollback cancelled" in result.output
        assert cluster.exists(MIGRATION_JOB, "mastodon")

    def test_destroy(self, invoke, cluster: InMemoryCluster) -> None:
        invoke("apply", "all")

        result = invoke("destroy", "--yes")

        assert result.exit_code == EXIT_OK, result.output
        assert cluster.object_count == 0


class TestMaskedManifest:
    def test_secret_values_replaced(self) -> None:
        manifest = {"kind": "Secret", "metadata": {"name": "x"}, "data": {"A": "c2VjcmV0"}}
        assert masked_manifest(manifest)["data"] == {"A": "***"}
        assert manifest["data"] == {"A": "c2VjcmV0"}

    def test_other_kinds_untouched(self) -> None:
        manifest = {"kind": "ConfigMap", "data": {"A": "1"}}
        assert masked_manifest(manifest) is manifest
