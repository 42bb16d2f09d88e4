"""Unit tests for the Mastodon plan builder."""

from __future__ import annotations

from typing import Any

from mastodon_orchestrator.domain.models.environment import parse_environment
from mastodon_orchestrator.domain.models.plan import DeploymentPlan
from mastodon_orchestrator.domain.models.resource import (
    decode_secret_data,
    ResourceKind,
    ResourceRef,
)
from mastodon_orchestrator.domain.models.secrets import REQUIRED_SECRET_KEYS
from mastodon_orchestrator.domain.models.stage import ProbeKind, StageName
from mastodon_orchestrator.domain.services.planner import (
    build_plan,
    ENV_SECRET,
    GENERATED_SECRET,
    migration_job_name,
    SECRET_GENERATION_JOB,
)


def _names(plan: DeploymentPlan) -> list[str]:
    return [stage.name for stage in plan.topological_order()]


class TestPlanOrder:
    def test_seven_stages_in_order(self, plan: DeploymentPlan) -> None:
        assert _names(plan) == [name.value for name in StageName]

    def test_ordering_constraints(self, plan: DeploymentPlan) -> None:
        order = _names(plan)
        chain = [
            "secret-generation",
            "config-materialization",
            "application-services",
            "migration",
            "exposure",
        ]
        assert [order.index(name) for name in chain] == sorted(order.index(name) for name in chain)

    def test_storage_precedes_claim_users(self, plan: DeploymentPlan) -> None:
        for stage in plan.stages:
            for spec in stage.resources:
                claims = [d for d in spec.depends_on if d.kind == ResourceKind.PERSISTENT_VOLUME_CLAIM]
                if claims and stage.name != "storage":
                    assert "storage" in plan.predecessors(stage.name)


class TestStageContents:
    def test_storage_volumes(self, plan: DeploymentPlan) -> None:
        storage = plan.get_stage("storage")
        assert storage is not None
        pv = storage.get_resource(ResourceRef(kind=ResourceKind.PERSISTENT_VOLUME, name="mastodon-postgres"))
        assert pv is not None
        assert pv.body["spec"]["nfs"] == {"server": "10.0.0.20", "path": "/exports/postgres"}
        assert pv.body["spec"]["persistentVolumeReclaimPolicy"] == "Retain"
        assert "storageClassName" not in pv.body["spec"]
        pvc = storage.get_resource(
            ResourceRef(kind=ResourceKind.PERSISTENT_VOLUME_CLAIM, name="postgres-data")
        )
        assert pvc is not None
        assert pvc.body["spec"]["storageClassName"] == ""
        assert {p.kind for p in storage.readiness} == {ProbeKind.CLAIM_BOUND}
        assert len(storage.readiness) == 3

    def test_core_services_probe_ports(self, plan: DeploymentPlan) -> None:
        core = plan.get_stage("core-services")
        assert core is not None
        assert {(p.target, p.port) for p in core.readiness} == {("postgres", 5432), ("redis", 6379)}

    def test_secret_generation_extracts_required_keys(self, plan: DeploymentPlan) -> None:
        stage = plan.get_stage("secret-generation")
        assert stage is not None and stage.extraction is not None
        assert stage.extraction.job_name == SECRET_GENERATION_JOB
        assert stage.extraction.target_secret == GENERATED_SECRET
        assert stage.extraction.required_keys == list(REQUIRED_SECRET_KEYS)

    def test_config_secret_injects_material(self, plan: DeploymentPlan) -> None:
        stage = plan.get_stage("config-materialization")
        assert stage is not None
        secret = stage.get_resource(ResourceRef(kind=ResourceKind.SECRET, name=ENV_SECRET))
        assert secret is not None
        assert secret.secret_inputs == list(REQUIRED_SECRET_KEYS)
        assert ResourceRef(kind=ResourceKind.SECRET, name=GENERATED_SECRET) in secret.depends_on
        assert decode_secret_data(secret.body["data"]) == {"DB_PASS": "db-password-123"}

    def test_smtp_password_goes_to_secret(self, env_data: dict[str, Any]) -> None:
        env_data["smtp"] = {
            "server": "smtp.example.org",
            "from_address": "noreply@example.org",
            "password": "smtp-pass",
        }
        stage = build_plan(parse_environment(env_data)).get_stage("config-materialization")
        assert stage is not None
        config_map = stage.get_resource(ResourceRef(kind=ResourceKind.CONFIG_MAP, name="mastodon-env"))
        secret = stage.get_resource(ResourceRef(kind=ResourceKind.SECRET, name=ENV_SECRET))
        assert config_map is not None and secret is not None
        assert config_map.body["data"]["SMTP_SERVER"] == "smtp.example.org"
        assert "SMTP_PASSWORD" not in config_map.body["data"]
        assert decode_secret_data(secret.body["data"])["SMTP_PASSWORD"] == "smtp-pass"

    def test_replicas_from_environment(self, plan: DeploymentPlan) -> None:
        stage = plan.get_stage("application-services")
        assert stage is not None
        web = stage.get_resource(ResourceRef(kind=ResourceKind.DEPLOYMENT, name="web"))
        assert web is not None
        assert web.body["spec"]["replicas"] == 2

    def test_migration_job_named_after_tag(self, plan: DeploymentPlan) -> None:
        stage = plan.get_stage("migration")
        assert stage is not None
        assert stage.resources[0].name == "mastodon-db-migrate-v4-3-0"

    def test_exposure_refuses_rollback(self, plan: DeploymentPlan) -> None:
        exposure = plan.get_stage("exposure")
        assert exposure is not None
        assert exposure.rollback_allowed is False
        ingress = exposure.resources[0]
        assert ingress.body["spec"]["tls"] == [
            {"hosts": ["social.example.org"], "secretName": "social-tls"},
        ]
        paths = ingress.body["spec"]["rules"][0]["http"]["paths"]
        assert [p["path"] for p in paths] == ["/api/v1/streaming", "/"]

    def test_namespace_override(self, env_data: dict[str, Any]) -> None:
        env_data["namespace"] = "social"
        plan = build_plan(parse_environment(env_data))
        assert plan.namespace == "social"
        storage = plan.get_stage("storage")
        assert storage is not None
        assert storage.resources[0].name == "social"


class TestMigrationJobName:
    def test_slug(self) -> None:
        assert migration_job_name("v4.3.0-rc.1") == "mastodon-db-migrate-v4-3-0-rc-1"

    def test_length_capped(self) -> None:
        assert len(migration_job_name("x" * 100)) <= 63
