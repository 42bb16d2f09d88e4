"""Builds the Mastodon deployment plan from an environment configuration."""

from __future__ import annotations

import re
from typing import Any

import structlog

from mastodon_orchestrator.domain.models.environment import EnvironmentConfig
from mastodon_orchestrator.domain.models.plan import DeploymentPlan
from mastodon_orchestrator.domain.models.resource import (
    encode_secret_data,
    ResourceKind,
    ResourceRef,
    ResourceSpec,
)
from mastodon_orchestrator.domain.models.secrets import REQUIRED_SECRET_KEYS
from mastodon_orchestrator.domain.models.stage import (
    ExtractionStep,
    ProbeKind,
    ReadinessProbe,
    Stage,
    StageName,
)


logger = structlog.get_logger(__name__)

POSTGRES_PORT = 5432
REDIS_PORT = 6379
WEB_PORT = 3000
STREAMING_PORT = 4000

GENERATED_SECRET = "mastodon-generated-secrets"
SECRET_GENERATION_JOB = "mastodon-secret-generation"
ENV_CONFIG_MAP = "mastodon-env"
ENV_SECRET = "mastodon-secrets"
POSTGRES_SECRET = "postgres-credentials"
SYSTEM_CLAIM = "mastodon-system"

# Printed by the secret-generation job, one KEY=value per line.
SECRET_GENERATION_SCRIPT = """\
set -e
echo "SECRET_KEY_BASE=$(bundle exec rails secret)"
echo "OTP_SECRET=$(bundle exec rails secret)"
bundle exec rails mastodon:webpush:generate_vapid_key
bundle exec rails db:encryption:init
"""


def _ref(kind: ResourceKind, name: str) -> ResourceRef:
    return ResourceRef(kind=kind, name=name)


def _flag(value: bool) -> str:
    return "true" if value else "false"


class MastodonPlanBuilder:
    """Turns an EnvironmentConfig into the seven-stage rollout plan.

    Stage order: storage, core-services, secret-generation,
    config-materialization, application-services, migration, exposure.
    """

    def __init__(self, env: EnvironmentConfig) -> None:
        self._env = env

    def build(self) -> DeploymentPlan:
        plan = DeploymentPlan(
            environment=self._env.name,
            namespace=self._env.namespace,
            stages=[
                self._storage_stage(),
                self._core_services_stage(),
                self._secret_generation_stage(),
                self._config_stage(),
                self._application_stage(),
                self._migration_stage(),
                self._exposure_stage(),
            ],
        )
        plan.validate()

        logger.info(
            "plan_built",
            environment=plan.environment,
            namespace=plan.namespace,
            stages=plan.stage_names,
            resource_count=len(plan.all_resources()),
        )
        return plan

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _labels(self, stage: StageName, component: str) -> dict[str, str]:
        return {
            "app.kubernetes.io/name": component,
            "app.kubernetes.io/instance": self._env.name,
            "app.kubernetes.io/part-of": "mastodon",
            "mastodon-orchestrator/stage": stage.value,
        }

    def _selector(self, component: str) -> dict[str, str]:
        return {
            "app.kubernetes.io/name": component,
            "app.kubernetes.io/instance": self._env.name,
        }

    def _pv_name(self, volume: str) -> str:
        return f"{self._env.namespace}-{volume}"

    def _env_from(self) -> list[dict[str, Any]]:
        return [
            {"configMapRef": {"name": ENV_CONFIG_MAP}},
            {"secretRef": {"name": ENV_SECRET}},
        ]

    def _deployment(
        self,
        stage: StageName,
        name: str,
        container: dict[str, Any],
        replicas: int = 1,
        volumes: list[dict[str, Any]] | None = None,
        recreate: bool = False,
        depends_on: list[ResourceRef] | None = None,
    ) -> ResourceSpec:
        pod_spec: dict[str, Any] = {"containers": [container]}
        if volumes:
            pod_spec["volumes"] = volumes
        spec: dict[str, Any] = {
            "replicas": replicas,
            "selector": {"matchLabels": self._selector(name)},
            "template": {
                "metadata": {"labels": self._selector(name)},
                "spec": pod_spec,
            },
        }
        if recreate:
            spec["strategy"] = {"type": "Recreate"}
        return ResourceSpec(
            kind=ResourceKind.DEPLOYMENT,
            name=name,
            labels=self._labels(stage, name),
            body={"spec": spec},
            depends_on=depends_on or [],
        )

    def _service(self, stage: StageName, name: str, port: int) -> ResourceSpec:
        return ResourceSpec(
            kind=ResourceKind.SERVICE,
            name=name,
            labels=self._labels(stage, name),
            body={
                "spec": {
                    "selector": self._selector(name),
                    "ports": [{"name": name, "port": port, "targetPort": port}],
                },
            },
        )

    def _job(
        self,
        stage: StageName,
        name: str,
        container: dict[str, Any],
        backoff_limit: int,
        depends_on: list[ResourceRef] | None = None,
    ) -> ResourceSpec:
        return ResourceSpec(
            kind=ResourceKind.JOB,
            name=name,
            labels=self._labels(stage, name),
            body={
                "spec": {
                    "backoffLimit": backoff_limit,
                    "template": {
                        "metadata": {"labels": self._selector(name)},
                        "spec": {"restartPolicy": "Never", "containers": [container]},
                    },
                },
            },
            depends_on=depends_on or [],
        )

    @staticmethod
    def _claim_volume(claim: str) -> dict[str, Any]:
        return {"name": claim, "persistentVolumeClaim": {"claimName": claim}}

    @staticmethod
    def _tcp_probe(port: int) -> dict[str, Any]:
        return {"tcpSocket": {"port": port}, "periodSeconds": 5}

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _storage_stage(self) -> Stage:
        storage = self._env.storage
        stage = StageName.STORAGE
        resources = [
            ResourceSpec(
                kind=ResourceKind.NAMESPACE,
                name=self._env.namespace,
                labels={"app.kubernetes.io/part-of": "mastodon"},
            ),
        ]
        claims = {
            "postgres-data": ("postgres", storage.postgres, "ReadWriteOnce"),
            "redis-data": ("redis", storage.redis, "ReadWriteOnce"),
            SYSTEM_CLAIM: ("system", storage.system, "ReadWriteMany"),
        }
        for claim, (volume, config, access_mode) in claims.items():
            pv_name = self._pv_name(volume)
            resources.append(ResourceSpec(
                kind=ResourceKind.PERSISTENT_VOLUME,
                name=pv_name,
                labels=self._labels(stage, volume),
                body={
                    "spec": {
                        "capacity": {"storage": config.size},
                        "accessModes": [access_mode],
                        "persistentVolumeReclaimPolicy": "Retain",
                        "nfs": {"server": storage.nfs_server, "path": config.path},
                        "claimRef": {"namespace": self._env.namespace, "name": claim},
                    },
                },
            ))
            resources.append(ResourceSpec(
                kind=ResourceKind.PERSISTENT_VOLUME_CLAIM,
                name=claim,
                labels=self._labels(stage, volume),
                body={
                    "spec": {
                        "accessModes": [access_mode],
                        "storageClassName": "",
                        "volumeName": pv_name,
                        "resources": {"requests": {"storage": config.size}},
                    },
                },
                depends_on=[
                    _ref(ResourceKind.NAMESPACE, self._env.namespace),
                    _ref(ResourceKind.PERSISTENT_VOLUME, pv_name),
                ],
            ))

        return Stage(
            name=stage.value,
            description="NFS-backed volumes and claims",
            resources=resources,
            readiness=[
                ReadinessProbe(kind=ProbeKind.CLAIM_BOUND, target=claim) for claim in claims
            ],
        )

    def _core_services_stage(self) -> Stage:
        images = self._env.images
        database = self._env.database
        stage = StageName.CORE_SERVICES

        credentials = ResourceSpec(
            kind=ResourceKind.SECRET,
            name=POSTGRES_SECRET,
            labels=self._labels(stage, "postgres"),
            body={
                "type": "Opaque",
                "data": encode_secret_data({
                    "POSTGRES_DB": database.name,
                    "POSTGRES_USER": database.user,
                    "POSTGRES_PASSWORD": database.password.get_secret_value(),
                }),
            },
        )
        postgres = self._deployment(
            stage,
            "postgres",
            {
                "name": "postgres",
                "image": images.postgres,
                "envFrom": [{"secretRef": {"name": POSTGRES_SECRET}}],
                "env": [{"name": "PGDATA", "value": "/var/lib/postgresql/data/pgdata"}],
                "ports": [{"containerPort": POSTGRES_PORT}],
                "readinessProbe": self._tcp_probe(POSTGRES_PORT),
                "volumeMounts": [
                    {"name": "postgres-data", "mountPath": "/var/lib/postgresql/data"},
                ],
            },
            volumes=[self._claim_volume("postgres-data")],
            recreate=True,
            depends_on=[
                _ref(ResourceKind.SECRET, POSTGRES_SECRET),
                _ref(ResourceKind.PERSISTENT_VOLUME_CLAIM, "postgres-data"),
            ],
        )
        redis = self._deployment(
            stage,
            "redis",
            {
                "name": "redis",
                "image": images.redis,
                "args": ["redis-server", "--appendonly", "yes"],
                "ports": [{"containerPort": REDIS_PORT}],
                "readinessProbe": self._tcp_probe(REDIS_PORT),
                "volumeMounts": [{"name": "redis-data", "mountPath": "/data"}],
            },
            volumes=[self._claim_volume("redis-data")],
            recreate=True,
            depends_on=[_ref(ResourceKind.PERSISTENT_VOLUME_CLAIM, "redis-data")],
        )

        return Stage(
            name=stage.value,
            description="PostgreSQL and Redis",
            depends_on=[StageName.STORAGE.value],
            resources=[
                credentials,
                postgres,
                self._service(stage, "postgres", POSTGRES_PORT),
                redis,
                self._service(stage, "redis", REDIS_PORT),
            ],
            readiness=[
                ReadinessProbe(kind=ProbeKind.PORT_OPEN, target="postgres", port=POSTGRES_PORT),
                ReadinessProbe(kind=ProbeKind.PORT_OPEN, target="redis", port=REDIS_PORT),
            ],
        )

    def _secret_generation_stage(self) -> Stage:
        stage = StageName.SECRET_GENERATION
        job = self._job(
            stage,
            SECRET_GENERATION_JOB,
            {
                "name": "generate",
                "image": self._env.images.mastodon,
                "command": ["bash", "-c", SECRET_GENERATION_SCRIPT],
                "env": [
                    {"name": "RAILS_ENV", "value": "production"},
                    {"name": "SECRET_KEY_BASE_DUMMY", "value": "1"},
                    {"name": "OTP_SECRET", "value": "precompile_placeholder"},
                ],
            },
            backoff_limit=1,
        )
        return Stage(
            name=stage.value,
            description="Generate application keys",
            depends_on=[StageName.CORE_SERVICES.value],
            resources=[job],
            readiness=[ReadinessProbe(kind=ProbeKind.JOB_SUCCEEDED, target=SECRET_GENERATION_JOB)],
            extraction=ExtractionStep(
                job_name=SECRET_GENERATION_JOB,
                required_keys=list(REQUIRED_SECRET_KEYS),
                target_secret=GENERATED_SECRET,
            ),
        )

    def _config_stage(self) -> Stage:
        env = self._env
        stage = StageName.CONFIG_MATERIALIZATION
        settings = {
            "LOCAL_DOMAIN": env.domain,
            "RAILS_ENV": "production",
            "NODE_ENV": "production",
            "RAILS_SERVE_STATIC_FILES": "true",
            "RAILS_LOG_TO_STDOUT": "enabled",
            "LOCAL_HTTPS": _flag(env.features.force_ssl),
            "SINGLE_USER_MODE": _flag(env.features.single_user_mode),
            "AUTHORIZED_FETCH": _flag(env.features.authorized_fetch),
            "LIMITED_FEDERATION_MODE": _flag(env.features.limited_federation),
            "DB_HOST": "postgres",
            "DB_PORT": str(POSTGRES_PORT),
            "DB_NAME": env.database.name,
            "DB_USER": env.database.user,
            "REDIS_HOST": "redis",
            "REDIS_PORT": str(REDIS_PORT),
            "S3_ENABLED": "false",
        }
        secret_values = {"DB_PASS": env.database.password.get_secret_value()}
        if env.smtp is not None:
            settings.update({
                "SMTP_SERVER": env.smtp.server,
                "SMTP_PORT": str(env.smtp.port),
                "SMTP_LOGIN": env.smtp.login,
                "SMTP_FROM_ADDRESS": env.smtp.from_address,
            })
            secret_values["SMTP_PASSWORD"] = env.smtp.password.get_secret_value()

        return Stage(
            name=stage.value,
            description="Application environment",
            depends_on=[StageName.SECRET_GENERATION.value],
            resources=[
                ResourceSpec(
                    kind=ResourceKind.CONFIG_MAP,
                    name=ENV_CONFIG_MAP,
                    labels=self._labels(stage, "mastodon"),
                    body={"data": settings},
                ),
                ResourceSpec(
                    kind=ResourceKind.SECRET,
                    name=ENV_SECRET,
                    labels=self._labels(stage, "mastodon"),
                    body={"type": "Opaque", "data": encode_secret_data(secret_values)},
                    depends_on=[_ref(ResourceKind.SECRET, GENERATED_SECRET)],
                    secret_inputs=list(REQUIRED_SECRET_KEYS),
                ),
            ],
        )

    def _application_stage(self) -> Stage:
        env = self._env
        stage = StageName.APPLICATION_SERVICES
        config_refs = [
            _ref(ResourceKind.CONFIG_MAP, ENV_CONFIG_MAP),
            _ref(ResourceKind.SECRET, ENV_SECRET),
        ]
        system_mount = {"name": SYSTEM_CLAIM, "mountPath": "/mastodon/public/system"}
        with_system = [*config_refs, _ref(ResourceKind.PERSISTENT_VOLUME_CLAIM, SYSTEM_CLAIM)]

        web = self._deployment(
            stage,
            "web",
            {
                "name": "web",
                "image": env.images.mastodon,
                "command": ["bundle", "exec", "puma", "-C", "config/puma.rb"],
                "envFrom": self._env_from(),
                "ports": [{"containerPort": WEB_PORT}],
                "readinessProbe": {
                    "httpGet": {"path": "/health", "port": WEB_PORT},
                    "periodSeconds": 10,
                },
                "volumeMounts": [system_mount],
            },
            replicas=env.replicas.web,
            volumes=[self._claim_volume(SYSTEM_CLAIM)],
            depends_on=with_system,
        )
        streaming = self._deployment(
            stage,
            "streaming",
            {
                "name": "streaming",
                "image": env.images.streaming,
                "envFrom": self._env_from(),
                "env": [{"name": "PORT", "value": str(STREAMING_PORT)}],
                "ports": [{"containerPort": STREAMING_PORT}],
                "readinessProbe": {
                    "httpGet": {"path": "/api/v1/streaming/health", "port": STREAMING_PORT},
                    "periodSeconds": 10,
                },
            },
            replicas=env.replicas.streaming,
            depends_on=config_refs,
        )
        sidekiq = self._deployment(
            stage,
            "sidekiq",
            {
                "name": "sidekiq",
                "image": env.images.mastodon,
                "command": ["bundle", "exec", "sidekiq"],
                "envFrom": self._env_from(),
                "volumeMounts": [system_mount],
            },
            replicas=env.replicas.sidekiq,
            volumes=[self._claim_volume(SYSTEM_CLAIM)],
            depends_on=with_system,
        )

        return Stage(
            name=stage.value,
            description="Web, streaming and Sidekiq",
            depends_on=[StageName.CONFIG_MATERIALIZATION.value],
            resources=[
                web,
                self._service(stage, "web", WEB_PORT),
                streaming,
                self._service(stage, "streaming", STREAMING_PORT),
                sidekiq,
            ],
            readiness=[
                ReadinessProbe(kind=ProbeKind.ROLLOUT_AVAILABLE, target=name)
                for name in ("web", "streaming", "sidekiq")
            ],
        )

    def _migration_stage(self) -> Stage:
        stage = StageName.MIGRATION
        job_name = migration_job_name(self._env.images.mastodon_tag)
        job = self._job(
            stage,
            job_name,
            {
                "name": "migrate",
                "image": self._env.images.mastodon,
                "command": ["bundle", "exec", "rails", "db:migrate"],
                "envFrom": self._env_from(),
            },
            backoff_limit=3,
            depends_on=[
                _ref(ResourceKind.CONFIG_MAP, ENV_CONFIG_MAP),
                _ref(ResourceKind.SECRET, ENV_SECRET),
            ],
        )
        return Stage(
            name=stage.value,
            description="Database schema migration",
            depends_on=[StageName.APPLICATION_SERVICES.value],
            resources=[job],
            readiness=[ReadinessProbe(kind=ProbeKind.JOB_SUCCEEDED, target=job_name)],
        )

    def _exposure_stage(self) -> Stage:
        env = self._env
        stage = StageName.EXPOSURE

        def backend(service: str, port: int, path: str) -> dict[str, Any]:
            return {
                "path": path,
                "pathType": "Prefix",
                "backend": {"service": {"name": service, "port": {"number": port}}},
            }

        spec: dict[str, Any] = {
            "ingressClassName": env.exposure.ingress_class,
            "rules": [{
                "host": env.domain,
                "http": {
                    "paths": [
                        backend("streaming", STREAMING_PORT, "/api/v1/streaming"),
                        backend("web", WEB_PORT, "/"),
                    ],
                },
            }],
        }
        if env.exposure.tls_secret:
            spec["tls"] = [{"hosts": [env.domain], "secretName": env.exposure.tls_secret}]

        annotations = {"nginx.ingress.kubernetes.io/proxy-body-size": "40m"}
        annotations.update(env.exposure.annotations)
        if env.features.force_ssl:
            annotations.setdefault("nginx.ingress.kubernetes.io/ssl-redirect", "true")

        return Stage(
            name=stage.value,
            description="Ingress for web and streaming",
            depends_on=[StageName.MIGRATION.value],
            resources=[
                ResourceSpec(
                    kind=ResourceKind.INGRESS,
                    name="mastodon",
                    labels=self._labels(stage, "mastodon"),
                    annotations=annotations,
                    body={"spec": spec},
                    depends_on=[
                        _ref(ResourceKind.SERVICE, "web"),
                        _ref(ResourceKind.SERVICE, "streaming"),
                    ],
                ),
            ],
            rollback_allowed=False,
        )


def migration_job_name(tag: str) -> str:
    """Migration job name; one job per image tag so upgrades migrate again."""
    slug = re.sub(r"[^a-z0-9]+", "-", tag.lower()).strip("-") or "latest"
    return f"mastodon-db-migrate-{slug}"[:63].rstrip("-")


def build_plan(env: EnvironmentConfig) -> DeploymentPlan:
    """Plan(): the ordered, validated stage list for an environment."""
    return MastodonPlanBuilder(env).build()
