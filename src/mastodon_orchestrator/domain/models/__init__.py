"""Domain models package."""

from mastodon_orchestrator.domain.models.base import (
    AggregateRoot,
    DomainEntity,
    DomainEvent,
    generate_id,
    utc_now,
    ValueObject,
)
from mastodon_orchestrator.domain.models.environment import (
    DatabaseConfig,
    EnvironmentConfig,
    ExposureConfig,
    FeatureFlags,
    ImageConfig,
    parse_environment,
    ReplicaConfig,
    SmtpConfig,
    StorageConfig,
    VolumeConfig,
)
from mastodon_orchestrator.domain.models.plan import (
    DeploymentPlan,
    PLAN_VALID_TRANSITIONS,
    PlanRun,
    PlanStatus,
)
from mastodon_orchestrator.domain.models.policy import PollPolicy, RetryPolicy
from mastodon_orchestrator.domain.models.resource import (
    manifest_matches,
    ResourceAction,
    ResourceChange,
    ResourceKind,
    ResourceRef,
    ResourceSpec,
)
from mastodon_orchestrator.domain.models.secrets import (
    parse_secret_output,
    REQUIRED_SECRET_KEYS,
    SecretMaterial,
)
from mastodon_orchestrator.domain.models.stage import (
    ExtractionStep,
    ProbeKind,
    ReadinessProbe,
    Stage,
    STAGE_VALID_TRANSITIONS,
    StageName,
    StageRun,
    StageStatus,
)


__all__ = [
    "AggregateRoot",
    "DatabaseConfig",
    "DeploymentPlan",
    "DomainEntity",
    "DomainEvent",
    "EnvironmentConfig",
    "ExposureConfig",
    "ExtractionStep",
    "FeatureFlags",
    "ImageConfig",
    "PLAN_VALID_TRANSITIONS",
    "PlanRun",
    "PlanStatus",
    "PollPolicy",
    "ProbeKind",
    "REQUIRED_SECRET_KEYS",
    "ReadinessProbe",
    "ReplicaConfig",
    "ResourceAction",
    "ResourceChange",
    "ResourceKind",
    "ResourceRef",
    "ResourceSpec",
    "RetryPolicy",
    "STAGE_VALID_TRANSITIONS",
    "SecretMaterial",
    "SmtpConfig",
    "Stage",
    "StageName",
    "StageRun",
    "StageStatus",
    "StorageConfig",
    "ValueObject",
    "VolumeConfig",
    "generate_id",
    "manifest_matches",
    "parse_environment",
    "parse_secret_output",
    "utc_now",
]
