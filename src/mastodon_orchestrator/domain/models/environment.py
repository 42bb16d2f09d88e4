"""Per-environment rollout configuration.

Every model forbids unknown fields so a typo in the environment file
fails when the plan is built, never halfway through a rollout.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field, field_validator, SecretStr, ValidationError

from mastodon_orchestrator.domain.errors import ConfigValidationError


_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")
_DOMAIN = re.compile(r"^(?=.{1,253}$)([a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")


class StrictModel(BaseModel):
    model_config = {"extra": "forbid", "frozen": True}


class VolumeConfig(StrictModel):
    """One NFS export backing a PersistentVolume."""

    path: str
    size: str = "10Gi"

    @field_validator("path")
    @classmethod
    def _absolute(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("NFS path must be absolute")
        return value


class StorageConfig(StrictModel):
    nfs_server: str
    postgres: VolumeConfig
    redis: VolumeConfig
    system: VolumeConfig


class ImageConfig(StrictModel):
    mastodon: str = "ghcr.io/mastodon/mastodon:v4.3.0"
    streaming: str = "ghcr.io/mastodon/mastodon-streaming:v4.3.0"
    postgres: str = "postgres:16-alpine"
    redis: str = "redis:7-alpine"

    @property
    def mastodon_tag(self) -> str:
        _, _, tag = self.mastodon.rpartition(":")
        return tag if tag and "/" not in tag else "latest"


class ReplicaConfig(StrictModel):
    web: int = Field(default=1, ge=1)
    streaming: int = Field(default=1, ge=1)
    sidekiq: int = Field(default=1, ge=1)


class DatabaseConfig(StrictModel):
    name: str = "mastodon_production"
    user: str = "mastodon"
    password: SecretStr


class SmtpConfig(StrictModel):
    server: str
    port: int = 587
    login: str = ""
    password: SecretStr = SecretStr("")
    from_address: str


class FeatureFlags(StrictModel):
    force_ssl: bool = True
    single_user_mode: bool = False
    authorized_fetch: bool = False
    limited_federation: bool = False


class ExposureConfig(StrictModel):
    ingress_class: str = "nginx"
    tls_secret: str | None = None
    annotations: dict[str, str] = Field(default_factory=dict)


class EnvironmentConfig(StrictModel):
    """Everything that varies between two Mastodon rollouts."""

    name: str
    namespace: str = "mastodon"
    domain: str
    storage: StorageConfig
    images: ImageConfig = Field(default_factory=ImageConfig)
    replicas: ReplicaConfig = Field(default_factory=ReplicaConfig)
    database: DatabaseConfig
    smtp: SmtpConfig | None = None
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    exposure: ExposureConfig = Field(default_factory=ExposureConfig)

    @field_validator("name", "namespace")
    @classmethod
    def _dns_label(cls, value: str) -> str:
        if not _DNS_LABEL.match(value):
            raise ValueError("must be a lowercase DNS-1123 label")
        return value

    @field_validator("domain")
    @classmethod
    def _domain(cls, value: str) -> str:
        if not _DOMAIN.match(value):
            raise ValueError("must be a fully qualified lowercase domain name")
        return value


def parse_environment(data: Any) -> EnvironmentConfig:
    """Validate raw configuration data, raising ConfigValidationError."""
    if not isinstance(data, dict):
        raise ConfigValidationError("Environment configuration must be a mapping")
    try:
        return EnvironmentConfig.model_validate(data)
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ConfigValidationError(
            f"Invalid environment configuration ({len(errors)} error(s))", errors
        ) from exc
