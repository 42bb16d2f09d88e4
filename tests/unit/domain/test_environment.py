"""Unit tests for environment configuration validation."""

from __future__ import annotations

from typing import Any

import pytest

from mastodon_orchestrator.domain.errors import ConfigValidationError, ErrorKind
from mastodon_orchestrator.domain.models.environment import parse_environment


class TestParseEnvironment:
    def test_defaults(self, env_data: dict[str, Any]) -> None:
        env = parse_environment(env_data)
        assert env.images.postgres == "postgres:16-alpine"
        assert env.database.name == "mastodon_production"
        assert env.features.force_ssl is True
        assert env.smtp is None
        assert env.images.mastodon_tag == "v4.3.0"

    def test_password_is_secret(self, env_data: dict[str, Any]) -> None:
        env = parse_environment(env_data)
        assert "db-password-123" not in repr(env)

    def test_unknown_top_level_field(self, env_data: dict[str, Any]) -> None:
        env_data["replica_count"] = 3
        with pytest.raises(ConfigValidationError) as exc_info:
            parse_environment(env_data)
        assert exc_info.value.kind == ErrorKind.CONFIG_VALIDATION
        assert any(e.startswith("replica_count") for e in exc_info.value.errors)

    def test_unknown_nested_field(self, env_data: dict[str, Any]) -> None:
        env_data["storage"]["postgres"]["mode"] = "rw"
        with pytest.raises(ConfigValidationError) as exc_info:
            parse_environment(env_data)
        assert any(e.startswith("storage.postgres.mode") for e in exc_info.value.errors)

    def test_relative_nfs_path(self, env_data: dict[str, Any]) -> None:
        env_data["storage"]["redis"]["path"] = "exports/redis"
        with pytest.raises(ConfigValidationError):
            parse_environment(env_data)

    @pytest.mark.parametrize("domain", ["localhost", "Social.Example.org", "bad_domain.org"])
    def test_invalid_domain(self, env_data: dict[str, Any], domain: str) -> None:
        env_data["domain"] = domain
        with pytest.raises(ConfigValidationError):
            parse_environment(env_data)

    def test_invalid_namespace(self, env_data: dict[str, Any]) -> None:
        env_data["namespace"] = "Mastodon_NS"
        with pytest.raises(ConfigValidationError):
            parse_environment(env_data)

    def test_zero_replicas_rejected(self, env_data: dict[str, Any]) -> None:
        env_data["replicas"]["web"] = 0
        with pytest.raises(ConfigValidationError):
            parse_environment(env_data)

    def test_missing_database_password(self, env_data: dict[str, Any]) -> None:
        del env_data["database"]
        with pytest.raises(ConfigValidationError) as exc_info:
            parse_environment(env_data)
        assert any(e.startswith("database") for e in exc_info.value.errors)

    def test_not_a_mapping(self) -> None:
        with pytest.raises(ConfigValidationError):
            parse_environment(["name", "x"])
