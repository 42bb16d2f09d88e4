"""Unit tests for resource specifications and desired-state comparison."""

from __future__ import annotations

import pytest

from mastodon_orchestrator.domain.models.resource import (
    decode_secret_data,
    encode_secret_data,
    manifest_matches,
    MANAGED_BY,
    ResourceAction,
    ResourceChange,
    ResourceKind,
    ResourceRef,
    ResourceSpec,
)
from mastodon_orchestrator.domain.models.secrets import SecretMaterial


class TestResourceSpecManifest:
    def test_namespaced_manifest(self) -> None:
        spec = ResourceSpec(
            kind=ResourceKind.SERVICE,
            name="web",
            labels={"app": "web"},
            body={"spec": {"ports": [{"port": 3000}]}},
        )
        manifest = spec.manifest("mastodon")
        assert manifest["apiVersion"] == "v1"
        assert manifest["kind"] == "Service"
        assert manifest["metadata"]["namespace"] == "mastodon"
        assert manifest["metadata"]["labels"] == {
            "app.kubernetes.io/managed-by": MANAGED_BY,
            "app": "web",
        }
        assert manifest["spec"] == {"ports": [{"port": 3000}]}

    def test_cluster_scoped_manifest_has_no_namespace(self) -> None:
        manifest = ResourceSpec(kind=ResourceKind.PERSISTENT_VOLUME, name="pv").manifest("mastodon")
        assert "namespace" not in manifest["metadata"]

    def test_manifest_does_not_share_body(self) -> None:
        spec = ResourceSpec(kind=ResourceKind.CONFIG_MAP, name="c", body={"data": {"A": "1"}})
        spec.manifest("ns")["data"]["A"] = "2"
        assert spec.body["data"]["A"] == "1"

    def test_secret_inputs_merged(self) -> None:
        spec = ResourceSpec(
            kind=ResourceKind.SECRET,
            name="env",
            body={"data": encode_secret_data({"DB_PASS": "pw"})},
            secret_inputs=["OTP_SECRET"],
        )
        material = SecretMaterial.from_plain({"OTP_SECRET": "otp", "OTHER": "x"})
        data = decode_secret_data(spec.manifest("ns", material)["data"])
        assert data == {"DB_PASS": "pw", "OTP_SECRET": "otp"}

    def test_secret_inputs_require_material(self) -> None:
        spec = ResourceSpec(kind=ResourceKind.SECRET, name="env", secret_inputs=["OTP_SECRET"])
        with pytest.raises(ValueError):
            spec.manifest("ns")


class TestManifestMatches:
    def test_extra_live_fields_ignored(self) -> None:
        desired = {"spec": {"replicas": 2}}
        live = {"spec": {"replicas": 2, "revisionHistoryLimit": 10}, "status": {"ready": 2}}
        assert manifest_matches(desired, live)

    def test_changed_value(self) -> None:
        assert not manifest_matches({"spec": {"replicas": 2}}, {"spec": {"replicas": 3}})

    def test_missing_field(self) -> None:
        assert not manifest_matches({"data": {"A": "1"}}, {"metadata": {}})

    def test_list_length_must_match(self) -> None:
        desired = {"ports": [{"port": 80}]}
        live = {"ports": [{"port": 80}, {"port": 443}]}
        assert not manifest_matches(desired, live)

    def test_list_elements_compared_as_subsets(self) -> None:
        desired = {"ports": [{"port": 80}]}
        live = {"ports": [{"port": 80, "protocol": "TCP"}]}
        assert manifest_matches(desired, live)


class TestResourceRef:
    def test_str(self) -> None:
        assert str(ResourceRef(kind=ResourceKind.JOB, name="migrate")) == "Job/migrate"

    def test_namespaced(self) -> None:
        assert ResourceRef(kind=ResourceKind.SECRET, name="s").namespaced
        assert not ResourceRef(kind=ResourceKind.NAMESPACE, name="n").namespaced

    def test_change_mutated(self) -> None:
        ref = ResourceRef(kind=ResourceKind.SECRET, name="s")
        assert ResourceChange(ref=ref, action=ResourceAction.CREATED).mutated
        assert not ResourceChange(ref=ref, action=ResourceAction.UNCHANGED).mutated
