"""Unit tests for the simulated cluster."""

from __future__ import annotations

from typing import Any

import pytest

from mastodon_orchestrator.domain.errors import ClusterAPIError
from mastodon_orchestrator.domain.models.resource import ResourceKind, ResourceRef
from mastodon_orchestrator.infrastructure.cluster.in_memory import InMemoryCluster


NS = "mastodon"


def _manifest(kind: str, name: str, **body: Any) -> dict[str, Any]:
    return {"apiVersion": "v1", "kind": kind, "metadata": {"name": name}, **body}


async def _with_namespace() -> InMemoryCluster:
    cluster = InMemoryCluster()
    await cluster.create(_manifest("Namespace", NS), NS)
    return cluster


class TestInMemoryCluster:
    @pytest.mark.asyncio
    async def test_create_and_get(self) -> None:
        cluster = await _with_namespace()
        await cluster.create(_manifest("ConfigMap", "env", data={"A": "1"}), NS)

        live = await cluster.get(ResourceRef(kind=ResourceKind.CONFIG_MAP, name="env"), NS)

        assert live is not None
        assert live["data"] == {"A": "1"}
        assert live["metadata"]["namespace"] == NS
        assert "uid" in live["metadata"]

    @pytest.mark.asyncio
    async def test_create_twice_conflicts(self) -> None:
        cluster = await _with_namespace()
        await cluster.create(_manifest("ConfigMap", "env"), NS)
        with pytest.raises(ClusterAPIError) as exc_info:
            await cluster.create(_manifest("ConfigMap", "env"), NS)
        assert exc_info.value.status == 409

    @pytest.mark.asyncio
    async def test_missing_namespace(self) -> None:
        cluster = InMemoryCluster()
        with pytest.raises(ClusterAPIError) as exc_info:
            await cluster.create(_manifest("ConfigMap", "env"), NS)
        assert exc_info.value.not_found

    @pytest.mark.asyncio
    async def test_transient_rejections_run_out(self) -> None:
        cluster = await _with_namespace()
        cluster.rejections["env"] = 2
        for _ in range(2):
            with pytest.raises(ClusterAPIError) as exc_info:
                await cluster.create(_manifest("ConfigMap", "env"), NS)
            assert exc_info.value.transient

        await cluster.create(_manifest("ConfigMap", "env"), NS)
        assert cluster.exists(ResourceRef(kind=ResourceKind.CONFIG_MAP, name="env"), NS)

    @pytest.mark.asyncio
    async def test_update_bumps_resource_version(self) -> None:
        cluster = await _with_namespace()
        await cluster.create(_manifest("ConfigMap", "env", data={"A": "1"}), NS)
        updated = await cluster.update(_manifest("ConfigMap", "env", data={"A": "2"}), NS)

        assert updated["data"] == {"A": "2"}
        assert updated["metadata"]["resourceVersion"] == "2"
        assert cluster.mutations[-1] == ("update", "ConfigMap/env")

    @pytest.mark.asyncio
    async def test_empty_storage_class_dropped_from_volume(self) -> None:
        cluster = await _with_namespace()
        volume = _manifest("PersistentVolume", "pv", spec={"storageClassName": "", "capacity": {"storage": "1Gi"}})
        claim = _manifest("PersistentVolumeClaim", "pvc", spec={"storageClassName": ""})
        await cluster.create(volume, NS)
        await cluster.create(claim, NS)
        await cluster.update(volume, NS)

        live_pv = await cluster.get(ResourceRef(kind=ResourceKind.PERSISTENT_VOLUME, name="pv"), NS)
        live_pvc = await cluster.get(ResourceRef(kind=ResourceKind.PERSISTENT_VOLUME_CLAIM, name="pvc"), NS)

        assert live_pv is not None and live_pvc is not None
        assert live_pv["spec"] == {"capacity": {"storage": "1Gi"}}
        assert live_pvc["spec"]["storageClassName"] == ""

    @pytest.mark.asyncio
    async def test_namespace_delete_cascades(self) -> None:
        cluster = await _with_namespace()
        await cluster.create(_manifest("ConfigMap", "env"), NS)
        await cluster.create(_manifest("PersistentVolume", "pv"), NS)

        assert await cluster.delete(ResourceRef(kind=ResourceKind.NAMESPACE, name=NS), NS)

        assert cluster.refs() == [ResourceRef(kind=ResourceKind.PERSISTENT_VOLUME, name="pv")]
        assert not await cluster.delete(ResourceRef(kind=ResourceKind.NAMESPACE, name=NS), NS)

    @pytest.mark.asyncio
    async def test_claim_status(self) -> None:
        cluster = await _with_namespace()
        ref = ResourceRef(kind=ResourceKind.PERSISTENT_VOLUME_CLAIM, name="data")
        await cluster.create(_manifest("PersistentVolumeClaim", "data"), NS)
        live = await cluster.get(ref, NS)
        assert live is not None and live["status"]["phase"] == "Bound"

        cluster.failures.add("data")
        live = await cluster.get(ref, NS)
        assert live is not None and live["status"]["phase"] == "Lost"

    @pytest.mark.asyncio
    async def test_job_status_and_logs(self) -> None:
        cluster = await _with_namespace()
        cluster.job_logs["gen"] = ["A=1", "B=2"]
        cluster.never_ready.add("gen")
        await cluster.create(_manifest("Job", "gen"), NS)

        live = await cluster.get(ResourceRef(kind=ResourceKind.JOB, name="gen"), NS)
        assert live is not None and live["status"] == {"active": 1}

        cluster.never_ready.clear()
        live = await cluster.get(ResourceRef(kind=ResourceKind.JOB, name="gen"), NS)
        assert live is not None and live["status"]["succeeded"] == 1
        assert [line async for line in cluster.stream_logs("gen", NS)] == ["A=1", "B=2"]

    @pytest.mark.asyncio
    async def test_logs_of_missing_job(self) -> None:
        cluster = await _with_namespace()
        with pytest.raises(ClusterAPIError):
            [line async for line in cluster.stream_logs("gen", NS)]

    @pytest.mark.asyncio
    async def test_port_open_follows_selector(self) -> None:
        cluster = await _with_namespace()
        labels = {"app.kubernetes.io/name": "redis"}
        await cluster.create(
            _manifest("Service", "redis", spec={"selector": labels, "ports": [{"port": 6379}]}), NS
        )
        assert not await cluster.port_open("redis", 6379, NS)

        await cluster.create(
            _manifest(
                "Deployment",
                "redis",
                spec={"replicas": 1, "template": {"metadata": {"labels": labels}}},
            ),
            NS,
        )
        assert await cluster.port_open("redis", 6379, NS)
        assert not await cluster.port_open("redis", 6380, NS)

        cluster.never_ready.add("redis")
        assert not await cluster.port_open("redis", 6379, NS)

    @pytest.mark.asyncio
    async def test_deployment_readiness_delay(self) -> None:
        cluster = await _with_namespace()
        cluster.ready_delays["web"] = 60
        await cluster.create(_manifest("Deployment", "web", spec={"replicas": 3}), NS)

        live = await cluster.get(ResourceRef(kind=ResourceKind.DEPLOYMENT, name="web"), NS)

        assert live is not None
        assert live["status"]["replicas"] == 3
        assert live["status"]["availableReplicas"] == 0
