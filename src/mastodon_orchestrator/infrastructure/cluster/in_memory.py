"""Simulated cluster for development/testing."""

from __future__ import annotations

import copy
import time
from collections.abc import AsyncIterator, Callable
from typing import Any

import structlog

from mastodon_orchestrator.domain.errors import ClusterAPIError
from mastodon_orchestrator.domain.models.base import generate_id, utc_now
from mastodon_orchestrator.domain.models.resource import ResourceKind, ResourceRef
from mastodon_orchestrator.domain.ports.cluster import ClusterAPI


logger = structlog.get_logger(__name__)

_Key = tuple[str | None, ResourceKind, str]

# String fields the API server drops when they are empty.
OMITTED_WHEN_EMPTY: dict[ResourceKind, list[tuple[str, ...]]] = {
    ResourceKind.PERSISTENT_VOLUME: [("spec", "storageClassName")],
}


class InMemoryCluster(ClusterAPI):
    """In-memory cluster that synthesizes object status on read.

    Objects report ready ``ready_after`` seconds after they were created or
    last updated; ``ready_delays`` overrides that per object name. Names in
    ``never_ready`` stay pending forever and names in ``failures`` report a
    broken state (lost claim, failed job, stalled rollout). ``rejections``
    maps a name to the number of writes answered with a transient 503
    before the cluster accepts it; names in ``invalid`` are always
    rejected with 422. ``job_logs`` holds the output of each job.
    """

    def __init__(
        self,
        ready_after: float = 0.0,
        job_logs: dict[str, list[str]] | None = None,
    ) -> None:
        self.ready_after = ready_after
        self.ready_delays: dict[str, float] = {}
        self.never_ready: set[str] = set()
        self.failures: set[str] = set()
        self.rejections: dict[str, int] = {}
        self.invalid: set[str] = set()
        self.job_logs: dict[str, list[str]] = dict(job_logs or {})
        self.mutations: list[tuple[str, str]] = []
        self._objects: dict[_Key, dict[str, Any]] = {}
        self._changed_at: dict[_Key, float] = {}

    @staticmethod
    def _key(ref: ResourceRef, namespace: str) -> _Key:
        return (namespace if ref.namespaced else None, ref.kind, ref.name)

    @staticmethod
    def _ref_of(manifest: dict[str, Any]) -> ResourceRef:
        try:
            return ResourceRef(
                kind=ResourceKind(manifest["kind"]), name=manifest["metadata"]["name"]
            )
        except (KeyError, ValueError) as exc:
            raise ClusterAPIError(f"malformed manifest: {exc}", status=400) from exc

    @staticmethod
    def _drop_empty_fields(kind: ResourceKind, obj: dict[str, Any]) -> None:
        for path in OMITTED_WHEN_EMPTY.get(kind, []):
            parent: Any = obj
            for field in path[:-1]:
                parent = parent.get(field) if isinstance(parent, dict) else None
            if isinstance(parent, dict) and parent.get(path[-1]) == "":
                del parent[path[-1]]

    def _check_writable(self, verb: str, ref: ResourceRef, namespace: str) -> None:
        if ref.name in self.invalid:
            raise ClusterAPIError(f"{verb} {ref}: Invalid value", status=422)
        remaining = self.rejections.get(ref.name, 0)
        if remaining > 0:
            self.rejections[ref.name] = remaining - 1
            raise ClusterAPIError(
                f"{verb} {ref}: the server is currently unable to handle the request",
                status=503,
                transient=True,
            )
        if ref.namespaced and (None, ResourceKind.NAMESPACE, namespace) not in self._objects:
            raise ClusterAPIError(f'namespaces "{namespace}" not found', status=404)

    # ------------------------------------------------------------------
    # ClusterAPI
    # ------------------------------------------------------------------

    async def get(self, ref: ResourceRef, namespace: str) -> dict[str, Any] | None:
        key = self._key(ref, namespace)
        stored = self._objects.get(key)
        if stored is None:
            return None
        live = copy.deepcopy(stored)
        status = self._status(key, stored)
        if status is not None:
            live["status"] = status
        return live

    async def create(self, manifest: dict[str, Any], namespace: str) -> dict[str, Any]:
        ref = self._ref_of(manifest)
        self._check_writable("create", ref, namespace)
        key = self._key(ref, namespace)
        if key in self._objects:
            raise ClusterAPIError(f"{ref} already exists", status=409)

        stored = copy.deepcopy(manifest)
        stored.pop("status", None)
        self._drop_empty_fields(ref.kind, stored)
        metadata = stored.setdefault("metadata", {})
        metadata.update({
            "uid": generate_id(),
            "resourceVersion": "1",
            "creationTimestamp": utc_now().isoformat(),
        })
        if ref.namespaced:
            metadata["namespace"] = namespace
        else:
            metadata.pop("namespace", None)

        self._objects[key] = stored
        self._changed_at[key] = time.monotonic()
        self.mutations.append(("create", str(ref)))
        logger.debug("cluster_object_created", resource=str(ref), namespace=namespace)
        return copy.deepcopy(stored)

    async def update(self, manifest: dict[str, Any], namespace: str) -> dict[str, Any]:
        ref = self._ref_of(manifest)
        self._check_writable("update", ref, namespace)
        key = self._key(ref, namespace)
        current = self._objects.get(key)
        if current is None:
            raise ClusterAPIError(f"{ref} not found", status=404)

        metadata = current["metadata"]
        incoming = copy.deepcopy(manifest)
        incoming.pop("status", None)
        self._drop_empty_fields(ref.kind, incoming)
        new_metadata = incoming.pop("metadata", {})
        for field in ("labels", "annotations"):
            if field in new_metadata:
                metadata[field] = new_metadata[field]
        metadata["resourceVersion"] = str(int(metadata.get("resourceVersion", "1")) + 1)

        updated = {"metadata": metadata, **incoming}
        self._objects[key] = updated
        self._changed_at[key] = time.monotonic()
        self.mutations.append(("update", str(ref)))
        logger.debug("cluster_object_updated", resource=str(ref), namespace=namespace)
        return copy.deepcopy(updated)

    async def delete(self, ref: ResourceRef, namespace: str) -> bool:
        key = self._key(ref, namespace)
        if key not in self._objects:
            return False
        del self._objects[key]
        self._changed_at.pop(key, None)
        if ref.kind == ResourceKind.NAMESPACE:
            for owned in [k for k in self._objects if k[0] == ref.name]:
                del self._objects[owned]
                self._changed_at.pop(owned, None)
        self.mutations.append(("delete", str(ref)))
        logger.debug("cluster_object_deleted", resource=str(ref), namespace=namespace)
        return True

    async def stream_logs(self, job_name: str, namespace: str) -> AsyncIterator[str]:
        if (namespace, ResourceKind.JOB, job_name) not in self._objects:
            raise ClusterAPIError(f'jobs.batch "{job_name}" not found', status=404)
        for line in self.job_logs.get(job_name, []):
            yield line

    async def port_open(self, service: str, port: int, namespace: str) -> bool:
        svc = self._objects.get((namespace, ResourceKind.SERVICE, service))
        if svc is None:
            return False
        spec = svc.get("spec") or {}
        if port not in [p.get("port") for p in spec.get("ports") or []]:
            return False

        selector = spec.get("selector") or {}
        for key, obj in self._objects.items():
            if key[0] != namespace or key[1] != ResourceKind.DEPLOYMENT:
                continue
            template = (obj.get("spec") or {}).get("template") or {}
            labels = (template.get("metadata") or {}).get("labels") or {}
            if selector and selector.items() <= labels.items():
                status = self._status(key, obj) or {}
                if status.get("availableReplicas", 0) > 0:
                    return True
        return False

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def _is_ready(self, key: _Key) -> bool:
        name = key[2]
        if name in self.never_ready:
            return False
        delay = self.ready_delays.get(name, self.ready_after)
        return time.monotonic() - self._changed_at.get(key, 0.0) >= delay

    def _status(self, key: _Key, obj: dict[str, Any]) -> dict[str, Any] | None:
        kind, name = key[1], key[2]
        ready = self._is_ready(key)
        failed = name in self.failures

        if kind == ResourceKind.NAMESPACE:
            return {"phase": "Active"}
        if kind == ResourceKind.PERSISTENT_VOLUME:
            return {"phase": "Bound" if ready else "Available"}
        if kind == ResourceKind.PERSISTENT_VOLUME_CLAIM:
            if failed:
                return {"phase": "Lost"}
            return {"phase": "Bound" if ready else "Pending"}
        if kind == ResourceKind.JOB:
            if failed:
                return {
                    "failed": 1,
                    "conditions": [
                        {"type": "Failed", "status": "True", "reason": "BackoffLimitExceeded"},
                    ],
                }
            if ready:
                return {"succeeded": 1, "conditions": [{"type": "Complete", "status": "True"}]}
            return {"active": 1}
        if kind == ResourceKind.DEPLOYMENT:
            replicas = int((obj.get("spec") or {}).get("replicas", 1))
            if failed:
                return {
                    "replicas": replicas,
                    "updatedReplicas": replicas,
                    "availableReplicas": 0,
                    "conditions": [{
                        "type": "Progressing",
                        "status": "False",
                        "reason": "ProgressDeadlineExceeded",
                        "message": f'ReplicaSet "{name}" has timed out progressing.',
                    }],
                }
            available = replicas if ready else 0
            return {
                "replicas": replicas,
                "updatedReplicas": replicas,
                "readyReplicas": available,
                "availableReplicas": available,
            }
        return None

    def exists(self, ref: ResourceRef, namespace: str) -> bool:
        return self._key(ref, namespace) in self._objects

    def edit(
        self, ref: ResourceRef, namespace: str, change: Callable[[dict[str, Any]], None]
    ) -> None:
        """Modify a stored object out of band, as another operator would."""
        key = self._key(ref, namespace)
        if key not in self._objects:
            raise KeyError(str(ref))
        change(self._objects[key])

    @property
    def object_count(self) -> int:
        return len(self._objects)

    def refs(self, namespace: str | None = None) -> list[ResourceRef]:
        return [
            ResourceRef(kind=kind, name=name)
            for (ns, kind, name) in self._objects
            if namespace is None or ns in (None, namespace)
        ]

    def clear_mutations(self) -> None:
        self.mutations.clear()
