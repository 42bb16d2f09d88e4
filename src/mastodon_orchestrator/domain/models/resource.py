"""Cluster resource specifications and desired-state comparison."""

from __future__ import annotations

import base64
import copy
from enum import Enum
from typing import Any, TYPE_CHECKING

from pydantic import Field

from mastodon_orchestrator.domain.models.base import ValueObject


if TYPE_CHECKING:
    from mastodon_orchestrator.domain.models.secrets import SecretMaterial


MANAGED_BY = "mastodon-orchestrator"


class ResourceKind(str, Enum):
    """Cluster object kinds the orchestrator manages."""

    NAMESPACE = "Namespace"
    PERSISTENT_VOLUME = "PersistentVolume"
    PERSISTENT_VOLUME_CLAIM = "PersistentVolumeClaim"
    SECRET = "Secret"
    CONFIG_MAP = "ConfigMap"
    SERVICE = "Service"
    DEPLOYMENT = "Deployment"
    JOB = "Job"
    INGRESS = "Ingress"


API_VERSIONS: dict[ResourceKind, str] = {
    ResourceKind.NAMESPACE: "v1",
    ResourceKind.PERSISTENT_VOLUME: "v1",
    ResourceKind.PERSISTENT_VOLUME_CLAIM: "v1",
    ResourceKind.SECRET: "v1",
    ResourceKind.CONFIG_MAP: "v1",
    ResourceKind.SERVICE: "v1",
    ResourceKind.DEPLOYMENT: "apps/v1",
    ResourceKind.JOB: "batch/v1",
    ResourceKind.INGRESS: "networking.k8s.io/v1",
}

CLUSTER_SCOPED_KINDS: frozenset[ResourceKind] = frozenset({
    ResourceKind.NAMESPACE,
    ResourceKind.PERSISTENT_VOLUME,
})

# The cluster rejects in-place spec changes for these; they are re-created.
IMMUTABLE_KINDS: frozenset[ResourceKind] = frozenset({ResourceKind.JOB})

# Apply order inside a stage. Equal priorities are applied concurrently.
APPLY_PRIORITY: dict[ResourceKind, int] = {
    ResourceKind.NAMESPACE: 0,
    ResourceKind.PERSISTENT_VOLUME: 1,
    ResourceKind.SECRET: 2,
    ResourceKind.CONFIG_MAP: 2,
    ResourceKind.PERSISTENT_VOLUME_CLAIM: 3,
    ResourceKind.SERVICE: 4,
    ResourceKind.DEPLOYMENT: 5,
    ResourceKind.JOB: 5,
    ResourceKind.INGRESS: 6,
}


class ResourceRef(ValueObject):
    """Kind and name of a cluster object. The namespace is supplied per call."""

    kind: ResourceKind
    name: str

    @property
    def namespaced(self) -> bool:
        return self.kind not in CLUSTER_SCOPED_KINDS

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.name}"


class ResourceAction(str, Enum):
    """What applying one resource did to the cluster."""

    CREATED = "created"
    UPDATED = "updated"
    RECREATED = "recreated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"


class ResourceChange(ValueObject):
    ref: ResourceRef
    action: ResourceAction

    @property
    def mutated(self) -> bool:
        return self.action != ResourceAction.UNCHANGED


class ResourceSpec(ValueObject):
    """Desired state of one cluster object.

    ``body`` holds every top-level manifest field except ``apiVersion``,
    ``kind`` and ``metadata`` (e.g. ``spec``, ``data``, ``type``).
    ``depends_on`` lists objects that must exist before this one is
    submitted. ``secret_inputs`` names SecretMaterial keys merged into
    ``data`` at apply time; only valid for Secrets.
    """

    kind: ResourceKind
    name: str
    body: dict[str, Any] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    depends_on: list[ResourceRef] = Field(default_factory=list)
    secret_inputs: list[str] = Field(default_factory=list)

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(kind=self.kind, name=self.name)

    @property
    def priority(self) -> int:
        return APPLY_PRIORITY[self.kind]

    def manifest(
        self, namespace: str, material: SecretMaterial | None = None
    ) -> dict[str, Any]:
        """Render the full cluster manifest for the given namespace."""
        metadata: dict[str, Any] = {
            "name": self.name,
            "labels": {"app.kubernetes.io/managed-by": MANAGED_BY, **self.labels},
        }
        if self.ref.namespaced:
            metadata["namespace"] = namespace
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)

        manifest: dict[str, Any] = {
            "apiVersion": API_VERSIONS[self.kind],
            "kind": self.kind.value,
            "metadata": metadata,
        }
        manifest.update(copy.deepcopy(self.body))

        if self.secret_inputs:
            if material is None:
                raise ValueError(f"{self.ref} needs secret material to render")
            data = manifest.setdefault("data", {})
            data.update(material.encoded(self.secret_inputs))
        return manifest


def encode_secret_data(values: dict[str, str]) -> dict[str, str]:
    """Base64-encode values the way the cluster stores Secret ``data``."""
    return {
        key: base64.b64encode(value.encode("utf-8")).decode("ascii")
        for key, value in values.items()
    }


def decode_secret_data(data: dict[str, str]) -> dict[str, str]:
    return {
        key: base64.b64decode(value).decode("utf-8")
        for key, value in data.items()
    }


def manifest_matches(desired: Any, live: Any) -> bool:
    """True when every field of ``desired`` is present and equal in ``live``.

    Fields the cluster adds (status, uid, defaults) are ignored; lists
    must have the same length and match element-wise.
    """
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(
            key in live and manifest_matches(value, live[key])
            for key, value in desired.items()
        )
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(manifest_matches(d, lv) for d, lv in zip(desired, live))
    return bool(desired == live)
