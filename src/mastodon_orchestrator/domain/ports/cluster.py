"""Cluster API port (hexagonal architecture)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from mastodon_orchestrator.domain.models.resource import ResourceRef


class ClusterAPI(ABC):
    """Port for the cluster-management API.

    Every call takes the namespace explicitly; adapters must not fall back
    to an ambient current-namespace setting. Cluster-scoped kinds ignore it.
    Failures are raised as ``ClusterAPIError``.
    """

    @abstractmethod
    async def get(self, ref: ResourceRef, namespace: str) -> dict[str, Any] | None:
        """Read the live object, or None when it does not exist."""

    @abstractmethod
    async def create(self, manifest: dict[str, Any], namespace: str) -> dict[str, Any]:
        """Create an object."""

    @abstractmethod
    async def update(self, manifest: dict[str, Any], namespace: str) -> dict[str, Any]:
        """Update an existing object in place."""

    @abstractmethod
    async def delete(self, ref: ResourceRef, namespace: str) -> bool:
        """Delete an object. Returns False when it did not exist."""

    @abstractmethod
    def stream_logs(self, job_name: str, namespace: str) -> AsyncIterator[str]:
        """Yield log lines of a job's pods."""

    @abstractmethod
    async def port_open(self, service: str, port: int, namespace: str) -> bool:
        """Check whether a Service port has a backend accepting connections."""
