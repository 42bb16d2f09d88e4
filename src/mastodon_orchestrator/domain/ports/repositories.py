"""Repository port interfaces (hexagonal architecture)."""

from __future__ import annotations

from abc import ABC, abstractmethod

from mastodon_orchestrator.domain.models.plan import PlanRun


class PlanRunRepository(ABC):
    """Port for plan run ledger persistence."""

    @abstractmethod
    async def save(self, run: PlanRun) -> PlanRun:
        """Persist a new plan run."""

    @abstractmethod
    async def update(self, run: PlanRun) -> PlanRun:
        """Update an existing plan run."""

    @abstractmethod
    async def get_by_id(self, run_id: str) -> PlanRun | None:
        """Retrieve a plan run by ID."""

    @abstractmethod
    async def latest_for_environment(self, environment: str) -> PlanRun | None:
        """Most recent run for an environment."""

    @abstractmethod
    async def list_by_environment(self, environment: str, limit: int = 20) -> list[PlanRun]:
        """Runs for an environment, newest first."""
