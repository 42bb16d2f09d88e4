"""In-memory repository implementations for testing and development."""

from __future__ import annotations

from mastodon_orchestrator.domain.models.plan import PlanRun
from mastodon_orchestrator.domain.ports.repositories import PlanRunRepository


# Shared in-memory store
_plan_run_store: dict[str, PlanRun] = {}


class InMemoryPlanRunRepository(PlanRunRepository):
    """In-memory implementation of PlanRunRepository."""

    def __init__(self) -> None:
        self._store = _plan_run_store

    async def save(self, run: PlanRun) -> PlanRun:
        self._store[run.id] = run
        return run

    async def update(self, run: PlanRun) -> PlanRun:
        self._store[run.id] = run
        return run

    async def get_by_id(self, run_id: str) -> PlanRun | None:
        return self._store.get(run_id)

    async def latest_for_environment(self, environment: str) -> PlanRun | None:
        runs = await self.list_by_environment(environment, limit=1)
        return runs[0] if runs else None

    async def list_by_environment(self, environment: str, limit: int = 20) -> list[PlanRun]:
        items = [r for r in self._store.values() if r.environment == environment]
        return sorted(items, key=lambda r: r.created_at, reverse=True)[:limit]

    @classmethod
    def clear(cls) -> None:
        """Clear the store (for testing)."""
        _plan_run_store.clear()
