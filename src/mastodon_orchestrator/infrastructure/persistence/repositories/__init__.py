"""Repository implementations."""

from mastodon_orchestrator.infrastructure.persistence.repositories.in_memory import (
    InMemoryPlanRunRepository,
)
from mastodon_orchestrator.infrastructure.persistence.repositories.plan_run_repo import (
    SqlPlanRunRepository,
)


__all__ = [
    "InMemoryPlanRunRepository",
    "SqlPlanRunRepository",
]
