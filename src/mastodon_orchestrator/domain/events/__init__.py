"""Domain events package."""

from mastodon_orchestrator.domain.events.plan_events import (
    PlanAborted,
    PlanCompleted,
    PlanStarted,
    StageCompleted,
    StageFailed,
    StageRetrying,
    StageRolledBack,
    StageStarted,
)


__all__ = [
    "PlanAborted",
    "PlanCompleted",
    "PlanStarted",
    "StageCompleted",
    "StageFailed",
    "StageRetrying",
    "StageRolledBack",
    "StageStarted",
]
