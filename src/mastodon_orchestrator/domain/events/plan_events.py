"""Plan run domain events."""

from __future__ import annotations

from mastodon_orchestrator.domain.models.base import DomainEvent


class PlanStarted(DomainEvent):
    environment: str
    stages: list[str]
    event_type: str = "plan.started"


class StageStarted(DomainEvent):
    stage: str
    attempt: int
    event_type: str = "stage.started"


class StageRetrying(DomainEvent):
    stage: str
    attempt: int
    delay_seconds: float
    error_kind: str
    event_type: str = "stage.retrying"


class StageCompleted(DomainEvent):
    stage: str
    attempt: int
    event_type: str = "stage.completed"


class StageFailed(DomainEvent):
    stage: str
    attempt: int
    error_kind: str
    error_message: str
    event_type: str = "stage.failed"


class StageRolledBack(DomainEvent):
    stage: str
    deleted: list[str]
    event_type: str = "stage.rolled_back"


class PlanCompleted(DomainEvent):
    environment: str
    event_type: str = "plan.completed"


class PlanAborted(DomainEvent):
    environment: str
    stage: str | None
    error_kind: str
    error_message: str
    event_type: str = "plan.aborted"
