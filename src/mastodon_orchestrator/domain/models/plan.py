"""Deployment plan (stage graph) and the plan run aggregate."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import Field

from mastodon_orchestrator.domain.errors import (
    InvalidStageTransitionError,
    OrchestrationError,
    PlanValidationError,
)
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
from mastodon_orchestrator.domain.models.base import AggregateRoot, utc_now, ValueObject
from mastodon_orchestrator.domain.models.resource import ResourceRef, ResourceSpec
from mastodon_orchestrator.domain.models.stage import Stage, StageRun, StageStatus


class DeploymentPlan(ValueObject):
    """Stages of one environment's rollout and their dependency graph.

    Stages are listed in declared order, but execution order is derived
    from ``depends_on`` so independent stages can share a wave.
    """

    environment: str
    namespace: str
    stages: list[Stage] = Field(default_factory=list)

    @property
    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]

    def get_stage(self, name: str) -> Stage | None:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def predecessors(self, name: str) -> set[str]:
        """All stages ``name`` transitively depends on."""
        seen: set[str] = set()
        stack = list(self._stage_or_raise(name).depends_on)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stage = self.get_stage(current)
            if stage is not None:
                stack.extend(stage.depends_on)
        return seen

    def successors(self, name: str) -> set[str]:
        """All stages that transitively depend on ``name``."""
        return {stage.name for stage in self.stages if name in self.predecessors(stage.name)}

    def get_execution_order(self) -> list[list[Stage]]:
        """Stages grouped into waves; every stage's predecessors sit in earlier waves."""
        completed: set[str] = set()
        waves: list[list[Stage]] = []
        remaining = list(self.stages)

        while remaining:
            wave = [
                stage for stage in remaining
                if all(dep in completed for dep in stage.depends_on)
            ]
            if not wave:
                raise PlanValidationError(
                    "Stage dependency cycle among: "
                    + ", ".join(stage.name for stage in remaining)
                )
            waves.append(wave)
            for stage in wave:
                completed.add(stage.name)
                remaining.remove(stage)

        return waves

    def topological_order(self) -> list[Stage]:
        return [stage for wave in self.get_execution_order() for stage in wave]

    def all_resources(self) -> list[tuple[Stage, ResourceSpec]]:
        return [(stage, spec) for stage in self.topological_order() for spec in stage.resources]

    def validate(self) -> None:
        """Check names, edges, acyclicity and cross-stage resource references."""
        errors: list[str] = []
        names = self.stage_names
        duplicates = sorted({name for name in names if names.count(name) > 1})
        errors.extend(f"Duplicate stage {name}" for name in duplicates)

        for stage in self.stages:
            errors.extend(
                f"Stage {stage.name} depends on unknown stage {dep}"
                for dep in stage.depends_on
                if dep not in names
            )
        if errors:
            raise PlanValidationError("Invalid deployment plan", errors)

        self.get_execution_order()

        for stage in self.stages:
            visible: set[ResourceRef] = set(stage.produced_refs())
            for predecessor in self.predecessors(stage.name):
                visible.update(self._stage_or_raise(predecessor).produced_refs())

            for spec in stage.resources:
                errors.extend(
                    f"{spec.ref} in stage {stage.name} references {dep}, "
                    f"which no preceding stage provides"
                    for dep in spec.depends_on
                    if dep not in visible
                )
            errors.extend(
                f"Probe {probe} in stage {stage.name} targets an unknown resource"
                for probe in stage.readiness
                if probe.ref not in visible
            )
            if stage.extraction is not None:
                job = stage.extraction.job_name
                if not any(spec.name == job for spec in stage.resources):
                    errors.append(f"Extraction in stage {stage.name} reads unknown job {job}")

        if errors:
            raise PlanValidationError("Invalid deployment plan", errors)

    def _stage_or_raise(self, name: str) -> Stage:
        stage = self.get_stage(name)
        if stage is None:
            raise PlanValidationError(f"Unknown stage {name}", [f"Unknown stage {name}"])
        return stage


class PlanStatus(str, Enum):
    """Plan run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ABORTED = "aborted"


PLAN_VALID_TRANSITIONS: dict[PlanStatus, set[PlanStatus]] = {
    PlanStatus.PENDING: {PlanStatus.RUNNING, PlanStatus.ABORTED},
    PlanStatus.RUNNING: {PlanStatus.COMPLETE, PlanStatus.ABORTED},
    PlanStatus.COMPLETE: set(),
    PlanStatus.ABORTED: set(),
}


class PlanRun(AggregateRoot):
    """One execution of a plan; holds the stage-completion ledger."""

    environment: str
    namespace: str
    status: PlanStatus = PlanStatus.PENDING
    stages: list[StageRun] = Field(default_factory=list)
    failed_stage: str | None = None
    error_kind: str = ""
    error_message: str = ""
    completed_at: datetime | None = None

    @classmethod
    def for_plan(
        cls,
        plan: DeploymentPlan,
        max_attempts: int,
        only: list[str] | None = None,
    ) -> PlanRun:
        selected = [
            stage for stage in plan.topological_order()
            if only is None or stage.name in only
        ]
        return cls(
            environment=plan.environment,
            namespace=plan.namespace,
            stages=[StageRun(stage=stage.name, max_attempts=max_attempts) for stage in selected],
        )

    def stage_run(self, name: str) -> StageRun:
        for stage_run in self.stages:
            if stage_run.stage == name:
                return stage_run
        raise KeyError(name)

    def _transition_to(self, new_status: PlanStatus) -> None:
        valid = PLAN_VALID_TRANSITIONS.get(self.status, set())
        if new_status not in valid:
            raise InvalidStageTransitionError(
                f"Plan run cannot transition from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        self.touch()

    def start(self) -> None:
        self._transition_to(PlanStatus.RUNNING)
        self.add_event(PlanStarted(
            run_id=self.id,
            environment=self.environment,
            stages=[s.stage for s in self.stages],
        ))

    def begin_stage_attempt(self, name: str) -> StageRun:
        stage_run = self.stage_run(name)
        stage_run.begin_attempt()
        self.touch()
        self.add_event(StageStarted(run_id=self.id, stage=name, attempt=stage_run.attempt))
        return stage_run

    def stage_awaiting_ready(self, name: str) -> None:
        self.stage_run(name).await_ready()
        self.touch()

    def stage_ready(self, name: str) -> None:
        self.stage_run(name).mark_ready()
        self.touch()

    def complete_stage(self, name: str) -> None:
        stage_run = self.stage_run(name)
        stage_run.complete()
        self.touch()
        self.add_event(StageCompleted(run_id=self.id, stage=name, attempt=stage_run.attempt))

    def fail_stage(self, name: str, error: OrchestrationError) -> None:
        stage_run = self.stage_run(name)
        stage_run.fail(error.kind.value, error.message)
        self.touch()
        self.add_event(StageFailed(
            run_id=self.id,
            stage=name,
            attempt=stage_run.attempt,
            error_kind=error.kind.value,
            error_message=error.message,
        ))

    def schedule_retry(self, name: str, delay_seconds: float) -> None:
        stage_run = self.stage_run(name)
        self.add_event(StageRetrying(
            run_id=self.id,
            stage=name,
            attempt=stage_run.attempt,
            delay_seconds=delay_seconds,
            error_kind=stage_run.error_kind,
        ))

    def abort_stage(self, name: str) -> None:
        self.stage_run(name).abort()
        self.touch()

    def record_rollback(self, name: str, deleted: list[ResourceRef]) -> None:
        self.stage_run(name).rolled_back = True
        self.touch()
        self.add_event(StageRolledBack(
            run_id=self.id, stage=name, deleted=[str(ref) for ref in deleted],
        ))

    def complete(self) -> None:
        incomplete = [s.stage for s in self.stages if s.status != StageStatus.COMPLETE]
        if incomplete:
            raise InvalidStageTransitionError(
                f"Plan run cannot complete with unfinished stages: {', '.join(incomplete)}"
            )
        self._transition_to(PlanStatus.COMPLETE)
        self.completed_at = utc_now()
        self.add_event(PlanCompleted(run_id=self.id, environment=self.environment))

    def abort(self, error: OrchestrationError) -> None:
        self.failed_stage = error.stage
        self.error_kind = error.kind.value
        self.error_message = error.message
        self._transition_to(PlanStatus.ABORTED)
        self.completed_at = utc_now()
        self.add_event(PlanAborted(
            run_id=self.id,
            environment=self.environment,
            stage=error.stage,
            error_kind=error.kind.value,
            error_message=error.message,
        ))

    @property
    def completed_stages(self) -> list[str]:
        return [s.stage for s in self.stages if s.status == StageStatus.COMPLETE]

    @property
    def is_terminal(self) -> bool:
        return self.status in {PlanStatus.COMPLETE, PlanStatus.ABORTED}
