"""Stage definitions and the per-stage execution state machine."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from itertools import groupby

from pydantic import BaseModel, Field

from mastodon_orchestrator.domain.errors import (
    InvalidStageTransitionError,
    MaxAttemptsExceededError,
)
from mastodon_orchestrator.domain.models.base import utc_now, ValueObject
from mastodon_orchestrator.domain.models.resource import (
    ResourceKind,
    ResourceRef,
    ResourceSpec,
)


class StageName(str, Enum):
    """Stages of a Mastodon rollout, in declared order."""

    STORAGE = "storage"
    CORE_SERVICES = "core-services"
    SECRET_GENERATION = "secret-generation"
    CONFIG_MATERIALIZATION = "config-materialization"
    APPLICATION_SERVICES = "application-services"
    MIGRATION = "migration"
    EXPOSURE = "exposure"


class ProbeKind(str, Enum):
    """How a stage member is judged usable by downstream stages."""

    CLAIM_BOUND = "claim_bound"
    PORT_OPEN = "port_open"
    JOB_SUCCEEDED = "job_succeeded"
    ROLLOUT_AVAILABLE = "rollout_available"


_PROBE_TARGET_KIND: dict[ProbeKind, ResourceKind] = {
    ProbeKind.CLAIM_BOUND: ResourceKind.PERSISTENT_VOLUME_CLAIM,
    ProbeKind.PORT_OPEN: ResourceKind.SERVICE,
    ProbeKind.JOB_SUCCEEDED: ResourceKind.JOB,
    ProbeKind.ROLLOUT_AVAILABLE: ResourceKind.DEPLOYMENT,
}


class ReadinessProbe(ValueObject):
    """Readiness check for one stage member.

    For ``PORT_OPEN`` the target is a Service; the Deployment of the same
    name is inspected for failure conditions.
    """

    kind: ProbeKind
    target: str
    port: int | None = None

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(kind=_PROBE_TARGET_KIND[self.kind], name=self.target)

    def __str__(self) -> str:
        if self.port is not None:
            return f"{self.kind.value}({self.target}:{self.port})"
        return f"{self.kind.value}({self.target})"


class ExtractionStep(ValueObject):
    """Read ``KEY=value`` lines from a job's logs into a cluster Secret."""

    job_name: str
    required_keys: list[str]
    target_secret: str

    @property
    def target_ref(self) -> ResourceRef:
        return ResourceRef(kind=ResourceKind.SECRET, name=self.target_secret)


class Stage(ValueObject):
    """A named unit of the plan with its own resources and readiness."""

    name: str
    description: str = ""
    depends_on: list[str] = Field(default_factory=list)
    resources: list[ResourceSpec] = Field(default_factory=list)
    readiness: list[ReadinessProbe] = Field(default_factory=list)
    extraction: ExtractionStep | None = None
    rollback_allowed: bool = True
    timeout_seconds: float | None = None

    def produced_refs(self) -> list[ResourceRef]:
        """Everything this stage puts in the cluster, in apply order."""
        refs = [spec.ref for spec in sorted(self.resources, key=lambda s: s.priority)]
        if self.extraction is not None:
            refs.append(self.extraction.target_ref)
        return refs

    def apply_groups(self) -> list[list[ResourceSpec]]:
        """Resources grouped by apply priority, lowest first."""
        ordered = sorted(self.resources, key=lambda s: s.priority)
        return [list(group) for _, group in groupby(ordered, key=lambda s: s.priority)]

    def get_resource(self, ref: ResourceRef) -> ResourceSpec | None:
        for spec in self.resources:
            if spec.ref == ref:
                return spec
        return None

    @property
    def needs_secret_material(self) -> bool:
        return any(spec.secret_inputs for spec in self.resources)


class StageStatus(str, Enum):
    """Per-stage execution states."""

    PENDING = "pending"
    APPLYING = "applying"
    AWAITING_READY = "awaiting_ready"
    READY = "ready"
    FAILED = "failed"
    COMPLETE = "complete"
    ABORTED = "aborted"


STAGE_VALID_TRANSITIONS: dict[StageStatus, set[StageStatus]] = {
    StageStatus.PENDING: {StageStatus.APPLYING},
    StageStatus.APPLYING: {StageStatus.AWAITING_READY, StageStatus.FAILED},
    StageStatus.AWAITING_READY: {StageStatus.READY, StageStatus.FAILED},
    StageStatus.READY: {StageStatus.COMPLETE, StageStatus.FAILED},
    StageStatus.FAILED: {StageStatus.APPLYING, StageStatus.ABORTED},
    StageStatus.COMPLETE: set(),
    StageStatus.ABORTED: set(),
}


class StageRun(BaseModel):
    """Ledger entry for one stage within a plan run."""

    stage: str
    status: StageStatus = StageStatus.PENDING
    attempt: int = 0
    max_attempts: int = 3
    error_kind: str = ""
    error_message: str = ""
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_resources: list[ResourceRef] = Field(default_factory=list)
    rolled_back: bool = False

    model_config = {"validate_assignment": True}

    def _transition_to(self, new_status: StageStatus) -> None:
        valid = STAGE_VALID_TRANSITIONS.get(self.status, set())
        if new_status not in valid:
            raise InvalidStageTransitionError(
                f"Stage {self.stage} cannot transition from {self.status.value} "
                f"to {new_status.value}"
            )
        self.status = new_status

    def begin_attempt(self) -> None:
        if self.attempt >= self.max_attempts:
            raise MaxAttemptsExceededError(
                f"Stage {self.stage} has used all {self.max_attempts} attempts"
            )
        self._transition_to(StageStatus.APPLYING)
        self.attempt += 1
        self.error_kind = ""
        self.error_message = ""
        if self.started_at is None:
            self.started_at = utc_now()

    def await_ready(self) -> None:
        self._transition_to(StageStatus.AWAITING_READY)

    def mark_ready(self) -> None:
        self._transition_to(StageStatus.READY)

    def complete(self) -> None:
        self._transition_to(StageStatus.COMPLETE)
        self.completed_at = utc_now()

    def fail(self, error_kind: str, error_message: str) -> None:
        self._transition_to(StageStatus.FAILED)
        self.error_kind = error_kind
        self.error_message = error_message

    def abort(self) -> None:
        self._transition_to(StageStatus.ABORTED)
        self.completed_at = utc_now()

    def record_created(self, ref: ResourceRef) -> None:
        if ref not in self.created_resources:
            self.created_resources = [*self.created_resources, ref]

    @property
    def can_retry(self) -> bool:
        return self.status == StageStatus.FAILED and self.attempt < self.max_attempts

    @property
    def is_terminal(self) -> bool:
        return self.status in {StageStatus.COMPLETE, StageStatus.ABORTED}
