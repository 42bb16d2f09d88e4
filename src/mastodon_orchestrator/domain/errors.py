"""Error taxonomy for plan building and stage execution.

Every failure the orchestrator surfaces to an operator is an
:class:`OrchestrationError`. The ``kind`` attribute names the taxonomy
bucket, ``stage`` names the stage the error belongs to (``None`` for
errors raised before any stage runs) and ``retryable`` tells the stage
loop whether another apply/await cycle may fix it.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from mastodon_orchestrator.domain.models.plan import PlanRun


class ErrorKind(str, Enum):
    """Failure categories reported to operators."""

    CONFIG_VALIDATION = "ConfigValidation"
    UNSATISFIED_DEPENDENCY = "UnsatisfiedDependency"
    APPLY_FAILED = "ApplyFailed"
    TIMEOUT = "Timeout"
    PROBE_FAILED = "ProbeFailed"
    EXTRACTION_INCOMPLETE = "ExtractionIncomplete"
    ROLLBACK_REFUSED = "RollbackRefused"
    CANCELLED = "Cancelled"


class OrchestrationError(Exception):
    """Base class for all orchestration failures."""

    kind: ErrorKind = ErrorKind.APPLY_FAILED
    retryable: bool = False

    def __init__(self, message: str, stage: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.kind.value}: {self.message}"
        return f"{self.kind.value}: {self.message}"


class ConfigValidationError(OrchestrationError):
    """Environment configuration is invalid. Raised before touching the cluster."""

    kind = ErrorKind.CONFIG_VALIDATION

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class PlanValidationError(ConfigValidationError):
    """The stage graph is malformed (unknown stage, cycle, dangling reference)."""


class UnsatisfiedDependencyError(OrchestrationError):
    """A predecessor stage or a referenced resource does not exist yet."""

    kind = ErrorKind.UNSATISFIED_DEPENDENCY

    def __init__(
        self, message: str, stage: str | None = None, missing: list[str] | None = None
    ) -> None:
        super().__init__(message, stage)
        self.missing = missing or []


class ApplyFailedError(OrchestrationError):
    """The cluster API rejected a resource."""

    kind = ErrorKind.APPLY_FAILED

    def __init__(self, message: str, stage: str | None = None, transient: bool = False) -> None:
        super().__init__(message, stage)
        self.retryable = transient


class ReadinessTimeoutError(OrchestrationError):
    """A stage did not become ready within its timeout."""

    kind = ErrorKind.TIMEOUT
    retryable = True


class ProbeFailedError(OrchestrationError):
    """A probed resource entered an observably broken state."""

    kind = ErrorKind.PROBE_FAILED


class ExtractionIncompleteError(OrchestrationError):
    """Secret generation output lacks required keys."""

    kind = ErrorKind.EXTRACTION_INCOMPLETE

    def __init__(self, message: str, stage: str | None = None, missing: list[str] | None = None) -> None:
        super().__init__(message, stage)
        self.missing = missing or []


class RollbackRefusedError(OrchestrationError):
    """Rollback was requested for a stage that must be fixed by hand."""

    kind = ErrorKind.ROLLBACK_REFUSED


class OrchestrationCancelledError(OrchestrationError):
    """The caller's cancellation signal fired while a stage was in flight."""

    kind = ErrorKind.CANCELLED


class PlanAbortedError(OrchestrationError):
    """A plan run stopped at a stage. Carries the cause and the full ledger."""

    def __init__(self, cause: OrchestrationError, run: PlanRun) -> None:
        super().__init__(cause.message, cause.stage)
        self.kind = cause.kind
        self.cause = cause
        self.run = run


class ClusterAPIError(Exception):
    """Raised by cluster adapters when a request is rejected or fails."""

    def __init__(self, message: str, status: int | None = None, transient: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.transient = transient

    @property
    def not_found(self) -> bool:
        return self.status == 404


class InvalidStageTransitionError(Exception):
    """Raised when an invalid stage state transition is attempted."""


class MaxAttemptsExceededError(Exception):
    """Raised when a stage is restarted after its last permitted attempt."""
