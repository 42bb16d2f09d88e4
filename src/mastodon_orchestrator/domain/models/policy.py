"""Retry and readiness polling policies."""

from __future__ import annotations

from pydantic import Field

from mastodon_orchestrator.domain.models.base import ValueObject


class RetryPolicy(ValueObject):
    """Bounded exponential backoff between apply/await attempts of a stage."""

    max_attempts: int = Field(default=3, ge=1)
    backoff_initial: float = Field(default=2.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    backoff_max: float = Field(default=60.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        delay = self.backoff_initial * (self.backoff_factor ** max(attempt - 1, 0))
        return min(delay, self.backoff_max)


class PollPolicy(ValueObject):
    """Readiness polling: poll, sleep, poll with a growing interval."""

    interval: float = Field(default=1.0, gt=0)
    factor: float = Field(default=1.5, ge=1)
    max_interval: float = Field(default=15.0, gt=0)
    timeout: float = Field(default=600.0, gt=0)

    def next_interval(self, current: float) -> float:
        return min(current * self.factor, self.max_interval)
