"""Retry scheduling: capped exponential backoff and the retry/dead-letter decision."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from calsync.sync.errors import Classification
from calsync.sync.models import OutboxStatus


@dataclass(frozen=True)
class RetryDecision:
    """What to write back to the queue row after a failed attempt."""

    status: OutboxStatus
    attempts: int
    next_attempt_at: datetime | None
    error: str

    @property
    def dead_letter(self) -> bool:
        return self.status is OutboxStatus.DEAD_LETTER


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff: ``delay(a) = min(base * 2**a, max_delay)``.

    ``a`` is the number of attempts already made before the failing try.
    """

    base_delay_s: float = 1.0
    max_delay_s: float = 3600.0

    def __post_init__(self) -> None:
        if self.base_delay_s <= 0:
            raise ValueError("base_delay_s must be positive")
        if self.max_delay_s < self.base_delay_s:
            raise ValueError("max_delay_s must be >= base_delay_s")

    def delay(self, attempt: int) -> float:
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        # Clamp the exponent so huge attempt counts cannot overflow a float.
        if attempt >= 64:
            return self.max_delay_s
        return min(self.base_delay_s * (2**attempt), self.max_delay_s)

    def next_attempt_at(self, attempt: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.delay(attempt))

    def decide(
        self,
        *,
        attempts: int,
        max_attempts: int,
        classification: Classification,
        now: datetime,
    ) -> RetryDecision:
        """Decide between FAILED-with-backoff and DEAD_LETTER for one failure."""
        new_attempts = attempts + 1
        if not classification.retriable or new_attempts >= max_attempts:
            return RetryDecision(
                status=OutboxStatus.DEAD_LETTER,
                attempts=min(new_attempts, max_attempts),
                next_attempt_at=None,
                error=classification.message,
            )
        return RetryDecision(
            status=OutboxStatus.FAILED,
            attempts=new_attempts,
            next_attempt_at=self.next_attempt_at(attempts, now),
            error=classification.message,
        )
