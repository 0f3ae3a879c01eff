"""Clock abstraction so retry scheduling and timestamps stay deterministic in tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Minimal wall-clock protocol injected into the worker and stores."""

    def now(self) -> datetime: ...


class SystemClock:
    """Production clock backed by system time (timezone-aware UTC)."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class ManualClock:
    """Controllable clock for tests; only moves when ``advance`` is called."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, tzinfo=UTC)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now
