"""Clock abstraction handed to services instead of reading wall time directly."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """UTC wall clock used outside of tests."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
