from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from .trackable import TrackableRecord


@dataclass(slots=True)
class Account:
    """Aggregate root for a user identity and its login bookkeeping."""

    account_id: str
    username: str
    email: str
    normalized_email: str
    password_hash: str = field(repr=False)
    audit: TrackableRecord
    email_confirmed: bool = False
    failed_login_count: int = 0
    lockout_ends_at: datetime | None = None

    def is_locked_out(self, now: datetime) -> bool:
        return self.lockout_ends_at is not None and now < self.lockout_ends_at
