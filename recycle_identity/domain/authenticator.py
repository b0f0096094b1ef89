"""Password verification with failed-attempt lockout."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from .account import Account
from .trackable import SYSTEM_ACTOR
from ..config import Settings
from ..repository import AccountRepository
from ..security.passwords import hash_password, needs_rehash, verify_password

logger = logging.getLogger(__name__)


class AuthOutcome(str, enum.Enum):
    SUCCESS = "success"
    LOCKED_OUT = "locked_out"
    BAD_CREDENTIAL = "bad_credential"


@dataclass(frozen=True, slots=True)
class AuthResult:
    outcome: AuthOutcome
    lockout_ends_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is AuthOutcome.SUCCESS


@dataclass(frozen=True, slots=True)
class LockoutPolicy:
    max_failed_attempts: int = 5
    duration: timedelta = timedelta(minutes=5)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutPolicy":
        return cls(
            max_failed_attempts=settings.lockout_max_failed_attempts,
            duration=timedelta(seconds=settings.lockout_duration_seconds),
        )


class Authenticator:
    """Checks a presented password and maintains the lockout counters.

    Counter updates go through a single atomic repository call so concurrent
    bad attempts cannot slip past the threshold.
    """

    def __init__(self, repository: AccountRepository, policy: LockoutPolicy) -> None:
        self._repository = repository
        self._policy = policy

    def verify(self, account: Account, password: str, now: datetime) -> AuthResult:
        # Always hash first; a locked account costs the same as a wrong password.
        matched = verify_password(password, account.password_hash)
        if account.is_locked_out(now):
            return AuthResult(AuthOutcome.LOCKED_OUT, account.lockout_ends_at)

        if matched:
            if not self._repository.clear_failed_logins(account.account_id, actor=SYSTEM_ACTOR, now=now):
                return self._locked_since_read(account, now)
            account.failed_login_count = 0
            account.lockout_ends_at = None
            if needs_rehash(account.password_hash):
                account.password_hash = hash_password(password)
                self._repository.update_password_hash(
                    account.account_id, account.password_hash, actor=account.account_id, now=now
                )
            return AuthResult(AuthOutcome.SUCCESS)

        count, lockout_ends_at = self._repository.record_failed_login(
            account.account_id,
            threshold=self._policy.max_failed_attempts,
            lockout_ends_at=now + self._policy.duration,
            actor=SYSTEM_ACTOR,
            now=now,
        )
        account.failed_login_count = count
        account.lockout_ends_at = lockout_ends_at
        if account.is_locked_out(now):
            logger.warning("account %s locked out until %s", account.account_id, lockout_ends_at.isoformat())
            return AuthResult(AuthOutcome.LOCKED_OUT, lockout_ends_at)
        return AuthResult(AuthOutcome.BAD_CREDENTIAL)

    def _locked_since_read(self, account: Account, now: datetime) -> AuthResult:
        stored = self._repository.get_account(account.account_id)
        if stored is None or not stored.is_locked_out(now):
            return AuthResult(AuthOutcome.BAD_CREDENTIAL)
        account.failed_login_count = stored.failed_login_count
        account.lockout_ends_at = stored.lockout_ends_at
        logger.warning("account %s locked out before a correct password was accepted", account.account_id)
        return AuthResult(AuthOutcome.LOCKED_OUT, account.lockout_ends_at)
