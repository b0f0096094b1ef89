"""Exceptions raised by the identity domain and translated at the HTTP boundary."""

from __future__ import annotations

from datetime import datetime

INVALID_EMAIL = "INVALID_EMAIL"
INVALID_TOKEN = "INVALID_TOKEN"
LOGIN_FAILED = "LOGIN_FAILED"
LOCKED_OUT = "LOCKED_OUT"


class IdentityError(Exception):
    """Base class for user-facing identity failures."""


class ValidationError(IdentityError):
    """Input rejected with field-scoped error codes."""

    def __init__(self, errors: dict[str, list[str]]) -> None:
        super().__init__("validation failed")
        self.errors = errors


class DuplicateEmailError(ValidationError):
    """A live account already owns the normalized email.

    Reported with the same code as a malformed address so registration cannot
    be used to probe for existing accounts.
    """

    def __init__(self) -> None:
        super().__init__({"email": [INVALID_EMAIL]})


class InvalidTokenError(IdentityError):
    """Confirmation token is wrong, expired, or its account is already confirmed."""


class LoginFailedError(IdentityError):
    """Unknown email, unconfirmed account, or wrong password."""


class LockedOutError(LoginFailedError):
    """Login suppressed until ``lockout_ends_at``."""

    def __init__(self, lockout_ends_at: datetime | None) -> None:
        super().__init__("account locked out")
        self.lockout_ends_at = lockout_ends_at


class InvalidStateError(RuntimeError):
    """Programming error: an operation was applied to a record in the wrong state."""
