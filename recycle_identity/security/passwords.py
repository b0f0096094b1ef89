"""Password strength rules and argon2 hashing."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from argon2 import PasswordHasher, exceptions as argon_exc

from ..config import Settings

_ph = PasswordHasher()

PASSWORD_TOO_SHORT = "PASSWORD_TOO_SHORT"
PASSWORD_REQUIRES_DIGIT = "PASSWORD_REQUIRES_DIGIT"
PASSWORD_REQUIRES_LOWER = "PASSWORD_REQUIRES_LOWER"
PASSWORD_REQUIRES_UPPER = "PASSWORD_REQUIRES_UPPER"
PASSWORD_REQUIRES_NON_ALPHANUMERIC = "PASSWORD_REQUIRES_NON_ALPHANUMERIC"
PASSWORD_REQUIRES_UNIQUE_CHARS = "PASSWORD_REQUIRES_UNIQUE_CHARS"


@dataclass(frozen=True, slots=True)
class PasswordPolicy:
    """Configurable strength rules applied to new passwords."""

    min_length: int = 6
    require_digit: bool = True
    require_lower: bool = True
    require_upper: bool = True
    require_non_alphanumeric: bool = True
    required_unique_chars: int = 1

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            require_digit=settings.password_require_digit,
            require_lower=settings.password_require_lower,
            require_upper=settings.password_require_upper,
            require_non_alphanumeric=settings.password_require_non_alphanumeric,
            required_unique_chars=settings.password_required_unique_chars,
        )

    def violations(self, password: str) -> list[str]:
        """Return every rule the candidate breaks, in a stable order."""
        errors: list[str] = []
        if len(password) < self.min_length:
            errors.append(PASSWORD_TOO_SHORT)
        if self.require_non_alphanumeric and all(ch.isalnum() for ch in password):
            errors.append(PASSWORD_REQUIRES_NON_ALPHANUMERIC)
        if self.require_digit and not any(ch.isdigit() for ch in password):
            errors.append(PASSWORD_REQUIRES_DIGIT)
        if self.require_lower and not any(ch.islower() for ch in password):
            errors.append(PASSWORD_REQUIRES_LOWER)
        if self.require_upper and not any(ch.isupper() for ch in password):
            errors.append(PASSWORD_REQUIRES_UPPER)
        if len(set(password)) < self.required_unique_chars:
            errors.append(PASSWORD_REQUIRES_UNIQUE_CHARS)
        return errors


def hash_password(password: str) -> str:
    return _ph.hash(password)


def verify_password(password: str, stored_hash: str) -> bool:
    try:
        return _ph.verify(stored_hash, password)
    except (argon_exc.VerifyMismatchError, argon_exc.VerificationError, argon_exc.InvalidHashError):
        return False


def needs_rehash(stored_hash: str) -> bool:
    return _ph.check_needs_rehash(stored_hash)


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return _ph.hash("recycle-identity-timing-guard")


def burn_verification(password: str) -> None:
    """Spend the same effort as a real verification when no account matched."""
    verify_password(password, _dummy_hash())
