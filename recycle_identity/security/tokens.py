"""Utilities for issuing and validating email confirmation and session tokens."""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from typing import Any

import jwt

from ..domain.account import Account
from ..domain.errors import InvalidTokenError

EMAIL_CONFIRMATION = "email-confirmation"


class ConfirmationTokens:
    """Signs and checks tokens proving control of an account's email address.

    Tokens are HS256 JWTs bound to the account id, a digest of its normalized
    email, and a purpose string. Nothing is stored server side; a token stops
    working once the account it names is confirmed because validation only
    ever runs against unconfirmed accounts.
    """

    def __init__(self, *, secret: str, issuer: str, ttl_seconds: int) -> None:
        self._secret = secret
        self._issuer = issuer
        self._ttl = timedelta(seconds=ttl_seconds)

    def issue(self, account: Account, purpose: str, now: datetime) -> str:
        """Create a signed token for ``account`` and ``purpose``.

        Parameters
        ----------
        account:
            The account whose email ownership the token proves.
        purpose:
            Token purpose; a token issued for one purpose never validates for another.
        now:
            Issuance time taken from the service clock.

        Returns
        -------
        str
            The encoded token, handed to the caller for out-of-band delivery.
        """

        payload: dict[str, Any] = {
            "iss": self._issuer,
            "sub": account.account_id,
            "purpose": purpose,
            "eml": _email_digest(account.normalized_email),
            "jti": secrets.token_urlsafe(16),
            "iat": int(now.timestamp()),
            "exp": int((now + self._ttl).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm="HS256")

    def validate(self, account: Account, purpose: str, token: str, now: datetime) -> None:
        """Raise ``InvalidTokenError`` unless ``token`` was issued for this account and purpose.

        Expiry is evaluated against ``now`` rather than the wall clock.
        """

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=["HS256"],
                issuer=self._issuer,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["sub", "purpose", "eml", "exp"],
                },
            )
        except jwt.PyJWTError as exc:
            raise InvalidTokenError("token signature or claims invalid") from exc

        if claims["sub"] != account.account_id or claims["purpose"] != purpose:
            raise InvalidTokenError("token bound to another account or purpose")
        if not hmac.compare_digest(str(claims["eml"]), _email_digest(account.normalized_email)):
            raise InvalidTokenError("token bound to another email")
        if int(claims["exp"]) <= int(now.timestamp()):
            raise InvalidTokenError("token expired")


def _email_digest(normalized_email: str) -> str:
    return hashlib.sha256(normalized_email.encode("utf-8")).hexdigest()


def generate_session_token() -> tuple[str, str]:
    """Generate an opaque session token and its SHA-256 hash."""
    token = secrets.token_urlsafe(48)
    return token, hash_session_token(token)


def hash_session_token(token: str) -> str:
    """Return the SHA-256 hex digest for a session token string."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
