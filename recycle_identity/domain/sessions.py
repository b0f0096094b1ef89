"""Session establishment for verified accounts."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from .account import Account
from ..repository import AccountRepository
from ..security.tokens import generate_session_token, hash_session_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SessionPrincipal:
    """Authenticated identity handed to the transport boundary after login."""

    session_id: str
    account_id: str
    username: str
    email: str
    email_confirmed: bool
    issued_at: datetime
    expires_at: datetime


class SessionEstablisher:
    """Turns verified accounts into principals and manages their token-store rows."""

    def __init__(self, repository: AccountRepository, ttl_seconds: int) -> None:
        self._repository = repository
        self._ttl = timedelta(seconds=ttl_seconds)

    def establish(self, account: Account, now: datetime) -> SessionPrincipal:
        return SessionPrincipal(
            session_id=str(uuid.uuid4()),
            account_id=account.account_id,
            username=account.username,
            email=account.email,
            email_confirmed=account.email_confirmed,
            issued_at=now,
            expires_at=now + self._ttl,
        )

    def issue(self, principal: SessionPrincipal) -> str:
        """Persist the principal's session and return the raw token for the cookie."""
        token, token_hash = generate_session_token()
        self._repository.create_session(
            session_id=principal.session_id,
            account_id=principal.account_id,
            token_hash=token_hash,
            issued_at=principal.issued_at,
            expires_at=principal.expires_at,
        )
        return token

    def resolve(self, token: str, now: datetime) -> SessionPrincipal | None:
        """Return the principal for a live session token, or ``None``."""
        if not token:
            return None
        found = self._repository.find_session(hash_session_token(token))
        if found is None:
            return None
        record, account = found
        if record.expires_at <= now:
            self._repository.revoke_session(record.session_id, now=now)
            return None
        return SessionPrincipal(
            session_id=record.session_id,
            account_id=account.account_id,
            username=account.username,
            email=account.email,
            email_confirmed=account.email_confirmed,
            issued_at=record.issued_at,
            expires_at=record.expires_at,
        )

    def revoke(self, principal: SessionPrincipal, now: datetime) -> None:
        """Revoke the session; unknown or already revoked sessions are not an error."""
        self._repository.revoke_session(principal.session_id, now=now)
        logger.info("session %s revoked", principal.session_id)
