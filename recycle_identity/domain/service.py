"""Account service orchestrating registration, confirmation, login and auditing."""

from __future__ import annotations

import json
import logging
from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime
from typing import Tuple

from .account import Account
from .authenticator import AuthOutcome, Authenticator, LockoutPolicy
from .contracts import RegisterAccountInput, email_fingerprint, normalize_email
from .credentials import CredentialStore
from .errors import InvalidTokenError, LockedOutError, LoginFailedError
from .sessions import SessionEstablisher, SessionPrincipal
from .trackable import SYSTEM_ACTOR
from ..clock import Clock
from ..config import Settings
from ..repository import AccountRepository, AuditLogRecord
from ..security.passwords import PasswordPolicy, burn_verification
from ..security.tokens import EMAIL_CONFIRMATION, ConfirmationTokens

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Registration:
    """A newly created account and the token to deliver out of band."""

    account: Account
    confirmation_token: str


@dataclass(slots=True)
class IssuedSession:
    """Principal plus the raw token the transport stores in the session cookie."""

    principal: SessionPrincipal
    token: str


class AccountService:
    """Account trust lifecycle backed by Postgres storage."""

    def __init__(self, repository: AccountRepository, *, clock: Clock, settings: Settings) -> None:
        """Wire the lifecycle components from explicit collaborators."""
        self._repository = repository
        self._clock = clock
        self.credentials = CredentialStore(repository, PasswordPolicy.from_settings(settings))
        self.tokens = ConfirmationTokens(
            secret=settings.token_secret,
            issuer=settings.token_issuer,
            ttl_seconds=settings.confirmation_token_ttl_seconds,
        )
        self.authenticator = Authenticator(repository, LockoutPolicy.from_settings(settings))
        self.sessions = SessionEstablisher(repository, settings.session_ttl_seconds)

    def now(self) -> datetime:
        return self._clock.now()

    def register(self, payload: RegisterAccountInput) -> Registration:
        """Create an unconfirmed account and issue its email confirmation token."""
        now = self.now()
        account = self.credentials.create(
            payload.username, payload.email, payload.password, SYSTEM_ACTOR, now
        )
        token = self.tokens.issue(account, EMAIL_CONFIRMATION, now)
        self._repository.write_audit_event(
            account_id=account.account_id,
            event_type="account.registered",
            actor=SYSTEM_ACTOR,
            now=now,
            metadata={"email": email_fingerprint(account.normalized_email)},
        )
        logger.info("account %s registered", account.account_id)
        return Registration(account=account, confirmation_token=token)

    def confirm_email(self, email: str, token: str) -> Account:
        """Confirm an email address; any failure is reported as ``InvalidTokenError``."""
        now = self.now()
        account = self.credentials.find_by_normalized_email(email, require_confirmed=False)
        if account is None:
            raise InvalidTokenError("no unconfirmed account for email")
        self.tokens.validate(account, EMAIL_CONFIRMATION, token, now)
        if not self._repository.confirm_email(account.account_id, actor=account.account_id, now=now):
            # Lost a race with a concurrent confirmation.
            raise InvalidTokenError("account already confirmed")
        account.email_confirmed = True
        account.audit.stamp_modify(account.account_id, now)
        self._repository.write_audit_event(
            account_id=account.account_id,
            event_type="account.email_confirmed",
            actor=account.account_id,
            now=now,
        )
        return account

    def login(self, email: str, password: str) -> IssuedSession:
        """Verify credentials and open a session.

        Unknown, unconfirmed and wrong-password attempts all raise
        ``LoginFailedError``; lockouts raise its ``LockedOutError`` subclass.
        """
        now = self.now()
        account = self.credentials.find_by_normalized_email(email, require_confirmed=True)
        if account is None:
            burn_verification(password or "")
            logger.info("login failed for unknown or unconfirmed %s", email_fingerprint(normalize_email(email)))
            self._repository.write_audit_event(
                account_id=None,
                event_type="login.failed",
                actor=None,
                now=now,
                metadata={"email": email_fingerprint(normalize_email(email)), "reason": "not_found"},
            )
            raise LoginFailedError("login failed")

        result = self.authenticator.verify(account, password or "", now)
        if result.outcome is AuthOutcome.LOCKED_OUT:
            self._repository.write_audit_event(
                account_id=account.account_id,
                event_type="login.locked_out",
                actor=None,
                now=now,
                metadata={"lockout_ends_at": result.lockout_ends_at.isoformat()},
            )
            raise LockedOutError(result.lockout_ends_at)
        if result.outcome is AuthOutcome.BAD_CREDENTIAL:
            self._repository.write_audit_event(
                account_id=account.account_id,
                event_type="login.failed",
                actor=None,
                now=now,
                metadata={"reason": "bad_credential", "failed_count": account.failed_login_count},
            )
            raise LoginFailedError("login failed")

        principal = self.sessions.establish(account, now)
        token = self.sessions.issue(principal)
        self._repository.write_audit_event(
            account_id=account.account_id,
            event_type="login.succeeded",
            actor=account.account_id,
            now=now,
            metadata={"session_id": principal.session_id},
        )
        return IssuedSession(principal=principal, token=token)

    def resolve_session(self, token: str | None) -> SessionPrincipal | None:
        return self.sessions.resolve(token or "", self.now())

    def logout(self, principal: SessionPrincipal) -> None:
        now = self.now()
        self.sessions.revoke(principal, now)
        self._repository.write_audit_event(
            account_id=principal.account_id,
            event_type="session.revoked",
            actor=principal.account_id,
            now=now,
            metadata={"session_id": principal.session_id},
        )

    def delete_account(self, principal: SessionPrincipal) -> None:
        """Logically delete the principal's account and revoke all of its sessions."""
        now = self.now()
        account = self._repository.get_account(principal.account_id)
        if account is None:
            return
        if self.credentials.delete(account, principal.account_id, now):
            self._repository.write_audit_event(
                account_id=account.account_id,
                event_type="account.deleted",
                actor=principal.account_id,
                now=now,
            )
            logger.info("account %s deleted", account.account_id)

    def list_audit_events(
        self,
        principal: SessionPrincipal,
        *,
        event_type: str | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditLogRecord], str | None]:
        """Return the principal's own audit records with cursor pagination.

        Cursors are bound to the account that received them; presenting one
        under another session raises ``ValueError``.
        """
        position = self._decode_cursor(cursor, principal.account_id) if cursor else None
        records, next_position = self._repository.list_audit_events(
            account_id=principal.account_id,
            event_type=event_type,
            limit=limit,
            cursor=position,
        )
        if next_position is None:
            return records, None
        return records, self._encode_cursor(next_position, principal.account_id)

    @staticmethod
    def _encode_cursor(position: Tuple[datetime, int], account_id: str) -> str:
        created_at, audit_id = position
        payload = {"acct": account_id, "at": created_at.isoformat(), "id": audit_id}
        return urlsafe_b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")

    @staticmethod
    def _decode_cursor(cursor: str, account_id: str) -> Tuple[datetime, int]:
        try:
            payload = json.loads(urlsafe_b64decode(cursor.encode("ascii")))
            position = datetime.fromisoformat(payload["at"]), int(payload["id"])
            owner = payload["acct"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ValueError("invalid cursor") from exc
        if owner != account_id:
            raise ValueError("invalid cursor")
        return position
