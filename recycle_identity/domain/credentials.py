"""Credential store: account creation, lookup and logical deletion."""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime

from .account import Account
from .contracts import email_fingerprint, normalize_email
from .errors import DuplicateEmailError, INVALID_EMAIL, ValidationError
from .trackable import TrackableRecord
from ..repository import AccountRepository
from ..security.passwords import PasswordPolicy, hash_password

logger = logging.getLogger(__name__)

_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9\-._@+]+$")

INVALID_USERNAME = "INVALID_USERNAME"


class CredentialStore:
    """Owns one record per account: identity, normalized email and password hash."""

    def __init__(self, repository: AccountRepository, policy: PasswordPolicy) -> None:
        self._repository = repository
        self._policy = policy

    def create(
        self,
        username: str,
        email: str,
        password: str,
        actor: str,
        now: datetime,
    ) -> Account:
        """Validate and persist a new, unconfirmed account.

        The password hash is part of the same INSERT as the identity, so there
        is never a stored account without a usable credential.
        """
        errors: dict[str, list[str]] = {}
        username = (username or "").strip()
        email = (email or "").strip()
        if not _USERNAME_PATTERN.match(username):
            errors["username"] = [INVALID_USERNAME]
        normalized = normalize_email(email)
        if not normalized:
            errors["email"] = [INVALID_EMAIL]
        password_errors = self._policy.violations(password or "")
        if password_errors:
            errors["password"] = password_errors
        if errors:
            raise ValidationError(errors)

        # Fast path only; the unique index decides races in insert_account.
        existing = self.find_by_normalized_email(
            normalized, require_confirmed=True
        ) or self.find_by_normalized_email(normalized, require_confirmed=False)
        if existing is not None:
            logger.warning("registration rejected for taken email %s", email_fingerprint(normalized))
            raise DuplicateEmailError()

        account = Account(
            account_id=str(uuid.uuid4()),
            username=username,
            email=email,
            normalized_email=normalized,
            password_hash=hash_password(password),
            audit=TrackableRecord.created(actor, now),
            email_confirmed=False,
        )
        return self._repository.insert_account(account)

    def find_by_normalized_email(self, email: str, *, require_confirmed: bool) -> Account | None:
        """Look up a live account whose confirmation state equals ``require_confirmed``.

        Login passes ``True``; token validation passes ``False`` so a token can
        never be checked against an account that is already confirmed.
        """
        return self._repository.find_account_by_normalized_email(
            normalize_email(email), email_confirmed=require_confirmed
        )

    def delete(self, account: Account, actor: str, now: datetime) -> bool:
        """Logically delete ``account``; returns ``False`` if it was already gone."""
        if not account.audit.mark_deleted(actor, now):
            return False
        return self._repository.soft_delete_account(account.account_id, actor=actor, now=now)
