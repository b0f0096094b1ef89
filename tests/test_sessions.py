from __future__ import annotations

from datetime import timedelta

import pytest

from recycle_identity.domain.credentials import CredentialStore
from recycle_identity.domain.sessions import SessionEstablisher, SessionPrincipal
from recycle_identity.domain.trackable import SYSTEM_ACTOR
from recycle_identity.security.passwords import PasswordPolicy

from conftest import START


@pytest.fixture
def sessions(repository) -> SessionEstablisher:
    return SessionEstablisher(repository, ttl_seconds=3600)


@pytest.fixture
def account(repository):
    created = CredentialStore(repository, PasswordPolicy()).create("a", "a@x.com", "Str0ng!pw", SYSTEM_ACTOR, START)
    repository.confirm_email(created.account_id, actor=created.account_id, now=START)
    return repository.get_account(created.account_id)


def test_establish_derives_principal_without_touching_store(sessions, repository, account):
    principal = sessions.establish(account, START)

    assert principal.account_id == account.account_id
    assert principal.email_confirmed is True
    assert principal.issued_at == START
    assert principal.expires_at == START + timedelta(hours=1)
    assert repository.sessions == {}


def test_issued_token_resolves_to_principal(sessions, account):
    principal = sessions.establish(account, START)
    token = sessions.issue(principal)

    resolved = sessions.resolve(token, START + timedelta(minutes=30))
    assert resolved == principal


def test_unknown_or_expired_token_does_not_resolve(sessions, account):
    token = sessions.issue(sessions.establish(account, START))

    assert sessions.resolve("", START) is None
    assert sessions.resolve("not-a-session", START) is None
    assert sessions.resolve(token, START + timedelta(hours=1)) is None
    assert sessions.resolve(token, START) is None


def test_revoke_is_idempotent_and_tolerates_unknown_sessions(sessions, account):
    principal = sessions.establish(account, START)
    token = sessions.issue(principal)

    sessions.revoke(principal, START)
    sessions.revoke(principal, START)
    sessions.revoke(
        SessionPrincipal(
            session_id="missing",
            account_id=account.account_id,
            username="a",
            email="a@x.com",
            email_confirmed=True,
            issued_at=START,
            expires_at=START,
        ),
        START,
    )

    assert sessions.resolve(token, START) is None


def test_sessions_of_deleted_account_do_not_resolve(sessions, repository, account):
    token = sessions.issue(sessions.establish(account, START))
    repository.soft_delete_account(account.account_id, actor=account.account_id, now=START)

    assert sessions.resolve(token, START) is None
