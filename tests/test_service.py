from __future__ import annotations

import pytest

from recycle_identity.domain.contracts import RegisterAccountInput
from recycle_identity.domain.errors import InvalidTokenError, LockedOutError, LoginFailedError

PASSWORD = "Str0ng!pw"


def _register(service, email="a@x.com"):
    return service.register(RegisterAccountInput(username="a", email=email, password=PASSWORD))


def test_registration_is_unconfirmed_and_audited_without_plain_email(service, repository, clock):
    registration = _register(service)

    assert registration.account.email_confirmed is False
    assert registration.account.audit.created_at == clock.now()
    assert registration.confirmation_token
    event = repository.audit_log[-1]
    assert event.event_type == "account.registered"
    assert "a@x.com" not in str(event.metadata).lower()


def test_confirmation_cannot_be_replayed(service, repository):
    registration = _register(service)

    confirmed = service.confirm_email("a@x.com", registration.confirmation_token)
    assert confirmed.email_confirmed is True
    assert repository.accounts[confirmed.account_id].audit.modified_by == confirmed.account_id

    with pytest.raises(InvalidTokenError):
        service.confirm_email("a@x.com", registration.confirmation_token)


def test_concurrent_confirmation_loser_gets_invalid_token(service, repository, monkeypatch):
    registration = _register(service)
    repository.confirm_email(
        registration.account.account_id, actor="elsewhere", now=registration.account.audit.created_at
    )
    stale = registration.account
    monkeypatch.setattr(
        service.credentials, "find_by_normalized_email", lambda email, require_confirmed: stale
    )

    with pytest.raises(InvalidTokenError):
        service.confirm_email("a@x.com", registration.confirmation_token)


def test_unknown_login_audited_without_account(service, repository):
    with pytest.raises(LoginFailedError):
        service.login("ghost@x.com", PASSWORD)

    event = repository.audit_log[-1]
    assert event.event_type == "login.failed"
    assert event.account_id is None
    assert event.metadata["reason"] == "not_found"


def test_lockout_raises_distinct_internal_error(service, repository, settings):
    registration = _register(service)
    service.confirm_email("a@x.com", registration.confirmation_token)

    for _ in range(settings.lockout_max_failed_attempts - 1):
        with pytest.raises(LoginFailedError) as excinfo:
            service.login("a@x.com", "Wr0ng!pw")
        assert not isinstance(excinfo.value, LockedOutError)

    with pytest.raises(LockedOutError) as excinfo:
        service.login("a@x.com", "Wr0ng!pw")
    assert excinfo.value.lockout_ends_at is not None
    assert "login.locked_out" in repository.event_types()


def test_login_issues_session_that_logout_revokes(service):
    registration = _register(service)
    service.confirm_email("a@x.com", registration.confirmation_token)

    issued = service.login("a@x.com", PASSWORD)
    assert service.resolve_session(issued.token) == issued.principal

    service.logout(issued.principal)
    service.logout(issued.principal)
    assert service.resolve_session(issued.token) is None
