from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import jwt
import pytest

from recycle_identity.domain.account import Account
from recycle_identity.domain.errors import InvalidTokenError
from recycle_identity.domain.trackable import TrackableRecord
from recycle_identity.security.tokens import (
    EMAIL_CONFIRMATION,
    ConfirmationTokens,
    generate_session_token,
    hash_session_token,
)

from conftest import START


@pytest.fixture
def tokens() -> ConfirmationTokens:
    return ConfirmationTokens(secret="test-secret", issuer="recycle.identity", ttl_seconds=3600)


@pytest.fixture
def account() -> Account:
    return Account(
        account_id="2f1d8c1e-0000-4000-8000-000000000001",
        username="a",
        email="a@x.com",
        normalized_email="A@X.COM",
        password_hash="unused",
        audit=TrackableRecord.created("system", START),
    )


def test_token_validates_for_issued_account_and_purpose(tokens, account):
    token = tokens.issue(account, EMAIL_CONFIRMATION, START)
    tokens.validate(account, EMAIL_CONFIRMATION, token, START + timedelta(minutes=10))


def test_token_claims_do_not_contain_plain_email(tokens, account):
    token = tokens.issue(account, EMAIL_CONFIRMATION, START)
    claims = jwt.decode(token, options={"verify_signature": False})

    assert claims["sub"] == account.account_id
    assert claims["purpose"] == EMAIL_CONFIRMATION
    assert "a@x.com" not in str(claims).lower()


def test_tokens_are_unique_per_issue(tokens, account):
    assert tokens.issue(account, EMAIL_CONFIRMATION, START) != tokens.issue(account, EMAIL_CONFIRMATION, START)


def test_token_rejected_for_other_purpose(tokens, account):
    token = tokens.issue(account, "password-reset", START)
    with pytest.raises(InvalidTokenError):
        tokens.validate(account, EMAIL_CONFIRMATION, token, START)


def test_token_rejected_for_other_account(tokens, account):
    other = replace(account, account_id="2f1d8c1e-0000-4000-8000-000000000002")
    token = tokens.issue(other, EMAIL_CONFIRMATION, START)
    with pytest.raises(InvalidTokenError):
        tokens.validate(account, EMAIL_CONFIRMATION, token, START)


def test_token_rejected_after_email_change(tokens, account):
    token = tokens.issue(account, EMAIL_CONFIRMATION, START)
    moved = replace(account, email="b@x.com", normalized_email="B@X.COM")
    with pytest.raises(InvalidTokenError):
        tokens.validate(moved, EMAIL_CONFIRMATION, token, START)


def test_token_expiry_follows_supplied_clock(tokens, account):
    token = tokens.issue(account, EMAIL_CONFIRMATION, START)
    tokens.validate(account, EMAIL_CONFIRMATION, token, START + timedelta(seconds=3599))
    with pytest.raises(InvalidTokenError):
        tokens.validate(account, EMAIL_CONFIRMATION, token, START + timedelta(seconds=3600))


@pytest.mark.parametrize("token", ["", "garbage", "a.b.c"])
def test_malformed_tokens_rejected(tokens, account, token):
    with pytest.raises(InvalidTokenError):
        tokens.validate(account, EMAIL_CONFIRMATION, token, START)


def test_token_signed_with_other_secret_rejected(tokens, account):
    forged = ConfirmationTokens(secret="attacker", issuer="recycle.identity", ttl_seconds=3600)
    token = forged.issue(account, EMAIL_CONFIRMATION, START)
    with pytest.raises(InvalidTokenError):
        tokens.validate(account, EMAIL_CONFIRMATION, token, START)


def test_session_token_hash_matches_generated_pair():
    token, token_hash = generate_session_token()
    assert hash_session_token(token) == token_hash
    assert token != token_hash
