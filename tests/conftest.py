from __future__ import annotations

import copy
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from recycle_identity.api import routes
from recycle_identity.config import Settings
from recycle_identity.domain.account import Account
from recycle_identity.domain.errors import DuplicateEmailError
from recycle_identity.domain.service import AccountService
from recycle_identity.repository import AuditLogRecord, SessionRecord

START = datetime(2024, 11, 6, 10, 6, 14, tzinfo=timezone.utc)


class FixedClock:
    """Deterministic clock advanced explicitly by tests."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@dataclass
class FakeSession:
    session_id: str
    account_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: datetime | None = None


class FakeRepository:
    """In-memory repository mimicking the Postgres-backed behaviors.

    Writes happen under one lock, the live-email uniqueness check stands in for
    the partial unique index, and callers always receive copies so in-memory
    mutations never leak into "stored" rows.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.accounts: dict[str, Account] = {}
        self.sessions: dict[str, FakeSession] = {}
        self.audit_log: list[AuditLogRecord] = []
        self._audit_seq = 0

    def _live(self, account_id: str) -> Account | None:
        account = self.accounts.get(account_id)
        if account is None or account.audit.is_deleted:
            return None
        return account

    def insert_account(self, account: Account) -> Account:
        with self._lock:
            for stored in self.accounts.values():
                if not stored.audit.is_deleted and stored.normalized_email == account.normalized_email:
                    raise DuplicateEmailError()
            self.accounts[account.account_id] = copy.deepcopy(account)
            return copy.deepcopy(account)

    def find_account_by_normalized_email(self, normalized_email: str, *, email_confirmed: bool):
        for account in self.accounts.values():
            if (
                not account.audit.is_deleted
                and account.normalized_email == normalized_email
                and account.email_confirmed == email_confirmed
            ):
                return copy.deepcopy(account)
        return None

    def get_account(self, account_id: str):
        account = self._live(account_id)
        return copy.deepcopy(account) if account else None

    def confirm_email(self, account_id: str, *, actor: str, now: datetime) -> bool:
        with self._lock:
            account = self._live(account_id)
            if account is None or account.email_confirmed:
                return False
            account.email_confirmed = True
            account.audit.stamp_modify(actor, now)
            return True

    def record_failed_login(self, account_id, *, threshold, lockout_ends_at, actor, now):
        with self._lock:
            account = self._live(account_id)
            if account is None:
                return 0, None
            if not account.is_locked_out(now):
                if account.failed_login_count + 1 >= threshold:
                    account.failed_login_count = 0
                    account.lockout_ends_at = lockout_ends_at
                else:
                    account.failed_login_count += 1
            account.audit.stamp_modify(actor, now)
            return account.failed_login_count, account.lockout_ends_at

    def clear_failed_logins(self, account_id: str, *, actor: str, now: datetime) -> bool:
        with self._lock:
            account = self._live(account_id)
            if account is None or account.is_locked_out(now):
                return False
            account.failed_login_count = 0
            account.lockout_ends_at = None
            account.audit.stamp_modify(actor, now)
            return True

    def update_password_hash(self, account_id, password_hash, *, actor, now) -> None:
        with self._lock:
            account = self._live(account_id)
            if account is not None:
                account.password_hash = password_hash
                account.audit.stamp_modify(actor, now)

    def soft_delete_account(self, account_id: str, *, actor: str, now: datetime) -> bool:
        with self._lock:
            account = self._live(account_id)
            if account is None:
                return False
            account.audit.mark_deleted(actor, now)
            for session in self.sessions.values():
                if session.account_id == account_id and session.revoked_at is None:
                    session.revoked_at = now
            return True

    def create_session(self, *, session_id, account_id, token_hash, issued_at, expires_at) -> None:
        self.sessions[token_hash] = FakeSession(session_id, account_id, token_hash, issued_at, expires_at)

    def find_session(self, token_hash: str):
        session = self.sessions.get(token_hash)
        if session is None or session.revoked_at is not None:
            return None
        account = self._live(session.account_id)
        if account is None:
            return None
        record = SessionRecord(
            session_id=session.session_id,
            account_id=session.account_id,
            issued_at=session.issued_at,
            expires_at=session.expires_at,
            revoked_at=session.revoked_at,
        )
        return record, copy.deepcopy(account)

    def revoke_session(self, session_id: str, *, now: datetime) -> None:
        for session in self.sessions.values():
            if session.session_id == session_id and session.revoked_at is None:
                session.revoked_at = now

    def write_audit_event(self, *, account_id, event_type, actor, now, metadata=None) -> None:
        self._audit_seq += 1
        self.audit_log.append(
            AuditLogRecord(
                audit_id=self._audit_seq,
                account_id=account_id,
                event_type=event_type,
                actor=actor,
                metadata=metadata or {},
                created_at=now,
            )
        )

    def list_audit_events(self, *, account_id, event_type=None, limit=50, cursor=None):
        results = [record for record in self.audit_log if record.account_id == account_id]
        if event_type:
            results = [record for record in results if record.event_type == event_type]
        results.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        if cursor:
            results = [record for record in results if (record.created_at, record.audit_id) < cursor]
        slice_ = results[:limit]
        next_cursor = None
        if slice_ and len(slice_) == limit:
            last = slice_[-1]
            next_cursor = (last.created_at, last.audit_id)
        return slice_, next_cursor

    def event_types(self) -> list[str]:
        return [record.event_type for record in self.audit_log]


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        token_secret="test-secret",
        lockout_max_failed_attempts=3,
        lockout_duration_seconds=300,
        lockout_exposed=False,
    )


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def service(repository, clock, settings) -> AccountService:
    return AccountService(repository, clock=clock, settings=settings)


@pytest.fixture
def api_client(service):
    """Provide a FastAPI test client with isolated state."""
    app = FastAPI()
    app.include_router(routes.router)
    routes.register_exception_handlers(app)
    app.state.account_service = service

    original_limiter = routes.rate_limiter
    routes.rate_limiter = routes.SlidingWindowRateLimiter(max_requests=1000, window_seconds=60)

    with TestClient(app) as client:
        yield client

    routes.rate_limiter = original_limiter
