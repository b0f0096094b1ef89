"""Database repository for identity/account data."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Tuple

from psycopg import errors as pg_errors
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account
from .domain.errors import DuplicateEmailError
from .tracking import AUDIT_COLUMNS, TrackedTable, audit_from_row, audit_params

logger = logging.getLogger(__name__)

ACCOUNTS = TrackedTable(
    "accounts",
    key="account_id",
    columns=(
        "account_id",
        "username",
        "email",
        "normalized_email",
        "password_hash",
        "email_confirmed",
        "failed_login_count",
        "lockout_ends_at",
    ),
)

_ACCOUNT_FIELDS = len(ACCOUNTS.columns)


@dataclass(slots=True)
class SessionRecord:
    """DTO mapping the sessions table for repository consumers."""

    session_id: str
    account_id: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: datetime | None


@dataclass(slots=True)
class AuditLogRecord:
    """Row projection for items in identity_audit_log."""

    audit_id: int
    account_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AccountRepository:
    """Postgres-backed account persistence.

    Each public method uses one pooled connection and one transaction, so a
    failure part way through a method leaves nothing behind.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def insert_account(self, account: Account) -> Account:
        """Persist a fully formed account (identity and password hash) in one INSERT.

        The partial unique index on ``normalized_email`` is the authoritative
        duplicate guard; a violation surfaces as ``DuplicateEmailError``.
        """
        params = {
            "account_id": account.account_id,
            "username": account.username,
            "email": account.email,
            "normalized_email": account.normalized_email,
            "password_hash": account.password_hash,
            "email_confirmed": account.email_confirmed,
            "failed_login_count": account.failed_login_count,
            "lockout_ends_at": account.lockout_ends_at,
            **audit_params(account.audit),
        }
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(ACCOUNTS.insert(), params)
                    row = cur.fetchone()
                conn.commit()
        except pg_errors.UniqueViolation as exc:
            logger.warning("duplicate account insert rejected by unique index")
            raise DuplicateEmailError() from exc
        return self._map_account(row)

    def find_account_by_normalized_email(
        self, normalized_email: str, *, email_confirmed: bool
    ) -> Account | None:
        """Return the live account for the email in the requested confirmation state."""
        sql = ACCOUNTS.select(["normalized_email = %(email)s", "email_confirmed = %(confirmed)s"])
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(sql, {"email": normalized_email, "confirmed": email_confirmed})
                row = cur.fetchone()
        return self._map_account(row) if row else None

    def get_account(self, account_id: str) -> Account | None:
        """Fetch a live account by identifier or return ``None``."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(ACCOUNTS.select(["account_id = %(key)s"]), {"key": account_id})
                row = cur.fetchone()
        return self._map_account(row) if row else None

    def confirm_email(self, account_id: str, *, actor: str, now: datetime) -> bool:
        """Flip ``email_confirmed`` once; returns ``False`` if it was already set."""
        sql = ACCOUNTS.update(
            ["email_confirmed = TRUE"],
            ["email_confirmed = FALSE"],
            returning=["account_id"],
        )
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, {"key": account_id, "modified_at": now, "modified_by": actor})
                confirmed = cur.fetchone() is not None
            conn.commit()
        return confirmed

    def record_failed_login(
        self,
        account_id: str,
        *,
        threshold: int,
        lockout_ends_at: datetime,
        actor: str,
        now: datetime,
    ) -> Tuple[int, datetime | None]:
        """Atomically count a failed attempt, starting a lockout at ``threshold``.

        Row locking on UPDATE serialises concurrent failures so no increment is
        lost. Attempts made while a lockout is active leave the row untouched
        apart from the modification stamp.
        """
        sql = ACCOUNTS.update(
            [
                """failed_login_count = CASE
                    WHEN lockout_ends_at IS NOT NULL AND lockout_ends_at > %(now)s THEN failed_login_count
                    WHEN failed_login_count + 1 >= %(threshold)s THEN 0
                    ELSE failed_login_count + 1
                END""",
                """lockout_ends_at = CASE
                    WHEN lockout_ends_at IS NOT NULL AND lockout_ends_at > %(now)s THEN lockout_ends_at
                    WHEN failed_login_count + 1 >= %(threshold)s THEN %(lockout_ends_at)s
                    ELSE lockout_ends_at
                END""",
            ],
            returning=["failed_login_count", "lockout_ends_at"],
        )
        params = {
            "key": account_id,
            "now": now,
            "threshold": threshold,
            "lockout_ends_at": lockout_ends_at,
            "modified_at": now,
            "modified_by": actor,
        }
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            conn.commit()
        if row is None:
            return 0, None
        return row[0], row[1]

    def clear_failed_logins(self, account_id: str, *, actor: str, now: datetime) -> bool:
        """Reset the failure counters unless a lockout is active at ``now``.

        Returns ``False`` when the row is locked, including a lockout set by a
        concurrent failure after the caller read the account.
        """
        sql = ACCOUNTS.update(
            ["failed_login_count = 0", "lockout_ends_at = NULL"],
            ["(lockout_ends_at IS NULL OR lockout_ends_at <= %(now)s)"],
            returning=["account_id"],
        )
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(sql, {"key": account_id, "now": now, "modified_at": now, "modified_by": actor})
                row = cur.fetchone()
            conn.commit()
        return row is not None

    def update_password_hash(
        self, account_id: str, password_hash: str, *, actor: str, now: datetime
    ) -> None:
        sql = ACCOUNTS.update(["password_hash = %(password_hash)s"])
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    {
                        "key": account_id,
                        "password_hash": password_hash,
                        "modified_at": now,
                        "modified_by": actor,
                    },
                )
            conn.commit()

    def soft_delete_account(self, account_id: str, *, actor: str, now: datetime) -> bool:
        """Logically delete the account and revoke its sessions in one transaction."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    ACCOUNTS.soft_delete(),
                    {"key": account_id, "deleted_at": now, "deleted_by": actor},
                )
                deleted = cur.fetchone() is not None
                cur.execute(
                    """
                    UPDATE sessions
                    SET revoked_at = %s
                    WHERE account_id = %s AND revoked_at IS NULL
                    """,
                    (now, account_id),
                )
            conn.commit()
        return deleted

    def _map_account(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        return Account(
            account_id=str(row[0]),
            username=row[1],
            email=row[2],
            normalized_email=row[3],
            password_hash=row[4],
            email_confirmed=row[5],
            failed_login_count=row[6],
            lockout_ends_at=row[7],
            audit=audit_from_row(row[_ACCOUNT_FIELDS : _ACCOUNT_FIELDS + len(AUDIT_COLUMNS)]),
        )

    def create_session(
        self,
        *,
        session_id: str,
        account_id: str,
        token_hash: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> None:
        """Persist a hashed session token associated with an account."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO sessions (session_id, account_id, token_hash, issued_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (session_id, account_id, token_hash, issued_at, expires_at),
                )
            conn.commit()

    def find_session(self, token_hash: str) -> tuple[SessionRecord, Account] | None:
        """Return an unrevoked session and its live account for the provided hash."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT s.session_id, s.account_id, s.issued_at, s.expires_at, s.revoked_at,
                           {ACCOUNTS.qualified_select_list('a')}
                    FROM sessions s
                    JOIN accounts a ON a.account_id = s.account_id AND a.deleted_at IS NULL
                    WHERE s.token_hash = %s AND s.revoked_at IS NULL
                    """,
                    (token_hash,),
                )
                row = cur.fetchone()
        if not row:
            return None
        record = SessionRecord(str(row[0]), str(row[1]), row[2], row[3], row[4])
        return record, self._map_account(row[5:])

    def revoke_session(self, session_id: str, *, now: datetime) -> None:
        """Mark the given session as revoked; already revoked sessions are left alone."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE sessions
                    SET revoked_at = %s
                    WHERE session_id = %s AND revoked_at IS NULL
                    """,
                    (now, session_id),
                )
            conn.commit()

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        now: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry capturing identity workflow activity."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO identity_audit_log (account_id, event_type, actor, metadata, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (account_id, event_type, actor, Json(metadata or {}), now),
                )
            conn.commit()

    def list_audit_events(
        self,
        *,
        account_id: str,
        event_type: str | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[Tuple[datetime, int]]]:
        """Return audit log entries for one account with cursor pagination."""
        limit = max(1, min(limit, 100))
        clauses = ["account_id = %s"]
        params: list[Any] = [account_id]

        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT audit_id, account_id, event_type, actor, metadata, created_at
            FROM identity_audit_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit)

        records: list[AuditLogRecord] = []
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                for row in cur.fetchall():
                    records.append(
                        AuditLogRecord(
                            audit_id=row[0],
                            account_id=str(row[1]) if row[1] else None,
                            event_type=row[2],
                            actor=row[3],
                            metadata=row[4] or {},
                            created_at=row[5],
                        )
                    )

        next_cursor: Tuple[datetime, int] | None = None
        if len(records) == limit:
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor
