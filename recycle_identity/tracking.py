"""SQL statement builder for tables that carry the trackable audit columns.

Repositories never write their own SELECT/UPDATE text for trackable tables;
they ask a ``TrackedTable`` for it so the deleted-row filter and the
modification stamp are always present.
"""

from __future__ import annotations

from typing import Any, Sequence

from .domain.errors import InvalidStateError
from .domain.trackable import TrackableRecord

AUDIT_COLUMNS: tuple[str, ...] = (
    "created_at",
    "created_by",
    "modified_at",
    "modified_by",
    "deleted_at",
    "deleted_by",
)

NOT_DELETED = "deleted_at IS NULL"


def exclude_deleted(where: Sequence[str] = ()) -> list[str]:
    """Return ``where`` with the logical-delete filter appended."""
    clauses = list(where)
    if NOT_DELETED not in clauses:
        clauses.append(NOT_DELETED)
    return clauses


def audit_params(record: TrackableRecord) -> dict[str, Any]:
    """Map a stamped record onto the named parameters used by ``TrackedTable.insert``."""
    if not record.is_created:
        raise InvalidStateError("record must be stamped before it is persisted")
    return {column: getattr(record, column) for column in AUDIT_COLUMNS}


def audit_from_row(row: Sequence[Any]) -> TrackableRecord:
    """Build a record from the six audit columns in ``AUDIT_COLUMNS`` order."""
    return TrackableRecord(*row)


class TrackedTable:
    """Builds statements for one trackable table using ``%(name)s`` parameters."""

    def __init__(self, name: str, key: str, columns: Sequence[str]) -> None:
        self.name = name
        self.key = key
        self.columns = tuple(columns)

    @property
    def select_list(self) -> str:
        return ", ".join((*self.columns, *AUDIT_COLUMNS))

    def qualified_select_list(self, alias: str) -> str:
        """Column list prefixed with ``alias`` for use in joins."""
        return ", ".join(f"{alias}.{column}" for column in (*self.columns, *AUDIT_COLUMNS))

    def select(
        self,
        where: Sequence[str] = (),
        *,
        order_by: str | None = None,
        limit: bool = False,
        for_update: bool = False,
    ) -> str:
        sql = f"SELECT {self.select_list} FROM {self.name} WHERE {' AND '.join(exclude_deleted(where))}"
        if order_by:
            sql += f" ORDER BY {order_by}"
        if limit:
            sql += " LIMIT %(limit)s"
        if for_update:
            sql += " FOR UPDATE"
        return sql

    def insert(self) -> str:
        names = (*self.columns, *AUDIT_COLUMNS)
        placeholders = ", ".join(f"%({name})s" for name in names)
        return (
            f"INSERT INTO {self.name} ({', '.join(names)}) VALUES ({placeholders}) "
            f"RETURNING {self.select_list}"
        )

    def update(
        self,
        assignments: Sequence[str],
        where: Sequence[str] = (),
        *,
        returning: Sequence[str] = (),
    ) -> str:
        """UPDATE live rows matching ``where`` and refresh the modification stamp.

        The caller must pass ``modified_at`` and ``modified_by`` parameters.
        """
        sets = [*assignments, "modified_at = %(modified_at)s", "modified_by = %(modified_by)s"]
        sql = (
            f"UPDATE {self.name} SET {', '.join(sets)} "
            f"WHERE {' AND '.join(exclude_deleted([f'{self.key} = %(key)s', *where]))}"
        )
        if returning:
            sql += f" RETURNING {', '.join(returning)}"
        return sql

    def soft_delete(self) -> str:
        """Mark a live row deleted; expects ``key``, ``deleted_at`` and ``deleted_by``."""
        return (
            f"UPDATE {self.name} SET deleted_at = %(deleted_at)s, deleted_by = %(deleted_by)s, "
            f"modified_at = %(deleted_at)s, modified_by = %(deleted_by)s "
            f"WHERE {self.key} = %(key)s AND {NOT_DELETED} "
            f"RETURNING {self.key}"
        )
