"""Audit and soft-delete provenance embedded in every persisted entity."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Protocol, TypeVar

from .errors import InvalidStateError

SYSTEM_ACTOR = "system"


@dataclass(slots=True)
class TrackableRecord:
    """Creation, modification and deletion stamps for one persisted row.

    Entities hold a ``TrackableRecord`` as their ``audit`` attribute and call
    the stamping methods on it rather than setting the fields themselves.
    """

    created_at: datetime | None = None
    created_by: str | None = None
    modified_at: datetime | None = None
    modified_by: str | None = None
    deleted_at: datetime | None = None
    deleted_by: str | None = None

    @property
    def is_created(self) -> bool:
        return self.created_at is not None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def stamp_create(self, actor: str, now: datetime) -> None:
        """Record insertion provenance. Must be called exactly once per record."""
        if self.is_created:
            raise InvalidStateError("record has already been stamped as created")
        self.created_at = now
        self.created_by = actor
        self.modified_at = now
        self.modified_by = actor

    def stamp_modify(self, actor: str, now: datetime) -> None:
        if not self.is_created:
            raise InvalidStateError("cannot modify a record that was never created")
        self.modified_at = now
        self.modified_by = actor

    def mark_deleted(self, actor: str, now: datetime) -> bool:
        """Logically delete the record.

        Returns ``False`` when the record was already deleted; the original
        deletion provenance is kept in that case.
        """
        if self.is_deleted:
            return False
        self.stamp_modify(actor, now)
        self.deleted_at = now
        self.deleted_by = actor
        return True

    @classmethod
    def created(cls, actor: str, now: datetime) -> "TrackableRecord":
        record = cls()
        record.stamp_create(actor, now)
        return record


class Trackable(Protocol):
    audit: TrackableRecord


T = TypeVar("T", bound=Trackable)


def filter_visible(records: Iterable[T]) -> list[T]:
    """Return only the records that have not been logically deleted."""
    return [record for record in records if not record.audit.is_deleted]
