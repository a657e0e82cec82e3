"""
Data models for multi-source reconciliation.

Defines the source priority enum, per-source status, normalized source
records, merged views with field provenance, the sync session guard, and the
payloads published on the event bus.

Example:
    >>> from ironsync.core.reconcile.models import SourceKind, SourceRecord
    >>> record = SourceRecord(
    ...     source=SourceKind.PRIMARY,
    ...     identity="Zezima",
    ...     fields={"total_level": 2277},
    ... )
    >>> record.key
    'zezima'
    >>> SourceKind.in_priority_order()[0]
    <SourceKind.PRIMARY: 'primary'>
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

_WHITESPACE = re.compile(r"\s+")


def normalize_identity(identity: str) -> str:
    """
    Canonical, case-insensitive key for an identity.

    Trims, collapses internal whitespace and case-folds. Idempotent:
    ``normalize_identity(normalize_identity(x)) == normalize_identity(x)``.
    """
    return _WHITESPACE.sub(" ", identity.strip()).casefold()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SourceKind(str, Enum):
    """Data sources, declared in trust order (highest first)."""

    PRIMARY = "primary"
    SECONDARY = "secondary"
    REFERENCE = "reference"

    @property
    def priority(self) -> int:
        """Rank of the source; 0 is the most trusted."""
        return _PRIORITY[self]

    @classmethod
    def in_priority_order(cls) -> list["SourceKind"]:
        return sorted(cls, key=lambda kind: kind.priority)


_PRIORITY = {SourceKind.PRIMARY: 0, SourceKind.SECONDARY: 1, SourceKind.REFERENCE: 2}


class SourceStatus(BaseModel):
    """
    Health of one data source.

    Written only by the adapter that owns it; read by the UI through the
    engine.

    Attributes:
        enabled: Whether the source is consulted at all
        last_success_at: Time of the last successful call
        last_error: Message of the most recent failure (cleared on success)
        last_attempt_at: Time of the last call, successful or not
    """

    enabled: bool = True
    last_success_at: datetime | None = None
    last_error: str | None = None
    last_attempt_at: datetime | None = None

    model_config = ConfigDict(populate_by_name=True)


class SourceRecord(BaseModel):
    """
    One source's normalized payload for one identity.

    Attributes:
        source: Source that produced the record
        identity: Identity as the caller supplied it
        fields: Normalized field values (None means "no value")
        enrichment_keys: Target field -> reference lookup name, for fields the
            reference source can fill when no higher source does
        fetched_at: When the record was produced
        raw: Original response body, kept for debugging
    """

    source: SourceKind
    identity: str
    fields: dict[str, Any] = Field(default_factory=dict)
    enrichment_keys: dict[str, str] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=utcnow)
    raw: dict[str, Any] | None = Field(default=None, exclude=True)

    @property
    def key(self) -> str:
        return normalize_identity(self.identity)


class MergedView(BaseModel):
    """
    The reconciled record for one identity.

    Attributes:
        identity: Display identity
        fields: Field values resolved by priority
        field_source: Exact source that supplied each field in ``fields``
        sources_present: Sources that returned a record for this identity
        source_errors: Source name -> error message for sources that failed
        synced_at: When the view was computed
        stale: True when this is a last-known view served after a failure
        error: Message shown when no data could be produced
    """

    identity: str
    fields: dict[str, Any] = Field(default_factory=dict)
    field_source: dict[str, SourceKind] = Field(default_factory=dict)
    sources_present: list[SourceKind] = Field(default_factory=list)
    source_errors: dict[str, str] = Field(default_factory=dict)
    synced_at: datetime = Field(default_factory=utcnow)
    stale: bool = False
    error: str | None = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def key(self) -> str:
        return normalize_identity(self.identity)

    @property
    def is_empty(self) -> bool:
        return not self.fields

    def get(self, field: str, default: Any = None) -> Any:
        return self.fields.get(field, default)

    def source_of(self, field: str) -> SourceKind | None:
        return self.field_source.get(field)

    @classmethod
    def placeholder(cls, identity: str, error: str) -> "MergedView":
        """Empty view standing in for an identity that could not be synced."""
        return cls(identity=identity, error=error, stale=True)


class EntityRecord(BaseModel):
    """
    Everything known about one identity across sources.

    ``merged_view`` is derived from ``per_source`` and is replaced, never
    edited, whenever a per-source entry changes.
    """

    identity: str
    per_source: dict[SourceKind, SourceRecord | None] = Field(default_factory=dict)
    merged_view: MergedView | None = None

    @property
    def key(self) -> str:
        return normalize_identity(self.identity)

    def reset(self) -> None:
        """Forget every source's data (sign-out)."""
        self.per_source = {}
        self.merged_view = None


class SyncSession(BaseModel):
    """
    Guard preventing overlapping group syncs.

    Attributes:
        in_progress: True while a group sync is running
        last_completed_at: When the last group sync finished (success or not)
    """

    in_progress: bool = False
    last_completed_at: datetime | None = None


class EntitySyncStatus(BaseModel):
    """Outcome of one identity within a group sync."""

    identity: str
    status: Literal["ok", "stale", "error"]
    error: str | None = None


class EntityUpdatedEvent(BaseModel):
    """Payload of the ``entity-updated`` topic."""

    identity: str
    merged_view: MergedView
    field_source: dict[str, SourceKind]
    changed_fields: list[str] = Field(default_factory=list)


class GroupSyncedEvent(BaseModel):
    """Payload of the ``group-synced`` topic."""

    count: int
    timestamp: datetime
    per_entity_status: list[EntitySyncStatus] = Field(default_factory=list)


class SourceStatusChangedEvent(BaseModel):
    """Payload of the ``source-status-changed`` topic."""

    source: SourceKind
    status: SourceStatus


__all__ = [
    "normalize_identity",
    "SourceKind",
    "SourceStatus",
    "SourceRecord",
    "MergedView",
    "EntityRecord",
    "SyncSession",
    "EntitySyncStatus",
    "EntityUpdatedEvent",
    "GroupSyncedEvent",
    "SourceStatusChangedEvent",
]
