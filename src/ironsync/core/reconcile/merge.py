"""
Field-by-field priority merge with provenance.

A field's merged value is the first non-null value found scanning sources in
priority order (PRIMARY -> SECONDARY -> REFERENCE). Conflicting non-null
values are never combined: the higher-priority source wins outright. Every
merged field records exactly which source supplied it.

Reference data is keyed differently from the other sources: records flag
*target fields* the reference source can fill (``enrichment_keys``), and the
looked-up reference record becomes the value of that field when no higher
source supplied one.

Example:
    >>> primary = SourceRecord(source=SourceKind.PRIMARY, identity="a", fields={"level": 80})
    >>> secondary = SourceRecord(
    ...     source=SourceKind.SECONDARY, identity="a", fields={"level": 75, "xp": 1_000_000}
    ... )
    >>> view = merge_records("a", {SourceKind.PRIMARY: primary, SourceKind.SECONDARY: secondary})
    >>> view.fields
    {'level': 80, 'xp': 1000000}
    >>> view.field_source["xp"]
    <SourceKind.SECONDARY: 'secondary'>
"""

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from ironsync.core.reconcile.exceptions import SourceError
from ironsync.core.reconcile.models import MergedView, SourceKind, SourceRecord, utcnow


def merge_records(
    identity: str,
    records: Mapping[SourceKind, SourceRecord | None],
    *,
    reference_lookups: Mapping[str, SourceRecord | None] | None = None,
    errors: Mapping[SourceKind, SourceError] | None = None,
    synced_at: datetime | None = None,
) -> MergedView:
    """
    Merge per-source records into one view.

    A source that is missing from ``records`` or maps to None (not found or
    failed) contributes nothing, so the next source in priority order fills
    its fields for this merge only.

    Args:
        identity: Identity being merged
        records: Source -> record (None when the source yielded nothing)
        reference_lookups: Target field -> reference record for flagged fields
        errors: Source -> error for sources that failed during this sync
        synced_at: Timestamp for the view (defaults to now)

    Returns:
        The merged view with field provenance
    """
    fields: dict[str, Any] = {}
    field_source: dict[str, SourceKind] = {}
    present: list[SourceKind] = []

    for kind in SourceKind.in_priority_order():
        record = records.get(kind)
        if record is None:
            continue
        present.append(kind)
        for field, value in record.fields.items():
            if value is None or field in fields:
                continue
            fields[field] = value
            field_source[field] = kind

    for field, reference in (reference_lookups or {}).items():
        if reference is None or field in fields:
            continue
        value = {k: v for k, v in reference.fields.items() if v is not None}
        if not value:
            continue
        fields[field] = value
        field_source[field] = SourceKind.REFERENCE
        if SourceKind.REFERENCE not in present:
            present.append(SourceKind.REFERENCE)

    return MergedView(
        identity=identity,
        fields=fields,
        field_source=field_source,
        sources_present=present,
        source_errors={kind.value: str(error) for kind, error in (errors or {}).items()},
        synced_at=synced_at or utcnow(),
    )


def pending_enrichment(
    records: Mapping[SourceKind, SourceRecord | None],
    fields: Mapping[str, Any],
) -> dict[str, str]:
    """
    Target fields flagged for reference lookup that are still unfilled.

    When several sources flag the same target field, the flag of the
    higher-priority source wins.

    Returns:
        Target field -> reference lookup name
    """
    pending: dict[str, str] = {}
    for kind in SourceKind.in_priority_order():
        record = records.get(kind)
        if record is None:
            continue
        for field, name in record.enrichment_keys.items():
            if fields.get(field) is None and field not in pending and name:
                pending[field] = name
    return pending


def changed_fields(previous: MergedView | None, current: MergedView) -> list[str]:
    """
    Fields whose value or provenance differ between two views.

    Every field of ``current`` counts as changed when there is no previous
    view; fields that disappeared are included too.
    """
    if previous is None:
        return sorted(current.fields)

    changed = []
    for field in set(previous.fields) | set(current.fields):
        if previous.fields.get(field) != current.fields.get(field):
            changed.append(field)
        elif previous.field_source.get(field) != current.field_source.get(field):
            changed.append(field)
    return sorted(changed)


__all__ = ["merge_records", "pending_enrichment", "changed_fields"]
