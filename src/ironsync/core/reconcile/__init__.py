"""
Multi-source reconciliation.

Merges member data from the plugin feed (PRIMARY), Wise Old Man (SECONDARY)
and the OSRS Wiki (REFERENCE) under a strict priority order, with per-source
caching, fallback and field provenance.
"""

from ironsync.core.reconcile.engine import ReconciliationEngine
from ironsync.core.reconcile.enrichment import REFERENCE_DATA_FIELD, EnrichmentPipeline
from ironsync.core.reconcile.exceptions import (
    AllSourcesFailedError,
    EntityNotFoundError,
    MalformedPayloadError,
    MergeInputInvalidError,
    ReconcileError,
    SnapshotError,
    SourceError,
    SourceUnavailableError,
    SyncInProgressError,
)
from ironsync.core.reconcile.merge import changed_fields, merge_records
from ironsync.core.reconcile.models import (
    EntityRecord,
    EntitySyncStatus,
    EntityUpdatedEvent,
    GroupSyncedEvent,
    MergedView,
    SourceKind,
    SourceRecord,
    SourceStatus,
    SourceStatusChangedEvent,
    SyncSession,
    normalize_identity,
)
from ironsync.core.reconcile.scheduler import PeriodicSync
from ironsync.core.reconcile.snapshot import SnapshotStore
from ironsync.core.reconcile.sources import (
    PluginSource,
    SourceAdapter,
    WikiSource,
    WiseOldManSource,
    build_adapters,
)

__all__ = [
    # Engine
    "ReconciliationEngine",
    "EnrichmentPipeline",
    "PeriodicSync",
    "SnapshotStore",
    "REFERENCE_DATA_FIELD",
    # Merge
    "merge_records",
    "changed_fields",
    # Adapters
    "SourceAdapter",
    "PluginSource",
    "WiseOldManSource",
    "WikiSource",
    "build_adapters",
    # Models
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
    "normalize_identity",
    # Exceptions
    "ReconcileError",
    "SourceError",
    "SourceUnavailableError",
    "EntityNotFoundError",
    "MalformedPayloadError",
    "MergeInputInvalidError",
    "SyncInProgressError",
    "AllSourcesFailedError",
    "SnapshotError",
]
