"""
Reconciliation engine.

Coordinates the three source adapters, merges their records under the
PRIMARY > SECONDARY > REFERENCE priority order, caches merged views per
identity, and publishes every change on the event bus.

The engine is constructed explicitly with its adapters and bus; one instance
belongs to one application session. It holds no timing policy of its own:
periodic refreshes are driven from outside (see ``PeriodicSync``).

Example:
    # Build an engine from adapters and a bus
    engine = ReconciliationEngine(
        primary=PluginSource("https://example.com/api", auth_token=token),
        secondary=WiseOldManSource(),
        reference=WikiSource(),
        bus=EventBus(),
    )

    # Reconcile one member (served from cache within the TTL)
    view = await engine.sync_entity("Zezima")
    print(view.fields["total_level"], view.field_source["total_level"])

    # Reconcile the whole group; one failing member never fails the group
    views = await engine.sync_group(["Zezima", "Lynx Titan"])

    # UI render path: cache-only, never touches the network
    view = engine.get_merged_view("zezima")
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from ironsync.core.cache import DEFAULT_TTL_SECONDS, TTLCache
from ironsync.core.events import (
    ENTITY_UPDATED,
    GROUP_SYNCED,
    SOURCE_STATUS_CHANGED,
    EventBus,
    RuntimeBroadcaster,
    Unsubscribe,
)
from ironsync.core.reconcile.enrichment import REFERENCE_DATA_FIELD, EnrichmentPipeline
from ironsync.core.reconcile.exceptions import (
    AllSourcesFailedError,
    MalformedPayloadError,
    ReconcileError,
    SourceError,
    SourceUnavailableError,
    SyncInProgressError,
)
from ironsync.core.reconcile.merge import changed_fields, merge_records, pending_enrichment
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
    utcnow,
)
from ironsync.core.reconcile.sources.base import SourceAdapter

logger = logging.getLogger(__name__)

# Plugin field holding worn items; each named item gets reference data
EQUIPMENT_FIELD = "equipment"


class ReconciliationEngine:
    """
    Multi-source reconciliation core.

    Attributes:
        bus: Event bus receiving entity, group and source status events
        enrichment: Pipeline used for reference lookups
        merged_ttl_seconds: Lifetime of cached merged views
    """

    def __init__(
        self,
        primary: SourceAdapter,
        secondary: SourceAdapter,
        reference: SourceAdapter,
        bus: EventBus | None = None,
        *,
        enrichment: EnrichmentPipeline | None = None,
        merged_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the engine with its collaborators.

        Args:
            primary: Live plugin feed adapter
            secondary: Statistics API adapter
            reference: Reference lookup adapter
            bus: Event bus (a private one, with its own broadcaster, is created if omitted)
            enrichment: Reference pipeline (built from ``reference`` if omitted)
            merged_ttl_seconds: Lifetime of cached merged views
            clock: Time source for the merged-view cache
        """
        self._adapters: dict[SourceKind, SourceAdapter] = {
            SourceKind.PRIMARY: primary,
            SourceKind.SECONDARY: secondary,
            SourceKind.REFERENCE: reference,
        }
        self.bus = bus if bus is not None else EventBus(broadcaster=RuntimeBroadcaster())
        self.enrichment = enrichment or EnrichmentPipeline(reference)
        self.merged_ttl_seconds = merged_ttl_seconds
        self._merged: TTLCache[MergedView] = TTLCache(merged_ttl_seconds, clock=clock)
        self._entities: dict[str, EntityRecord] = {}
        self._session = SyncSession()
        self._status_unsubscribers: list[Callable[[], None]] = []

        for adapter in self._adapters.values():
            add_listener = getattr(adapter, "add_status_listener", None)
            if callable(add_listener):
                self._status_unsubscribers.append(add_listener(self._on_source_status))

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def session(self) -> SyncSession:
        """A copy of the group sync session state."""
        return self._session.model_copy()

    def adapter(self, kind: SourceKind) -> SourceAdapter:
        return self._adapters[kind]

    def source_statuses(self) -> dict[SourceKind, SourceStatus]:
        """Current status of every source, in priority order."""
        return {kind: self._adapters[kind].status for kind in SourceKind.in_priority_order()}

    def get_merged_view(self, identity: str, allow_stale: bool = False) -> MergedView | None:
        """
        Cache-only read of an identity's merged view. Never performs I/O.

        Args:
            identity: Identity to read (case-insensitive)
            allow_stale: Return the last known view even after its TTL expired

        Returns:
            The merged view, or None if nothing (valid) is cached
        """
        key = normalize_identity(identity)
        view = self._merged.get(key)
        if view is not None or not allow_stale:
            return view
        entity = self._entities.get(key)
        if entity is None or entity.merged_view is None:
            return None
        return entity.merged_view.model_copy(update={"stale": True})

    def known_identities(self) -> list[str]:
        """Identities observed so far, in first-seen order."""
        return [entity.identity for entity in self._entities.values()]

    def list_merged_views(self, allow_stale: bool = True) -> list[MergedView]:
        """Merged views of every known identity that has one."""
        views = []
        for entity in self._entities.values():
            view = self.get_merged_view(entity.identity, allow_stale=allow_stale)
            if view is not None:
                views.append(view)
        return views

    def subscribe(self, callback: Callable[[EntityUpdatedEvent], None]) -> Unsubscribe:
        """Register a listener called after every merge-and-cache write."""
        return self.bus.subscribe(ENTITY_UPDATED, callback)

    # ------------------------------------------------------------------
    # Sync operations
    # ------------------------------------------------------------------

    async def sync_entity(self, identity: str, force_refresh: bool = False) -> MergedView:
        """
        Reconcile one identity.

        Returns a valid cached view without touching any adapter unless
        ``force_refresh`` is set.

        Raises:
            SyncInProgressError: While a group sync is running
            AllSourcesFailedError: If every consulted source failed
        """
        if self._session.in_progress:
            raise SyncInProgressError(
                "Group sync in progress; retry once it completes", identity=identity
            )
        return await self._sync_entity(identity, force_refresh)

    async def sync_group(
        self, identities: Sequence[str], force_refresh: bool = False
    ) -> list[MergedView]:
        """
        Reconcile a group of identities concurrently.

        A member that fails entirely is served from its last known view
        (marked stale) or an error placeholder; the group call itself only
        fails when another group sync is already running.

        Raises:
            SyncInProgressError: If a group sync is already in progress
        """
        if self._session.in_progress:
            raise SyncInProgressError(group_size=len(identities))

        self._session = SyncSession(
            in_progress=True, last_completed_at=self._session.last_completed_at
        )
        try:
            unique = _dedupe(identities)
            logger.info(f"Group sync started for {len(unique)} member(s)")
            results = await asyncio.gather(
                *(self._sync_entity(identity, force_refresh) for identity in unique),
                return_exceptions=True,
            )

            views: list[MergedView] = []
            statuses: list[EntitySyncStatus] = []
            for identity, result in zip(unique, results):
                if isinstance(result, MergedView):
                    views.append(result)
                    statuses.append(EntitySyncStatus(identity=identity, status="ok"))
                    continue
                if not isinstance(result, Exception):
                    raise result

                message = _public_message(result)
                logger.warning(f"Sync failed for group member '{identity}': {message}")
                fallback = self.get_merged_view(identity, allow_stale=True)
                if fallback is not None:
                    views.append(fallback.model_copy(update={"stale": True, "error": message}))
                    statuses.append(
                        EntitySyncStatus(identity=identity, status="stale", error=message)
                    )
                else:
                    views.append(MergedView.placeholder(identity, message))
                    statuses.append(
                        EntitySyncStatus(identity=identity, status="error", error=message)
                    )

            self.bus.publish(
                GROUP_SYNCED,
                GroupSyncedEvent(
                    count=len(views), timestamp=utcnow(), per_entity_status=statuses
                ),
            )
            ok = sum(1 for s in statuses if s.status == "ok")
            logger.info(f"Group sync finished: {ok}/{len(statuses)} member(s) up to date")
            return views
        finally:
            self._session = SyncSession(in_progress=False, last_completed_at=utcnow())

    async def _sync_entity(self, identity: str, force_refresh: bool) -> MergedView:
        key = normalize_identity(identity)
        if not key:
            raise ValueError("identity must not be empty")

        if not force_refresh:
            cached = self._merged.get(key)
            if cached is not None:
                logger.debug(f"Merged cache hit for '{identity}'")
                return cached
        else:
            for kind in (SourceKind.PRIMARY, SourceKind.SECONDARY):
                self._adapters[kind].invalidate(identity)

        records, errors = await self._fetch_primary_and_secondary(identity)

        attempted = [
            kind
            for kind in (SourceKind.PRIMARY, SourceKind.SECONDARY)
            if self._adapters[kind].enabled
        ]
        if attempted and all(kind in errors for kind in attempted):
            raise AllSourcesFailedError(identity, [errors[kind] for kind in attempted])

        entity = self._entity(identity)
        for kind, record in records.items():
            entity.per_source[kind] = record

        view = await self._merge(entity, errors)
        view = await self._enrich_equipment(view)
        # A view built while a source was failing is served once, not cached
        self._store(entity, view, cache=not errors)
        return view

    async def _fetch_primary_and_secondary(
        self, identity: str
    ) -> tuple[dict[SourceKind, SourceRecord | None], dict[SourceKind, SourceError]]:
        """Fetch both sources concurrently and wait for both to settle."""
        kinds = [
            kind
            for kind in (SourceKind.PRIMARY, SourceKind.SECONDARY)
            if self._adapters[kind].enabled
        ]
        results = await asyncio.gather(
            *(self._adapters[kind].fetch(identity) for kind in kinds),
            return_exceptions=True,
        )

        records: dict[SourceKind, SourceRecord | None] = {}
        errors: dict[SourceKind, SourceError] = {}
        for kind, result in zip(kinds, results):
            if isinstance(result, SourceError):
                errors[kind] = result
                records[kind] = None
            elif isinstance(result, Exception):
                adapter_name = getattr(self._adapters[kind], "name", kind.value)
                errors[kind] = SourceUnavailableError(adapter_name, str(result))
                records[kind] = None
            elif isinstance(result, BaseException):
                raise result
            else:
                records[kind] = result

        if SourceKind.PRIMARY in errors:
            logger.warning(
                f"Primary source failed for '{identity}', "
                f"falling back to secondary: {errors[SourceKind.PRIMARY]}"
            )
        return records, errors

    async def _merge(
        self,
        entity: EntityRecord,
        errors: Mapping[SourceKind, SourceError] | None = None,
    ) -> MergedView:
        """Merge an entity's per-source records, consulting REFERENCE for flagged fields."""
        records = {
            kind: record
            for kind, record in entity.per_source.items()
            if kind is not SourceKind.REFERENCE
        }
        first_pass = merge_records(entity.identity, records)
        pending = pending_enrichment(records, first_pass.fields)

        reference_lookups: dict[str, SourceRecord | None] = {}
        if pending:
            lookups = await self.enrichment.lookup(pending.values())
            reference_lookups = {field: lookups.get(name) for field, name in pending.items()}

        return merge_records(
            entity.identity,
            records,
            reference_lookups=reference_lookups,
            errors=errors,
        )

    async def _enrich_equipment(self, view: MergedView) -> MergedView:
        """
        Attach reference data to each named equipment item.

        Items whose lookup fails or finds nothing are left as they are, so
        the member's view never waits on or fails because of the reference
        source.
        """
        equipment = view.fields.get(EQUIPMENT_FIELD)
        slots = _equipment_slots(equipment)
        named = {
            slot: item
            for slot, item in (slots or {}).items()
            if isinstance(item, Mapping) and isinstance(item.get("name"), str)
        }
        if not named:
            return view

        enriched = await self.enrichment.enrich(list(named.values()), name_field="name")
        updated = dict(slots)
        for slot, item in zip(named, enriched):
            if item[REFERENCE_DATA_FIELD] is not None:
                updated[slot] = item

        fields = {**view.fields, EQUIPMENT_FIELD: _with_slots(equipment, updated)}
        return view.model_copy(update={"fields": fields})

    def _entity(self, identity: str) -> EntityRecord:
        key = normalize_identity(identity)
        entity = self._entities.get(key)
        if entity is None:
            entity = EntityRecord(identity=identity)
            self._entities[key] = entity
        return entity

    def _store(self, entity: EntityRecord, view: MergedView, cache: bool = True) -> None:
        """Write the merged view and publish it."""
        previous = entity.merged_view
        entity.merged_view = view
        if cache:
            self._merged.set(entity.key, view)
        else:
            self._merged.invalidate(entity.key)
            logger.debug(f"Not caching degraded view for '{view.identity}'")
        self.bus.publish(
            ENTITY_UPDATED,
            EntityUpdatedEvent(
                identity=view.identity,
                merged_view=view,
                field_source=dict(view.field_source),
                changed_fields=changed_fields(previous, view),
            ),
        )

    # ------------------------------------------------------------------
    # Inbound triggers
    # ------------------------------------------------------------------

    async def on_login_success(self, identity: str) -> MergedView | None:
        """Refresh the signed-in member. Failures are logged, not raised."""
        logger.info(f"Login detected for '{identity}', refreshing")
        try:
            return await self.sync_entity(identity, force_refresh=True)
        except ReconcileError as e:
            logger.warning(f"Refresh after login failed for '{identity}': {e}")
            return None

    def on_logout(self) -> None:
        """Forget every cached record and reset every source status."""
        logger.info("Logout detected, clearing all cached data")
        self._merged.clear()
        for entity in self._entities.values():
            entity.reset()
        for adapter in self._adapters.values():
            adapter.clear_cache()
            adapter.reset_status()

    def on_primary_feed_push(self, payload: Mapping[str, Any]) -> list[MergedView]:
        """
        Apply an unsolicited update from the primary feed.

        The payload is cached by the primary adapter and each affected
        identity is re-merged from the records already held; no network
        request is made (reference data comes only from earlier merges).

        Args:
            payload: One member object, or ``{"members": {name: member, ...}}``

        Returns:
            The re-merged views
        """
        primary = self._adapters[SourceKind.PRIMARY]
        views = []
        for member in _members_of(payload):
            try:
                record = primary.ingest(member)
            except MalformedPayloadError as e:
                logger.warning(f"Ignoring malformed primary push: {e}")
                continue

            entity = self._entity(record.identity)
            entity.per_source[SourceKind.PRIMARY] = record
            if entity.per_source.get(SourceKind.SECONDARY) is None:
                entity.per_source[SourceKind.SECONDARY] = self._adapters[
                    SourceKind.SECONDARY
                ].peek(record.identity)

            records = {
                kind: rec
                for kind, rec in entity.per_source.items()
                if kind is not SourceKind.REFERENCE
            }
            view = merge_records(
                entity.identity,
                records,
                reference_lookups=_previous_reference_fields(entity.merged_view),
            )
            view = _reuse_equipment_reference(entity.merged_view, view)
            self._store(entity, view)
            views.append(view)
        return views

    async def on_manual_refresh(
        self, identities: Iterable[str] | None = None, force: bool = True
    ) -> list[MergedView]:
        """
        Refresh the given identities, or every known identity.

        Raises:
            SyncInProgressError: If a group sync is already running
        """
        targets = list(identities) if identities is not None else self.known_identities()
        if not targets:
            return []
        return await self.sync_group(targets, force_refresh=force)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _on_source_status(self, kind: SourceKind, status: SourceStatus) -> None:
        self.bus.publish(
            SOURCE_STATUS_CHANGED, SourceStatusChangedEvent(source=kind, status=status)
        )

    async def aclose(self) -> None:
        """Detach from adapters and close any HTTP clients they own."""
        for unsubscribe in self._status_unsubscribers:
            unsubscribe()
        self._status_unsubscribers.clear()
        for adapter in self._adapters.values():
            aclose = getattr(adapter, "aclose", None)
            if callable(aclose):
                await aclose()


def _dedupe(identities: Iterable[str]) -> list[str]:
    seen: dict[str, str] = {}
    for identity in identities:
        key = normalize_identity(identity)
        if key and key not in seen:
            seen[key] = identity
    return list(seen.values())


def _public_message(error: Exception) -> str:
    """Error text safe to show in the UI (no tracebacks)."""
    if isinstance(error, ReconcileError):
        return error.message
    return f"Unexpected error: {type(error).__name__}"


def _members_of(payload: Mapping[str, Any]) -> list[dict[str, Any]]:
    members = payload.get("members")
    if isinstance(members, Mapping):
        result = []
        for name, member in members.items():
            if isinstance(member, Mapping):
                result.append({"name": name, **member})
        return result
    if isinstance(members, list):
        return [dict(m) for m in members if isinstance(m, Mapping)]
    return [dict(payload)]


def _equipment_slots(equipment: Any) -> dict[str, Any] | None:
    """Slot -> item mapping, for both ``{slot: item}`` and ``{"items": {slot: item}}``."""
    if not isinstance(equipment, Mapping):
        return None
    items = equipment.get("items")
    return dict(items) if isinstance(items, Mapping) else dict(equipment)


def _with_slots(equipment: Mapping[str, Any], slots: dict[str, Any]) -> dict[str, Any]:
    if isinstance(equipment.get("items"), Mapping):
        return {**equipment, "items": slots}
    return slots


def _reuse_equipment_reference(previous: MergedView | None, view: MergedView) -> MergedView:
    """Carry reference data over to pushed equipment items that were looked up before."""
    old_slots = _equipment_slots(previous.fields.get(EQUIPMENT_FIELD)) if previous else None
    equipment = view.fields.get(EQUIPMENT_FIELD)
    slots = _equipment_slots(equipment)
    if not old_slots or not slots:
        return view

    known = {
        item["name"]: item[REFERENCE_DATA_FIELD]
        for item in old_slots.values()
        if isinstance(item, Mapping) and item.get(REFERENCE_DATA_FIELD) is not None
    }
    updated = dict(slots)
    for slot, item in slots.items():
        if isinstance(item, Mapping) and item.get("name") in known:
            updated[slot] = {**item, REFERENCE_DATA_FIELD: known[item["name"]]}
    if updated == slots:
        return view

    fields = {**view.fields, EQUIPMENT_FIELD: _with_slots(equipment, updated)}
    return view.model_copy(update={"fields": fields})


def _previous_reference_fields(view: MergedView | None) -> dict[str, SourceRecord | None]:
    """Re-use reference values from the last merge so a push does not drop them."""
    if view is None:
        return {}
    return {
        field: SourceRecord(
            source=SourceKind.REFERENCE, identity=view.identity, fields=dict(value)
        )
        for field, value in view.fields.items()
        if view.field_source.get(field) is SourceKind.REFERENCE and isinstance(value, dict)
    }


__all__ = ["ReconciliationEngine"]
