"""Tests for ReconciliationEngine."""

import asyncio

import httpx
import pytest

from ironsync.core.events import (
    ENTITY_UPDATED,
    GROUP_SYNCED,
    SOURCE_STATUS_CHANGED,
    runtime_broadcaster,
)
from ironsync.core.reconcile.engine import ReconciliationEngine
from ironsync.core.reconcile.exceptions import (
    AllSourcesFailedError,
    SourceUnavailableError,
    SyncInProgressError,
)
from ironsync.core.reconcile.http import RetryConfig
from ironsync.core.reconcile.models import (
    EntityUpdatedEvent,
    GroupSyncedEvent,
    SourceKind,
    SourceStatusChangedEvent,
    normalize_identity,
)
from ironsync.core.reconcile.sources import PluginSource, WikiSource, WiseOldManSource


def _timeout(source: str) -> SourceUnavailableError:
    return SourceUnavailableError(source, f"Request to {source} timed out")


class TestPriorityMerge:
    """Field-by-field priority and provenance."""

    @pytest.mark.asyncio
    async def test_primary_wins_and_secondary_fills_gaps(self, engine, primary, secondary) -> None:
        """PRIMARY {level: 80} + SECONDARY {level: 75, xp} -> level from PRIMARY, xp from SECONDARY."""
        primary.set_record("Zezima", {"level": 80})
        secondary.set_record("Zezima", {"level": 75, "xp": 1_000_000})

        view = await engine.sync_entity("Zezima")

        assert view.fields == {"level": 80, "xp": 1_000_000}
        assert view.field_source == {
            "level": SourceKind.PRIMARY,
            "xp": SourceKind.SECONDARY,
        }
        assert view.sources_present == [SourceKind.PRIMARY, SourceKind.SECONDARY]
        assert view.source_errors == {}
        assert view.stale is False

    @pytest.mark.asyncio
    async def test_null_primary_field_falls_through(self, engine, primary, secondary) -> None:
        """A null PRIMARY value does not block a SECONDARY value."""
        primary.set_record("a", {"level": None, "world": 302})
        secondary.set_record("a", {"level": 75})

        view = await engine.sync_entity("a")

        assert view.fields["level"] == 75
        assert view.source_of("level") is SourceKind.SECONDARY
        assert view.source_of("world") is SourceKind.PRIMARY

    @pytest.mark.asyncio
    async def test_both_sources_fetched_concurrently(self, engine, primary, secondary) -> None:
        """PRIMARY and SECONDARY are awaited together, not one after the other."""
        primary.set_record("a", {"level": 80})
        secondary.set_record("a", {"xp": 1})
        primary.delay = 0.05
        secondary.delay = 0.05

        loop = asyncio.get_running_loop()
        start = loop.time()
        await engine.sync_entity("a")
        elapsed = loop.time() - start

        assert elapsed < 0.09

    @pytest.mark.asyncio
    async def test_identity_is_case_insensitive(self, engine, primary) -> None:
        """Cache and entity keys ignore case and extra whitespace."""
        primary.set_record("Zezima", {"level": 80})

        await engine.sync_entity("Zezima")

        assert engine.get_merged_view("  ZEZIMA ") is not None
        await engine.sync_entity("zezima")
        assert len(primary.calls) == 1

    @pytest.mark.asyncio
    async def test_empty_identity_rejected(self, engine) -> None:
        """A blank identity is a caller error."""
        with pytest.raises(ValueError):
            await engine.sync_entity("   ")


class TestFallback:
    """PRIMARY failures degrade to SECONDARY for that call only."""

    @pytest.mark.asyncio
    async def test_primary_timeout_uses_secondary(self, engine, primary, secondary) -> None:
        """PRIMARY rejects, SECONDARY {level: 75} -> merged level 75 from SECONDARY."""
        primary.fail("Zezima", _timeout("plugin"))
        secondary.set_record("Zezima", {"level": 75})

        view = await engine.sync_entity("Zezima")

        assert view.fields == {"level": 75}
        assert view.field_source == {"level": SourceKind.SECONDARY}
        assert engine.source_statuses()[SourceKind.PRIMARY].last_error is not None
        assert "primary" in view.source_errors
        assert "Traceback" not in view.source_errors["primary"]

    @pytest.mark.asyncio
    async def test_primary_recovers_without_reset(
        self, engine, primary, secondary, clock
    ) -> None:
        """Once PRIMARY answers again it wins again; no reset or forced refresh is needed."""
        primary.fail("Zezima", _timeout("plugin"))
        secondary.set_record("Zezima", {"level": 75})
        await engine.sync_entity("Zezima")

        primary.recover()
        primary.set_record("Zezima", {"level": 80})
        clock.advance(60)
        view = await engine.sync_entity("Zezima")

        assert view.fields["level"] == 80
        assert view.source_of("level") is SourceKind.PRIMARY
        assert engine.source_statuses()[SourceKind.PRIMARY].last_error is None

    @pytest.mark.asyncio
    async def test_degraded_view_not_cached(self, engine, primary, secondary) -> None:
        """A view built while PRIMARY failed is returned but never served from cache."""
        primary.fail("Zezima", _timeout("plugin"))
        secondary.set_record("Zezima", {"level": 75})

        await engine.sync_entity("Zezima")

        assert engine.get_merged_view("Zezima") is None
        assert engine.get_merged_view("Zezima", allow_stale=True).fields == {"level": 75}
        await engine.sync_entity("Zezima")
        assert len(primary.calls) == 2

    @pytest.mark.asyncio
    async def test_recovery_with_real_adapters(self, clock) -> None:
        """PRIMARY recovery is picked up on the next call even though SECONDARY is cached."""
        plugin_calls = []

        def plugin_handler(request: httpx.Request) -> httpx.Response:
            plugin_calls.append(request)
            if len(plugin_calls) == 1:
                return httpx.Response(503)
            return httpx.Response(200, json={"name": "Zezima", "total_level": 80})

        def wom_handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"username": "zezima", "displayName": "Zezima", "exp": 1}
            )

        def client(handler) -> httpx.AsyncClient:
            return httpx.AsyncClient(transport=httpx.MockTransport(handler))

        no_retry = RetryConfig(max_retries=0)
        engine = ReconciliationEngine(
            PluginSource(
                "https://dink.example.com",
                client=client(plugin_handler),
                retry=no_retry,
                clock=clock,
            ),
            WiseOldManSource(client=client(wom_handler), retry=no_retry, clock=clock),
            WikiSource(client=client(lambda r: httpx.Response(500)), retry=no_retry, clock=clock),
            clock=clock,
        )

        first = await engine.sync_entity("Zezima")
        clock.advance(60)
        second = await engine.sync_entity("Zezima")

        assert first.source_of("name") is SourceKind.SECONDARY
        assert second.fields["total_level"] == 80
        assert second.source_of("total_level") is SourceKind.PRIMARY
        assert second.source_errors == {}

    @pytest.mark.asyncio
    async def test_all_sources_failed(self, engine, primary, secondary) -> None:
        """Every consulted source raising -> AllSourcesFailedError with per-source errors."""
        primary.fail_all = _timeout("plugin")
        secondary.fail_all = _timeout("wiseoldman")

        with pytest.raises(AllSourcesFailedError) as exc_info:
            await engine.sync_entity("Zezima")

        assert exc_info.value.identity == "Zezima"
        assert [e.source for e in exc_info.value.errors] == ["plugin", "wiseoldman"]
        assert engine.get_merged_view("Zezima") is None

    @pytest.mark.asyncio
    async def test_unexpected_adapter_exception_counts_as_failure(
        self, engine, primary, secondary
    ) -> None:
        """Non-SourceError exceptions from an adapter are treated as source failures."""
        primary.fail_all = RuntimeError("boom")
        secondary.set_record("a", {"level": 75})

        view = await engine.sync_entity("a")

        assert view.fields == {"level": 75}
        assert "primary" in view.source_errors

    @pytest.mark.asyncio
    async def test_confirmed_absence_is_an_empty_cached_view(
        self, engine, primary, secondary
    ) -> None:
        """Sources answering 'not found' produce an empty view, which is cached."""
        view = await engine.sync_entity("nobody")

        assert view.is_empty
        assert view.sources_present == []
        assert view.error is None

        await engine.sync_entity("nobody")
        assert len(primary.calls) == 1
        assert len(secondary.calls) == 1

    @pytest.mark.asyncio
    async def test_disabled_source_is_skipped(
        self, make_source, primary, reference, bus, clock
    ) -> None:
        """A disabled adapter is never called and is not a failure."""
        secondary = make_source(SourceKind.SECONDARY, {"a": {"xp": 1}}, enabled=False)
        engine = ReconciliationEngine(primary, secondary, reference, bus, clock=clock)
        primary.set_record("a", {"level": 80})

        view = await engine.sync_entity("a")

        assert secondary.calls == []
        assert view.fields == {"level": 80}
        assert view.source_errors == {}

    @pytest.mark.asyncio
    async def test_only_enabled_source_failing_is_all_failed(
        self, make_source, primary, reference, bus, clock
    ) -> None:
        """With SECONDARY disabled, a PRIMARY failure leaves nothing to fall back on."""
        secondary = make_source(SourceKind.SECONDARY, enabled=False)
        engine = ReconciliationEngine(primary, secondary, reference, bus, clock=clock)
        primary.fail_all = _timeout("plugin")

        with pytest.raises(AllSourcesFailedError):
            await engine.sync_entity("a")


class TestMergedCache:
    """TTL behaviour of merged views."""

    @pytest.mark.asyncio
    async def test_ttl_scenario(self, engine, primary, secondary, clock) -> None:
        """Fetch at t=0, cached at t=500, fetch again at t=900.001."""
        primary.set_record("Zezima", {"level": 80})
        secondary.set_record("Zezima", {"xp": 1})

        clock.set(0)
        first = await engine.sync_entity("Zezima")
        assert len(primary.calls) == 1
        assert len(secondary.calls) == 1

        clock.set(500)
        second = await engine.sync_entity("Zezima")
        assert second is first
        assert len(primary.calls) == 1
        assert len(secondary.calls) == 1

        clock.set(900.001)
        await engine.sync_entity("Zezima")
        assert len(primary.calls) == 2
        assert len(secondary.calls) == 2

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_caches(self, engine, primary) -> None:
        """force_refresh refetches and invalidates adapter caches for the identity."""
        primary.set_record("a", {"level": 80})
        await engine.sync_entity("a")

        primary.set_record("a", {"level": 81})
        view = await engine.sync_entity("a", force_refresh=True)

        assert view.fields["level"] == 81
        assert len(primary.calls) == 2
        assert primary.invalidated == ["a"]

    @pytest.mark.asyncio
    async def test_get_merged_view_is_cache_only(self, engine, primary) -> None:
        """Reading a view never calls an adapter."""
        assert engine.get_merged_view("a") is None
        assert primary.calls == []

    @pytest.mark.asyncio
    async def test_get_merged_view_allow_stale(self, engine, primary, clock) -> None:
        """After TTL expiry only allow_stale returns the last known view."""
        primary.set_record("a", {"level": 80})
        await engine.sync_entity("a")

        clock.set(901)

        assert engine.get_merged_view("a") is None
        stale = engine.get_merged_view("a", allow_stale=True)
        assert stale is not None
        assert stale.stale is True
        assert stale.fields == {"level": 80}

    @pytest.mark.asyncio
    async def test_known_identities_and_list(self, engine, primary) -> None:
        """The 'all members' view lists every synced identity."""
        primary.set_record("a", {"level": 1})
        primary.set_record("b", {"level": 2})
        await engine.sync_entity("a")
        await engine.sync_entity("b")

        assert engine.known_identities() == ["a", "b"]
        assert [v.identity for v in engine.list_merged_views()] == ["a", "b"]


class TestReferenceEnrichment:
    """REFERENCE fills flagged fields no higher source supplied."""

    @pytest.mark.asyncio
    async def test_flagged_field_filled_from_reference(self, engine, primary, reference) -> None:
        """A field flagged by enrichment_keys is looked up and attributed to REFERENCE."""
        primary.set_record("a", {"interacting": "Zulrah"})
        primary.enrichment[normalize_identity("a")] = {"interacting_details": "Zulrah"}
        reference.set_record("Zulrah", {"title": "Zulrah", "url": "https://wiki/Zulrah"})

        view = await engine.sync_entity("a")

        assert view.fields["interacting_details"] == {
            "title": "Zulrah",
            "url": "https://wiki/Zulrah",
        }
        assert view.source_of("interacting_details") is SourceKind.REFERENCE
        assert SourceKind.REFERENCE in view.sources_present
        assert reference.calls == ["Zulrah"]

    @pytest.mark.asyncio
    async def test_reference_not_consulted_when_field_filled(
        self, engine, primary, secondary, reference
    ) -> None:
        """A higher-priority value for the target field skips the lookup."""
        primary.set_record("a", {"interacting": "Zulrah"})
        primary.enrichment[normalize_identity("a")] = {"interacting_details": "Zulrah"}
        secondary.set_record("a", {"interacting_details": {"title": "cached"}})

        view = await engine.sync_entity("a")

        assert reference.calls == []
        assert view.source_of("interacting_details") is SourceKind.SECONDARY

    @pytest.mark.asyncio
    async def test_reference_failure_leaves_field_empty(self, engine, primary, reference) -> None:
        """A failed lookup never fails the sync."""
        primary.set_record("a", {"interacting": "Zulrah"})
        primary.enrichment[normalize_identity("a")] = {"interacting_details": "Zulrah"}
        reference.fail_all = _timeout("wiki")

        view = await engine.sync_entity("a")

        assert "interacting_details" not in view.fields
        assert view.fields["interacting"] == "Zulrah"


class TestEquipmentEnrichment:
    """Worn items get reference data attached item by item."""

    BLOWPIPE = {"id": 12926, "name": "Toxic blowpipe"}
    HELM = {"id": 12931, "name": "Serpentine helm"}

    @pytest.mark.asyncio
    async def test_failed_item_left_untouched(self, engine, primary, reference) -> None:
        """One item's lookup failing does not stop the others being enriched."""
        primary.set_record("a", {"equipment": {"weapon": self.BLOWPIPE, "head": self.HELM}})
        reference.set_record("Toxic blowpipe", {"title": "Toxic blowpipe", "members": True})
        reference.fail("Serpentine helm", _timeout("wiki"))

        view = await engine.sync_entity("a")

        equipment = view.fields["equipment"]
        assert equipment["weapon"] == {
            **self.BLOWPIPE,
            "reference_data": {"title": "Toxic blowpipe", "members": True},
        }
        assert equipment["head"] == self.HELM
        assert view.source_of("equipment") is SourceKind.PRIMARY
        assert view.source_errors == {}
        assert sorted(reference.calls) == ["Serpentine helm", "Toxic blowpipe"]

    @pytest.mark.asyncio
    async def test_items_wrapper_shape(self, engine, primary, reference) -> None:
        """Equipment nested under an ``items`` key is enriched in place."""
        primary.set_record("a", {"equipment": {"items": {"weapon": self.BLOWPIPE}, "weight": 3}})
        reference.set_record("Toxic blowpipe", {"title": "Toxic blowpipe"})

        view = await engine.sync_entity("a")

        equipment = view.fields["equipment"]
        assert equipment["weight"] == 3
        assert equipment["items"]["weapon"]["reference_data"] == {"title": "Toxic blowpipe"}

    @pytest.mark.asyncio
    async def test_unnamed_items_skip_lookup(self, engine, primary, reference) -> None:
        """Slots without a name string never reach the reference source."""
        primary.set_record("a", {"equipment": {"weapon": {"id": 12926}, "ring": None}})

        view = await engine.sync_entity("a")

        assert view.fields["equipment"] == {"weapon": {"id": 12926}, "ring": None}
        assert reference.calls == []

    @pytest.mark.asyncio
    async def test_push_keeps_item_reference_data(self, engine, primary, reference) -> None:
        """A pushed update re-uses earlier item lookups without calling the reference source."""
        primary.set_record("a", {"equipment": {"weapon": self.BLOWPIPE}})
        reference.set_record("Toxic blowpipe", {"title": "Toxic blowpipe"})
        await engine.sync_entity("a")

        views = engine.on_primary_feed_push(
            {"name": "a", "equipment": {"weapon": self.BLOWPIPE, "head": self.HELM}}
        )

        equipment = views[0].fields["equipment"]
        assert equipment["weapon"]["reference_data"] == {"title": "Toxic blowpipe"}
        assert equipment["head"] == self.HELM
        assert reference.calls == ["Toxic blowpipe"]


class TestSyncGroup:
    """Group sync, the session guard and partial failure isolation."""

    @pytest.mark.asyncio
    async def test_second_group_sync_rejected(self, engine, primary) -> None:
        """A group sync while one is running fails fast and leaves the cache alone."""
        primary.set_record("a", {"level": 1})
        primary.set_record("b", {"level": 2})
        primary.delay = 0.05

        task = asyncio.create_task(engine.sync_group(["a"]))
        await asyncio.sleep(0)
        assert engine.session.in_progress is True

        with pytest.raises(SyncInProgressError):
            await engine.sync_group(["b"])
        with pytest.raises(SyncInProgressError):
            await engine.sync_entity("b")

        assert "b" not in primary.calls
        assert engine.get_merged_view("b") is None

        views = await task
        assert [v.identity for v in views] == ["a"]
        assert engine.session.in_progress is False
        assert engine.session.last_completed_at is not None

    @pytest.mark.asyncio
    async def test_partial_failure_isolated(self, engine, primary, secondary, bus) -> None:
        """One of five identities failing entirely does not affect the other four."""
        names = ["a", "b", "c", "d", "e"]
        for name in names:
            primary.set_record(name, {"level": 80})
            secondary.set_record(name, {"xp": 1})
        primary.fail("c", _timeout("plugin"))
        secondary.fail("c", _timeout("wiseoldman"))
        groups: list[GroupSyncedEvent] = []
        bus.subscribe(GROUP_SYNCED, groups.append)

        views = await engine.sync_group(names)

        assert [v.identity for v in views] == names
        for view in views[:2] + views[3:]:
            assert view.fields == {"level": 80, "xp": 1}
            assert view.error is None
        failed = views[2]
        assert failed.is_empty
        assert failed.error is not None
        assert "All sources failed" in failed.error

        assert len(groups) == 1
        statuses = {s.identity: s.status for s in groups[0].per_entity_status}
        assert statuses == {"a": "ok", "b": "ok", "c": "error", "d": "ok", "e": "ok"}
        assert groups[0].count == 5
        assert engine.session.in_progress is False

    @pytest.mark.asyncio
    async def test_failed_member_served_stale(self, engine, primary, secondary) -> None:
        """A member with a previous view degrades to it, marked stale."""
        primary.set_record("a", {"level": 80})
        await engine.sync_group(["a"])

        primary.fail_all = _timeout("plugin")
        secondary.fail_all = _timeout("wiseoldman")
        views = await engine.sync_group(["a"], force_refresh=True)

        assert views[0].stale is True
        assert views[0].fields == {"level": 80}
        assert views[0].error is not None

    @pytest.mark.asyncio
    async def test_duplicates_synced_once(self, engine, primary) -> None:
        """Identities differing only in case are reconciled once."""
        primary.set_record("a", {"level": 1})

        views = await engine.sync_group(["a", "A", " a "])

        assert len(views) == 1
        assert len(primary.calls) == 1

    @pytest.mark.asyncio
    async def test_session_cleared_after_unexpected_error(self, engine, primary, monkeypatch) -> None:
        """The session flag is released even if publishing blows up."""

        def explode(*args, **kwargs):
            raise RuntimeError("bus down")

        monkeypatch.setattr(engine.bus, "publish", explode)
        primary.set_record("a", {"level": 1})

        with pytest.raises(RuntimeError):
            await engine.sync_group(["a"])

        assert engine.session.in_progress is False


class TestEvents:
    """Notifications published by the engine."""

    @pytest.mark.asyncio
    async def test_entity_updated_on_both_channels(
        self, engine, primary, broadcaster
    ) -> None:
        """Subscribers and broadcast listeners receive the identical payload."""
        primary.set_record("a", {"level": 80})
        received: list[EntityUpdatedEvent] = []
        broadcast: list[EntityUpdatedEvent] = []
        engine.subscribe(received.append)
        broadcaster.add_listener(ENTITY_UPDATED, broadcast.append)

        view = await engine.sync_entity("a")

        assert len(received) == 1
        assert received[0] is broadcast[0]
        event = received[0]
        assert event.identity == "a"
        assert event.merged_view == view
        assert event.field_source == {"level": SourceKind.PRIMARY}
        assert event.changed_fields == ["level"]

    @pytest.mark.asyncio
    async def test_changed_fields_tracks_differences(self, engine, primary) -> None:
        """Only fields whose value or source changed are reported."""
        primary.set_record("a", {"level": 80, "world": 302})
        received: list[EntityUpdatedEvent] = []
        engine.subscribe(received.append)
        await engine.sync_entity("a")

        primary.set_record("a", {"level": 81, "world": 302})
        await engine.sync_entity("a", force_refresh=True)

        assert received[-1].changed_fields == ["level"]

    @pytest.mark.asyncio
    async def test_cache_hit_does_not_publish(self, engine, primary) -> None:
        """Serving a cached view is not an update."""
        primary.set_record("a", {"level": 80})
        received: list[EntityUpdatedEvent] = []
        engine.subscribe(received.append)

        await engine.sync_entity("a")
        await engine.sync_entity("a")

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self, engine, primary) -> None:
        """Unsubscribing is immediate and idempotent."""
        primary.set_record("a", {"level": 80})
        received: list[EntityUpdatedEvent] = []
        unsubscribe = engine.subscribe(received.append)
        unsubscribe()
        unsubscribe()

        await engine.sync_entity("a")

        assert received == []

    @pytest.mark.asyncio
    async def test_failing_subscriber_isolated(self, engine, primary) -> None:
        """A subscriber raising does not stop the others or the sync."""
        primary.set_record("a", {"level": 80})
        received: list[EntityUpdatedEvent] = []

        def bad(event):
            raise ValueError("subscriber bug")

        engine.subscribe(bad)
        engine.subscribe(received.append)

        view = await engine.sync_entity("a")

        assert view.fields == {"level": 80}
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_source_status_changes_published(self, engine, primary, bus) -> None:
        """Adapter status changes are republished on the bus."""
        events: list[SourceStatusChangedEvent] = []
        bus.subscribe(SOURCE_STATUS_CHANGED, events.append)
        primary.fail_all = _timeout("plugin")

        await engine.sync_entity("a")

        primary_events = [e for e in events if e.source is SourceKind.PRIMARY]
        assert primary_events
        assert primary_events[-1].status.last_error is not None


class TestInboundTriggers:
    """Login, logout, feed push and manual refresh."""

    @pytest.mark.asyncio
    async def test_login_force_syncs(self, engine, primary) -> None:
        """Login refreshes the member even when a cached view exists."""
        primary.set_record("a", {"level": 80})
        await engine.sync_entity("a")

        view = await engine.on_login_success("a")

        assert view is not None
        assert len(primary.calls) == 2

    @pytest.mark.asyncio
    async def test_login_failure_is_logged_not_raised(self, engine, primary, secondary) -> None:
        """A failed refresh after login returns None."""
        primary.fail_all = _timeout("plugin")
        secondary.fail_all = _timeout("wiseoldman")

        assert await engine.on_login_success("a") is None

    @pytest.mark.asyncio
    async def test_logout_clears_everything(self, engine, primary, secondary, bus) -> None:
        """Logout forgets cached views and resets every source status."""
        primary.set_record("a", {"level": 80})
        await engine.sync_entity("a")
        events: list[SourceStatusChangedEvent] = []
        bus.subscribe(SOURCE_STATUS_CHANGED, events.append)

        engine.on_logout()

        assert engine.get_merged_view("a") is None
        assert engine.get_merged_view("a", allow_stale=True) is None
        for status in engine.source_statuses().values():
            assert status.last_success_at is None
            assert status.last_error is None
        assert {e.source for e in events} == set(SourceKind)

        await engine.sync_entity("a")
        assert len(primary.calls) == 2

    @pytest.mark.asyncio
    async def test_primary_push_remerges_without_network(
        self, engine, primary, secondary
    ) -> None:
        """A pushed update re-merges from stored records and makes no request."""
        primary.set_record("Zezima", {"level": 80})
        secondary.set_record("Zezima", {"level": 75, "xp": 1_000_000})
        await engine.sync_entity("Zezima")
        received: list[EntityUpdatedEvent] = []
        engine.subscribe(received.append)

        views = engine.on_primary_feed_push({"members": {"Zezima": {"level": 85}}})

        assert len(primary.calls) == 1
        assert len(secondary.calls) == 1
        assert len(views) == 1
        assert views[0].fields["level"] == 85
        assert views[0].fields["xp"] == 1_000_000
        assert views[0].source_of("xp") is SourceKind.SECONDARY
        assert engine.get_merged_view("zezima").fields["level"] == 85
        assert received[0].changed_fields == ["level", "name"]

    @pytest.mark.asyncio
    async def test_push_for_new_member(self, engine, primary) -> None:
        """A single member object creates the entity."""
        views = engine.on_primary_feed_push({"name": "Lynx Titan", "level": 99})

        assert views[0].fields["level"] == 99
        assert engine.known_identities() == ["Lynx Titan"]
        assert primary.calls == []

    @pytest.mark.asyncio
    async def test_push_keeps_reference_fields(self, engine, primary, reference) -> None:
        """Reference data from an earlier merge survives a push."""
        primary.set_record("a", {"interacting": "Zulrah"})
        primary.enrichment[normalize_identity("a")] = {"interacting_details": "Zulrah"}
        reference.set_record("Zulrah", {"title": "Zulrah"})
        await engine.sync_entity("a")

        views = engine.on_primary_feed_push({"name": "a", "level": 90})

        assert views[0].fields["interacting_details"] == {"title": "Zulrah"}
        assert views[0].source_of("interacting_details") is SourceKind.REFERENCE
        assert reference.calls == ["Zulrah"]

    @pytest.mark.asyncio
    async def test_manual_refresh_defaults_to_known(self, engine, primary) -> None:
        """Without identities, every known member is force-refreshed."""
        primary.set_record("a", {"level": 1})
        primary.set_record("b", {"level": 2})
        await engine.sync_entity("a")
        await engine.sync_entity("b")

        views = await engine.on_manual_refresh()

        assert [v.identity for v in views] == ["a", "b"]
        assert len(primary.calls) == 4

    @pytest.mark.asyncio
    async def test_manual_refresh_with_nothing_known(self, engine) -> None:
        """Nothing to refresh returns an empty list."""
        assert await engine.on_manual_refresh() == []


class TestLifecycle:
    """Engine construction and teardown."""

    @pytest.mark.asyncio
    async def test_default_bus_is_private(self, primary, secondary, reference, clock) -> None:
        """An engine built without a bus never reaches the process-wide broadcaster."""
        leaked: list[object] = []
        remove = runtime_broadcaster.add_listener("*", leaked.append)
        try:
            engine = ReconciliationEngine(primary, secondary, reference, clock=clock)
            own: list[EntityUpdatedEvent] = []
            engine.bus.broadcaster.add_listener(ENTITY_UPDATED, own.append)
            primary.set_record("a", {"level": 1})

            await engine.sync_entity("a")
        finally:
            remove()

        assert engine.bus.broadcaster is not runtime_broadcaster
        assert leaked == []
        assert len(own) == 1

    @pytest.mark.asyncio
    async def test_aclose_detaches_status_listeners(self, engine, primary, bus) -> None:
        """After aclose, adapter status changes are no longer republished."""
        events: list[SourceStatusChangedEvent] = []
        bus.subscribe(SOURCE_STATUS_CHANGED, events.append)

        await engine.aclose()
        primary.reset_status()

        assert events == []
