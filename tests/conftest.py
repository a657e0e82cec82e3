"""
Pytest configuration and shared fixtures.

Provides a controllable clock, in-memory stub source adapters, and a
reconciliation engine wired to them, plus config directory isolation.
"""

import asyncio
import os
from typing import Any

import pytest

from ironsync.core.config import clear_cache
from ironsync.core.events import EventBus, RuntimeBroadcaster
from ironsync.core.reconcile.engine import ReconciliationEngine
from ironsync.core.reconcile.models import (
    SourceKind,
    SourceRecord,
    SourceStatus,
    normalize_identity,
    utcnow,
)

# ==============================================================================
# Clock and Stub Adapters
# ==============================================================================


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def set(self, now: float) -> None:
        self.now = now


class StubSource:
    """
    In-memory SourceAdapter.

    ``records`` maps identity -> fields (None means "not found"); ``failures``
    maps identity -> exception to raise; ``fail_all`` fails every call.
    Every fetch is recorded in ``calls``. There is no adapter cache, so call
    counts show exactly what the engine requested.
    """

    def __init__(
        self,
        kind: SourceKind,
        records: dict[str, dict[str, Any] | None] | None = None,
        *,
        name: str | None = None,
        enabled: bool = True,
    ) -> None:
        self.kind = kind
        self.name = name or kind.value
        self.records: dict[str, dict[str, Any] | None] = {
            normalize_identity(k): v for k, v in (records or {}).items()
        }
        self.enrichment: dict[str, dict[str, str]] = {}
        self.failures: dict[str, Exception] = {}
        self.fail_all: Exception | None = None
        self.delay = 0.0
        self.calls: list[str] = []
        self.invalidated: list[str] = []
        self.seeded: list[Any] = []
        self.pushed: dict[str, SourceRecord] = {}
        self._status = SourceStatus(enabled=enabled)
        self._listeners: list[Any] = []

    @property
    def enabled(self) -> bool:
        return self._status.enabled

    @property
    def status(self) -> SourceStatus:
        return self._status.model_copy()

    def add_status_listener(self, listener: Any) -> Any:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _set_status(self, **changes: Any) -> None:
        self._status = self._status.model_copy(update=changes)
        for listener in list(self._listeners):
            listener(self.kind, self.status)

    def set_record(self, identity: str, fields: dict[str, Any] | None) -> None:
        self.records[normalize_identity(identity)] = fields

    def fail(self, identity: str, error: Exception) -> None:
        self.failures[normalize_identity(identity)] = error

    def recover(self, identity: str | None = None) -> None:
        if identity is None:
            self.failures.clear()
            self.fail_all = None
        else:
            self.failures.pop(normalize_identity(identity), None)

    async def fetch(self, identity: str) -> SourceRecord | None:
        self.calls.append(identity)
        if self.delay:
            await asyncio.sleep(self.delay)
        key = normalize_identity(identity)
        error = self.failures.get(key) or self.fail_all
        if error is not None:
            self._set_status(last_error=str(error), last_attempt_at=utcnow())
            raise error
        self._set_status(last_success_at=utcnow(), last_error=None)
        fields = self.records.get(key)
        if fields is None:
            return None
        return SourceRecord(
            source=self.kind,
            identity=identity,
            fields=dict(fields),
            enrichment_keys=dict(self.enrichment.get(key, {})),
        )

    async def fetch_batch(self, identities: list[str]) -> dict[str, SourceRecord | None]:
        batch: dict[str, SourceRecord | None] = {}
        for identity in dict.fromkeys(identities):
            try:
                batch[identity] = await self.fetch(identity)
            except Exception:
                batch[identity] = None
        return batch

    def peek(self, identity: str) -> SourceRecord | None:
        return self.pushed.get(normalize_identity(identity))

    def ingest(self, payload: dict[str, Any]) -> SourceRecord:
        fields = dict(payload)
        record = SourceRecord(source=self.kind, identity=fields["name"], fields=fields)
        self.pushed[record.key] = record
        return record

    def invalidate(self, identity: str) -> None:
        self.invalidated.append(identity)

    def clear_cache(self) -> None:
        self.pushed.clear()

    def export_cache(self) -> list[Any]:
        return []

    def seed_cache(self, entries: list[Any]) -> int:
        self.seeded.extend(entries)
        return len(entries)

    def reset_status(self) -> None:
        self._set_status(last_success_at=None, last_error=None, last_attempt_at=None)


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture
def make_source():
    """Factory for extra stub adapters: make_source(kind, records, name=..., enabled=...)."""
    return StubSource


@pytest.fixture
def clock() -> FakeClock:
    """Clock starting at t=0."""
    return FakeClock()


@pytest.fixture
def primary() -> StubSource:
    return StubSource(SourceKind.PRIMARY, name="plugin")


@pytest.fixture
def secondary() -> StubSource:
    return StubSource(SourceKind.SECONDARY, name="wiseoldman")


@pytest.fixture
def reference() -> StubSource:
    return StubSource(SourceKind.REFERENCE, name="wiki")


@pytest.fixture
def broadcaster() -> RuntimeBroadcaster:
    """Private secondary channel so tests never share listeners."""
    return RuntimeBroadcaster()


@pytest.fixture
def bus(broadcaster: RuntimeBroadcaster) -> EventBus:
    return EventBus(broadcaster=broadcaster)


@pytest.fixture
def engine(
    primary: StubSource,
    secondary: StubSource,
    reference: StubSource,
    bus: EventBus,
    clock: FakeClock,
) -> ReconciliationEngine:
    """Engine wired to the stub adapters with a 900s merged-view TTL."""
    return ReconciliationEngine(
        primary, secondary, reference, bus, merged_ttl_seconds=900, clock=clock
    )


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """
    Point XDG directories at a temp dir and clear IRONSYNC_* variables.

    Keeps the developer's real config and environment out of every test.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "xdg-cache"))
    for key in list(os.environ):
        if key.startswith("IRONSYNC_"):
            monkeypatch.delenv(key, raising=False)
    clear_cache()
    yield
    clear_cache()
