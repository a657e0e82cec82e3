"""
Source adapter protocol and shared adapter behaviour.

This module defines the SourceAdapter protocol the reconciliation engine
depends on, and BaseSourceAdapter, which implements everything the three
concrete adapters have in common:

- a private TTL cache checked before any network call and written only on
  success (not-found and failures are never cached)
- 404 -> None, every other failure -> SourceError
- concurrent, failure-isolated batch fetching
- ownership of the adapter's SourceStatus
- per-field type validation (invalid fields are logged and dropped)

Concrete adapters implement ``normalize_name``, ``_fetch_remote`` and
``parse``.
"""

import asyncio
import json
import logging
import time
from collections.abc import Callable, Iterable, Sequence
from typing import Any, Protocol, runtime_checkable

import httpx

from ironsync.core.cache import DEFAULT_TTL_SECONDS, CacheEntry, TTLCache
from ironsync.core.reconcile.exceptions import (
    EntityNotFoundError,
    MalformedPayloadError,
    MergeInputInvalidError,
    SourceError,
    SourceUnavailableError,
)
from ironsync.core.reconcile.http import RetryConfig, request_json
from ironsync.core.reconcile.models import (
    SourceKind,
    SourceRecord,
    SourceStatus,
    normalize_identity,
    utcnow,
)

logger = logging.getLogger(__name__)

StatusListener = Callable[[SourceKind, SourceStatus], None]


@runtime_checkable
class SourceAdapter(Protocol):
    """
    Protocol for data source adapters.

    Every source (live plugin feed, statistics API, wiki) normalizes its API
    into SourceRecord objects and owns its own cache and status.
    """

    @property
    def kind(self) -> SourceKind:
        """Priority slot this adapter fills."""
        ...

    @property
    def name(self) -> str:
        """Short source name used in logs and errors (e.g. 'wiseoldman')."""
        ...

    @property
    def enabled(self) -> bool:
        ...

    @property
    def status(self) -> SourceStatus:
        ...

    async def fetch(self, identity: str) -> SourceRecord | None:
        """
        Fetch one identity.

        Returns:
            The normalized record, or None if the source does not know it

        Raises:
            SourceError: If the source failed (the caller may retry later)
        """
        ...

    async def fetch_batch(self, identities: Sequence[str]) -> dict[str, SourceRecord | None]:
        """Fetch many identities concurrently; failures become None entries."""
        ...

    def peek(self, identity: str) -> SourceRecord | None:
        """Cache-only read; never performs I/O."""
        ...

    def ingest(self, payload: dict[str, Any]) -> SourceRecord:
        """Normalize an unsolicited payload and store it in the cache."""
        ...

    def invalidate(self, identity: str) -> None:
        """Drop the cached record for one identity."""
        ...

    def clear_cache(self) -> None:
        ...

    def reset_status(self) -> None:
        ...


class BaseSourceAdapter:
    """
    Shared implementation of the SourceAdapter protocol.

    Subclasses set ``kind``, ``name`` and ``FIELD_TYPES`` and implement the
    source-specific request and parsing.

    Attributes:
        base_url: API root of the source
        timeout: Overall deadline for one call, retries included (seconds)
        retry: Retry policy for transient failures
    """

    kind: SourceKind
    name: str = "source"

    # field name -> accepted Python type(s); fields not listed are passed through
    FIELD_TYPES: dict[str, type | tuple[type, ...]] = {}

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        cache_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        retry: RetryConfig | None = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the adapter.

        Args:
            base_url: API root of the source
            client: Shared async HTTP client; one is created lazily if omitted
            timeout: Overall deadline per call in seconds
            cache_ttl_seconds: Lifetime of cached records
            retry: Retry policy (defaults to RetryConfig())
            enabled: Whether the engine should consult this source
            clock: Time source for the cache
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry = retry or RetryConfig()
        self._client = client
        self._owns_client = client is None
        self._cache: TTLCache[SourceRecord] = TTLCache(cache_ttl_seconds, clock=clock)
        self._status = SourceStatus(enabled=enabled)
        self._status_listeners: list[StatusListener] = []

    # ------------------------------------------------------------------
    # Identity handling
    # ------------------------------------------------------------------

    def normalize_name(self, identity: str) -> str:
        """
        Convert an identity into the form the backing API expects.

        Must be idempotent. The default trims and collapses whitespace.
        """
        return " ".join(identity.split())

    def cache_key(self, identity: str) -> str:
        return normalize_identity(self.normalize_name(identity))

    # ------------------------------------------------------------------
    # Status (owned exclusively by the adapter)
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._status.enabled

    @property
    def status(self) -> SourceStatus:
        """A copy of the current status; callers cannot mutate the original."""
        return self._status.model_copy()

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Register a callback invoked after every status change."""
        self._status_listeners.append(listener)

        def remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return remove

    def reset_status(self) -> None:
        """Forget success/error history, keeping the enabled flag."""
        self._update_status(
            last_success_at=None, last_error=None, last_attempt_at=None
        )

    def _update_status(self, **changes: Any) -> None:
        self._status = self._status.model_copy(update=changes)
        for listener in list(self._status_listeners):
            try:
                listener(self.kind, self.status)
            except Exception:
                logger.exception(f"Status listener failed for source '{self.name}'")

    def _record_success(self) -> None:
        self._update_status(last_success_at=utcnow(), last_error=None)

    def _record_failure(self, error: Exception) -> None:
        self._update_status(last_error=str(error))

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def fetch(self, identity: str) -> SourceRecord | None:
        """
        Fetch one identity, serving from the adapter cache when possible.

        Returns:
            The normalized record, or None if the source does not know it

        Raises:
            SourceError: On any failure other than not-found
        """
        key = self.cache_key(identity)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug(f"[{self.name}] cache hit for '{identity}'")
            return cached

        self._update_status(last_attempt_at=utcnow())
        try:
            record = await self._fetch_remote(self.normalize_name(identity), identity)
        except EntityNotFoundError:
            logger.info(f"[{self.name}] '{identity}' not found")
            self._record_success()
            return None
        except SourceError as e:
            logger.warning(f"[{self.name}] fetch failed for '{identity}': {e}")
            self._record_failure(e)
            raise
        except Exception as e:
            logger.exception(f"[{self.name}] unexpected error fetching '{identity}'")
            error = SourceUnavailableError(
                self.name, f"Unexpected error: {e}", identity=identity
            )
            self._record_failure(error)
            raise error from e

        if record is not None:
            self._cache.set(key, record)
        self._record_success()
        return record

    async def fetch_batch(self, identities: Sequence[str]) -> dict[str, SourceRecord | None]:
        """
        Fetch several identities concurrently.

        One identity's failure never cancels the others: failures are logged,
        recorded in the status by ``fetch`` and returned as None entries.
        """
        unique = list(dict.fromkeys(identities))
        results = await asyncio.gather(
            *(self.fetch(identity) for identity in unique), return_exceptions=True
        )

        batch: dict[str, SourceRecord | None] = {}
        for identity, result in zip(unique, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.debug(f"[{self.name}] batch entry '{identity}' failed: {result}")
                batch[identity] = None
            else:
                batch[identity] = result
        return batch

    async def _fetch_remote(self, name: str, identity: str) -> SourceRecord | None:
        """
        Request one identity from the backing API.

        Args:
            name: Identity after ``normalize_name``
            identity: Identity as supplied by the caller

        Raises:
            EntityNotFoundError: If the source does not know the identity
            SourceError: On any other failure
        """
        raise NotImplementedError

    def parse(self, payload: dict[str, Any], identity: str | None = None) -> SourceRecord:
        """Convert a response body into a SourceRecord."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Cache access
    # ------------------------------------------------------------------

    def peek(self, identity: str) -> SourceRecord | None:
        return self._cache.get(self.cache_key(identity))

    def ingest(self, payload: dict[str, Any]) -> SourceRecord:
        """
        Normalize a pushed payload and cache it as if it had been fetched.

        Raises:
            MalformedPayloadError: If the payload cannot be parsed
        """
        record = self.parse(payload)
        self._cache.set(self.cache_key(record.identity), record)
        self._record_success()
        return record

    def invalidate(self, identity: str) -> None:
        self._cache.invalidate(self.cache_key(identity))

    def clear_cache(self) -> None:
        self._cache.clear()

    def export_cache(self) -> list[CacheEntry[SourceRecord]]:
        """Valid cache entries, for snapshots."""
        now = self._cache.now()
        return [entry for entry in self._cache.entries() if entry.is_valid(now)]

    def seed_cache(self, entries: Iterable[CacheEntry[SourceRecord]]) -> int:
        """Restore snapshot entries; expired ones are skipped. Returns count stored."""
        return sum(1 for entry in entries if self._cache.seed(entry))

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    async def _request(
        self,
        method: str,
        url: str,
        identity: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any = None,
    ) -> Any:
        """
        Make a request and decode its JSON body, mapping failures to SourceErrors.

        Raises:
            EntityNotFoundError: On HTTP 404
            SourceUnavailableError: On timeouts, transport errors and other statuses
            MalformedPayloadError: If the body is not valid JSON
        """
        try:
            response = await request_json(
                self.client,
                method,
                url,
                timeout=self.timeout,
                retry=self.retry,
                params=params,
                headers=self._headers(),
                json=json_body,
            )
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code == 404:
                raise EntityNotFoundError(self.name, identity, url=url) from e
            raise SourceUnavailableError(
                self.name,
                f"HTTP {status_code} error from {self.name}",
                url=url,
                status_code=status_code,
                rate_limited=status_code == 429,
            ) from e
        except httpx.TimeoutException as e:
            raise SourceUnavailableError(
                self.name,
                f"Request to {self.name} timed out",
                url=url,
                timeout=self.timeout,
            ) from e
        except httpx.HTTPError as e:
            raise SourceUnavailableError(
                self.name,
                f"Network error while contacting {self.name}: {e}",
                url=url,
            ) from e

        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise MalformedPayloadError(
                self.name,
                f"Failed to parse JSON response from {self.name}",
                url=url,
            ) from e

    # ------------------------------------------------------------------
    # Field validation
    # ------------------------------------------------------------------

    def _coerce_fields(self, fields: dict[str, Any]) -> dict[str, Any]:
        """
        Validate field types, turning invalid values into None.

        Invalid values are reported as MergeInputInvalidError at warning
        level and never raised.
        """
        result: dict[str, Any] = {}
        for field, value in fields.items():
            expected = self.FIELD_TYPES.get(field)
            if value is None or expected is None or _matches(value, expected):
                result[field] = value
                continue
            error = MergeInputInvalidError(
                self.name,
                field,
                f"expected {_type_names(expected)}, got {type(value).__name__}",
            )
            logger.warning(str(error))
            result[field] = None
        return result


def _matches(value: Any, expected: type | tuple[type, ...]) -> bool:
    types = expected if isinstance(expected, tuple) else (expected,)
    # bool is an int subclass but never a valid number here
    if isinstance(value, bool) and bool not in types:
        return False
    return isinstance(value, types)


def _type_names(expected: type | tuple[type, ...]) -> str:
    types = expected if isinstance(expected, tuple) else (expected,)
    return " or ".join(t.__name__ for t in types)


def require_mapping(source: str, payload: Any, url: str | None = None) -> dict[str, Any]:
    """Ensure a decoded body is a JSON object."""
    if not isinstance(payload, dict):
        raise MalformedPayloadError(
            source,
            "Response is not a valid JSON object",
            url=url,
            response_type=type(payload).__name__,
        )
    return payload


__all__ = [
    "SourceAdapter",
    "BaseSourceAdapter",
    "StatusListener",
    "require_mapping",
]
