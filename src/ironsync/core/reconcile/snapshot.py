"""
On-disk snapshot of adapter caches.

The snapshot is cold-start seed data, not durable storage: it holds the
valid raw cache entries of each adapter (keyed by source and normalized
identity, with the time they were stored) so a restarted dashboard can
render members before the first network round completes. Entries are
re-checked against their TTL on load; expired ones are dropped.

File format:
{
  "version": 1,
  "saved_at": "2024-05-01T12:00:00+00:00",
  "sources": {
    "primary": [
      {"key": "zezima", "stored_at": 1714564800.0, "ttl_seconds": 900.0,
       "record": {...SourceRecord...}}
    ],
    "secondary": [...],
    "reference": [...]
  }
}
"""

import json
import logging
import os
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ironsync.core.cache import CacheEntry
from ironsync.core.reconcile.exceptions import SnapshotError
from ironsync.core.reconcile.models import SourceRecord, utcnow
from ironsync.core.reconcile.sources.base import BaseSourceAdapter

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class SnapshotStore:
    """
    JSON snapshot of adapter caches with atomic writes.

    Attributes:
        path: Snapshot file location
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def save(self, adapters: Iterable[BaseSourceAdapter]) -> int:
        """
        Write the valid cache entries of every adapter.

        Creates parent directories if needed. Writes to a temp file in the
        same directory, then renames it over the snapshot.

        Returns:
            Number of entries written

        Raises:
            SnapshotError: If the file cannot be written
        """
        sources: dict[str, list[dict[str, Any]]] = {}
        count = 0
        for adapter in adapters:
            entries = [
                {
                    "key": entry.key,
                    "stored_at": entry.stored_at,
                    "ttl_seconds": entry.ttl_seconds,
                    "record": entry.value.model_dump(mode="json"),
                }
                for entry in adapter.export_cache()
            ]
            sources[adapter.kind.value] = entries
            count += len(entries)

        data = {
            "version": SNAPSHOT_VERSION,
            "saved_at": utcnow().isoformat(),
            "sources": sources,
        }

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(
                dir=self.path.parent, prefix=".snapshot_", suffix=".json.tmp"
            )
        except OSError as e:
            raise SnapshotError(
                f"Failed to write snapshot: {e}", path=str(self.path)
            ) from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
                f.write("\n")
            os.replace(temp_path, self.path)
        except OSError as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise SnapshotError(
                f"Failed to write snapshot: {e}", path=str(self.path)
            ) from e

        logger.debug(f"Saved {count} cache entries to {self.path}")
        return count

    def read(self) -> dict[str, list[CacheEntry[SourceRecord]]]:
        """
        Read the snapshot without applying it.

        Invalid entries are skipped with a warning.

        Returns:
            Source kind value -> cache entries (empty if there is no snapshot)

        Raises:
            SnapshotError: If the file exists but is not a readable snapshot
        """
        if not self.path.exists():
            return {}

        try:
            with self.path.open(encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise SnapshotError(
                f"Failed to read snapshot: {e}", path=str(self.path)
            ) from e

        if not isinstance(data, dict) or data.get("version") != SNAPSHOT_VERSION:
            raise SnapshotError(
                "Unsupported snapshot format",
                path=str(self.path),
                version=data.get("version") if isinstance(data, dict) else None,
            )

        result: dict[str, list[CacheEntry[SourceRecord]]] = {}
        for source, raw_entries in (data.get("sources") or {}).items():
            entries = []
            for raw in raw_entries if isinstance(raw_entries, list) else []:
                try:
                    entries.append(
                        CacheEntry(
                            key=str(raw["key"]),
                            value=SourceRecord.model_validate(raw["record"]),
                            stored_at=float(raw["stored_at"]),
                            ttl_seconds=float(raw["ttl_seconds"]),
                        )
                    )
                except (KeyError, TypeError, ValueError, ValidationError) as e:
                    logger.warning(f"Skipping invalid snapshot entry for '{source}': {e}")
            result[source] = entries
        return result

    def load(self, adapters: Iterable[BaseSourceAdapter]) -> int:
        """
        Seed adapter caches from the snapshot.

        Entries still go through the normal TTL check, so anything older
        than the adapter's TTL is discarded.

        Returns:
            Number of entries restored
        """
        snapshot = self.read()
        restored = 0
        for adapter in adapters:
            restored += adapter.seed_cache(snapshot.get(adapter.kind.value, []))
        logger.info(f"Restored {restored} cache entries from {self.path}")
        return restored

    def clear(self) -> None:
        """Delete the snapshot file, if any."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise SnapshotError(
                f"Failed to delete snapshot: {e}", path=str(self.path)
            ) from e


__all__ = ["SnapshotStore", "SNAPSHOT_VERSION"]
