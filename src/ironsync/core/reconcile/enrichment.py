"""
Reference enrichment for batches of records.

Attaches reference (wiki) data to records that mention an external entity,
such as activities naming a boss or drops naming an item. Lookups are
de-duplicated across the batch and run concurrently; a failed lookup only
leaves that record's ``reference_data`` as None.

Example:
    >>> pipeline = EnrichmentPipeline(WikiSource())
    >>> activities = [{"name": "Zulrah", "kc": 12}, {"name": "Vorkath", "kc": 3}]
    >>> enriched = await pipeline.enrich(activities, name_field="name")
    >>> enriched[0]["reference_data"]["url"]
    'https://oldschool.runescape.wiki/w/Zulrah'
"""

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from ironsync.core.reconcile.models import SourceRecord
from ironsync.core.reconcile.sources.base import SourceAdapter

logger = logging.getLogger(__name__)

REFERENCE_DATA_FIELD = "reference_data"


class EnrichmentPipeline:
    """
    Batched, failure-tolerant reference lookups.

    Attributes:
        reference: Adapter answering free-text name lookups
    """

    def __init__(self, reference: SourceAdapter) -> None:
        self.reference = reference

    def _lookup_key(self, name: str) -> str:
        cache_key = getattr(self.reference, "cache_key", None)
        return cache_key(name) if callable(cache_key) else name.casefold()

    async def lookup(self, names: Iterable[str]) -> dict[str, SourceRecord | None]:
        """
        Look up each distinct name once.

        Names that normalize to the same reference key share one request.
        Disabled reference sources and failed lookups yield None.

        Returns:
            Every requested name -> reference record or None
        """
        requested = [name for name in names if name and name.strip()]
        if not requested:
            return {}
        if not self.reference.enabled:
            logger.debug("Reference source disabled, skipping lookups")
            return {name: None for name in requested}

        representatives: dict[str, str] = {}
        for name in requested:
            representatives.setdefault(self._lookup_key(name), name)

        try:
            batch = await self.reference.fetch_batch(list(representatives.values()))
        except Exception as e:
            logger.warning(f"Reference batch lookup failed: {e}")
            batch = {}
        by_key = {key: batch.get(name) for key, name in representatives.items()}

        found = sum(1 for record in by_key.values() if record is not None)
        logger.debug(f"Reference lookup: {found}/{len(by_key)} distinct names resolved")
        return {name: by_key[self._lookup_key(name)] for name in requested}

    async def enrich(
        self,
        records: Sequence[Mapping[str, Any]],
        name_field: str = "name",
    ) -> list[dict[str, Any]]:
        """
        Return copies of the records with ``reference_data`` attached.

        Records without a usable name get ``reference_data: None``. The input
        records are not modified and the batch never fails because of a
        single lookup.

        Args:
            records: Records referencing an external entity
            name_field: Key holding the referenced name

        Returns:
            New record dicts, in input order
        """
        names = [
            record.get(name_field)
            for record in records
            if isinstance(record.get(name_field), str)
        ]
        lookups = await self.lookup(names)

        enriched = []
        for record in records:
            item = dict(record)
            name = record.get(name_field)
            reference = lookups.get(name) if isinstance(name, str) else None
            item[REFERENCE_DATA_FIELD] = (
                {k: v for k, v in reference.fields.items() if v is not None}
                if reference is not None
                else None
            )
            enriched.append(item)
        return enriched


__all__ = ["EnrichmentPipeline", "REFERENCE_DATA_FIELD"]
