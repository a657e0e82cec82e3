"""
OSRS Wiki source adapter (REFERENCE).

Looks up descriptive data (bosses, items, locations) by free-text name using
the MediaWiki query API. The wiki never errors for unknown titles: it returns
a page marked ``missing``, which this adapter reports as None.

API Endpoint:
- GET {base_url}?action=query&format=json&prop=extracts|info&exintro=1
      &explaintext=1&redirects=1&inprop=url&titles={title}

Response Format:
{
  "query": {
    "pages": {
      "12345": {
        "pageid": 12345,
        "title": "Zulrah",
        "extract": "Zulrah is a level 725 boss...",
        "fullurl": "https://oldschool.runescape.wiki/w/Zulrah"
      }
    }
  }
}

Name normalization: underscores become spaces, whitespace is collapsed and
the first character upper-cased (MediaWiki title rules). Cache keys are
case-folded, so "zulrah" and "Zulrah" share one entry.
"""

import logging
from typing import Any

from ironsync.core.reconcile.exceptions import EntityNotFoundError
from ironsync.core.reconcile.models import SourceKind, SourceRecord
from ironsync.core.reconcile.sources.base import BaseSourceAdapter, require_mapping

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://oldschool.runescape.wiki/api.php"

# Longest summary kept from a page extract
MAX_SUMMARY_LENGTH = 500


class WikiSource(BaseSourceAdapter):
    """
    Adapter for the OSRS Wiki MediaWiki API.

    Attributes:
        user_agent: User-Agent header; the wiki asks clients to identify themselves
    """

    kind = SourceKind.REFERENCE
    name = "wiki"

    FIELD_TYPES = {
        "title": str,
        "page_id": int,
        "summary": str,
        "url": str,
    }

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        user_agent: str = "ironsync",
        **kwargs: Any,
    ) -> None:
        super().__init__(base_url, **kwargs)
        self.user_agent = user_agent

    def normalize_name(self, identity: str) -> str:
        title = " ".join(identity.replace("_", " ").split())
        return title[:1].upper() + title[1:]

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["User-Agent"] = self.user_agent
        return headers

    async def _fetch_remote(self, name: str, identity: str) -> SourceRecord | None:
        if not name:
            raise EntityNotFoundError(self.name, identity)

        params = {
            "action": "query",
            "format": "json",
            "prop": "extracts|info",
            "exintro": "1",
            "explaintext": "1",
            "redirects": "1",
            "inprop": "url",
            "titles": name,
        }
        payload = require_mapping(
            self.name, await self._request("GET", self.base_url, identity, params=params)
        )

        pages = (payload.get("query") or {}).get("pages") or {}
        page = next(iter(pages.values()), None) if isinstance(pages, dict) else None
        if not isinstance(page, dict) or "missing" in page or "invalid" in page:
            raise EntityNotFoundError(self.name, identity, title=name)

        return self.parse(page, identity)

    def parse(self, payload: dict[str, Any], identity: str | None = None) -> SourceRecord:
        """Convert a MediaWiki page object into a SourceRecord."""
        title = payload.get("title") or identity or ""
        summary = payload.get("extract")
        if isinstance(summary, str) and len(summary) > MAX_SUMMARY_LENGTH:
            summary = summary[: MAX_SUMMARY_LENGTH - 3].rstrip() + "..."

        fields = {
            "title": title,
            "page_id": payload.get("pageid"),
            "summary": summary,
            "url": payload.get("fullurl"),
        }
        return SourceRecord(
            source=self.kind,
            identity=identity or title,
            fields=self._coerce_fields(fields),
            raw=payload,
        )


__all__ = ["WikiSource", "DEFAULT_BASE_URL"]
