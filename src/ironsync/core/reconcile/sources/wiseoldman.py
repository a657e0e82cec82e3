"""
Wise Old Man source adapter (SECONDARY).

Fetches player statistics from the Wise Old Man public API. Used as the
fallback when the plugin feed is down and to fill fields the plugin does not
report (efficiency metrics, boss kill counts, account type).

API Endpoints:
- Player details: GET  {base_url}/players/{username}
- Track player:   POST {base_url}/players/{username}

The API is public but rate limited; 429 responses are retried with backoff
and reported as SourceUnavailableError(rate_limited=True) once retries are
exhausted. Unknown players return 404.

Response Format (abridged):
{
  "id": 1135,
  "username": "zezima",
  "displayName": "Zezima",
  "type": "regular",
  "build": "main",
  "exp": 256000000,
  "ehp": 1520.3,
  "ehb": 210.7,
  "ttm": 0,
  "combatLevel": 126,
  "updatedAt": "2024-05-01T12:00:00.000Z",
  "latestSnapshot": {
    "data": {
      "skills": {"overall": {"level": 2277, "experience": 256000000}, ...},
      "bosses": {"zulrah": {"kills": 1520}, ...}
    }
  }
}

Name normalization: hyphens and underscores become spaces, whitespace is
collapsed and the result lower-cased, matching Wise Old Man's own username
standardisation.
"""

import logging
import re
from typing import Any
from urllib.parse import quote

from ironsync.core.reconcile.exceptions import (
    EntityNotFoundError,
    MalformedPayloadError,
    SourceError,
)
from ironsync.core.reconcile.models import SourceKind, SourceRecord, utcnow
from ironsync.core.reconcile.sources.base import BaseSourceAdapter, require_mapping

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.wiseoldman.net/v2"

_SEPARATORS = re.compile(r"[-_\s]+")


class WiseOldManSource(BaseSourceAdapter):
    """
    Adapter for the Wise Old Man v2 player API.

    Attributes:
        user_agent: User-Agent header sent to the API
        api_key: Optional API key raising the rate limit
    """

    kind = SourceKind.SECONDARY
    name = "wiseoldman"

    FIELD_TYPES = {
        "name": str,
        "account_type": str,
        "build": str,
        "combat_level": int,
        "total_level": int,
        "total_experience": int,
        "skills": dict,
        "bosses": dict,
        "ehp": (int, float),
        "ehb": (int, float),
        "ttm": (int, float),
        "last_updated": str,
    }

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        user_agent: str = "ironsync",
        api_key: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(base_url, **kwargs)
        self.user_agent = user_agent
        self.api_key = api_key

    def normalize_name(self, identity: str) -> str:
        return _SEPARATORS.sub(" ", identity).strip().lower()

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["User-Agent"] = self.user_agent
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def _fetch_remote(self, name: str, identity: str) -> SourceRecord | None:
        url = f"{self.base_url}/players/{quote(name)}"
        payload = await self._request("GET", url, identity)
        return self.parse(require_mapping(self.name, payload, url), identity)

    async def track(self, identity: str) -> SourceRecord | None:
        """
        Ask Wise Old Man to re-fetch a player from the game hiscores.

        On success the fresh record replaces the cached one.

        Returns:
            The updated record, or None if the player is unknown

        Raises:
            SourceError: If the update request fails
        """
        name = self.normalize_name(identity)
        url = f"{self.base_url}/players/{quote(name)}"
        self._update_status(last_attempt_at=utcnow())
        try:
            payload = await self._request("POST", url, identity)
        except EntityNotFoundError:
            self._record_success()
            return None
        except SourceError as e:
            self._record_failure(e)
            raise
        record = self.parse(require_mapping(self.name, payload, url), identity)
        self._cache.set(self.cache_key(identity), record)
        self._record_success()
        return record

    def parse(self, payload: dict[str, Any], identity: str | None = None) -> SourceRecord:
        """
        Convert a Wise Old Man player details body into a SourceRecord.

        Raises:
            MalformedPayloadError: If the body has no username
        """
        username = payload.get("username") or identity
        if not isinstance(username, str) or not username.strip():
            raise MalformedPayloadError(self.name, "Player payload has no username")

        snapshot = payload.get("latestSnapshot") or {}
        data = snapshot.get("data") if isinstance(snapshot, dict) else None
        data = data if isinstance(data, dict) else {}
        raw_skills = data.get("skills")
        raw_bosses = data.get("bosses")

        skills = _map_skills(raw_skills) if isinstance(raw_skills, dict) else raw_skills
        overall = skills.pop("overall", {}) if isinstance(skills, dict) else {}

        fields = {
            "name": payload.get("displayName") or username,
            "account_type": payload.get("type"),
            "build": payload.get("build"),
            "combat_level": payload.get("combatLevel"),
            "total_level": overall.get("level"),
            "total_experience": overall.get("experience", payload.get("exp")),
            "skills": skills,
            "bosses": _map_bosses(raw_bosses) if isinstance(raw_bosses, dict) else raw_bosses,
            "ehp": payload.get("ehp"),
            "ehb": payload.get("ehb"),
            "ttm": payload.get("ttm"),
            "last_updated": payload.get("updatedAt"),
        }

        return SourceRecord(
            source=self.kind,
            identity=identity or username,
            fields=self._coerce_fields(fields),
            raw=payload,
        )


def _map_skills(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    skills: dict[str, dict[str, Any]] = {}
    for metric, value in raw.items():
        if isinstance(value, dict):
            skills[metric] = {
                "level": value.get("level"),
                "experience": value.get("experience"),
            }
    return skills


def _map_bosses(raw: dict[str, Any]) -> dict[str, int]:
    bosses: dict[str, int] = {}
    for metric, value in raw.items():
        kills = value.get("kills") if isinstance(value, dict) else None
        # WOM reports -1 for unranked kill counts
        if isinstance(kills, int) and kills > 0:
            bosses[metric] = kills
    return bosses


__all__ = ["WiseOldManSource", "DEFAULT_BASE_URL"]
