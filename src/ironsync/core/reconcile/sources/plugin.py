"""
Plugin feed source adapter (PRIMARY).

Fetches live member state from the tracking plugin's own REST API. This is
the most trusted source: whatever it reports wins every merge conflict.

API Endpoint:
- Member: GET {base_url}/player/{name}  (Authorization: Bearer <token>)

The body is the plugin's member object, e.g.:
{
  "name": "Zezima",
  "combat_level": 126,
  "total_level": 2277,
  "skills": {"attack": {"level": 99, "experience": 13034431}},
  "stats": {"hitpoints": [99, 99], "prayer": [70, 99], "world": 302},
  "coordinates": "[3222, 3218, 0]",
  "interacting": "Zulrah",
  "inventory": "[{\"id\": 995, \"quantity\": 100}]",
  "equipment": {"weapon": {"id": 12926, "name": "Toxic blowpipe"}},
  "quests": {"Dragon Slayer I": "FINISHED"},
  "last_updated": "2024-05-01T12:00:00Z"
}

Name normalization: trims and collapses whitespace, case preserved (the
plugin stores display names). Cache keys are case-folded.

Example:
    >>> adapter = PluginSource("https://example.com/api", auth_token="secret")
    >>> record = await adapter.fetch("Zezima")
    >>> record.fields["combat_level"]
    126
"""

import json
import logging
from typing import Any
from urllib.parse import quote

from ironsync.core.reconcile.exceptions import MalformedPayloadError
from ironsync.core.reconcile.models import SourceKind, SourceRecord
from ironsync.core.reconcile.sources.base import BaseSourceAdapter, require_mapping

logger = logging.getLogger(__name__)

# Plugin fields that hold JSON encoded as strings
_JSON_STRING_FIELDS = ("coordinates", "inventory", "bank")


class PluginSource(BaseSourceAdapter):
    """
    Adapter for the tracking plugin's authenticated member endpoint.

    Attributes:
        auth_token: Bearer token sent with every request (may be empty)
    """

    kind = SourceKind.PRIMARY
    name = "plugin"

    FIELD_TYPES = {
        "name": str,
        "combat_level": int,
        "total_level": int,
        "skills": dict,
        "stats": dict,
        "coordinates": list,
        "interacting": str,
        "inventory": list,
        "equipment": dict,
        "bank": list,
        "quests": dict,
        "collection_log": dict,
        "last_updated": str,
    }

    def __init__(self, base_url: str, *, auth_token: str = "", **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)
        self.auth_token = auth_token

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    async def _fetch_remote(self, name: str, identity: str) -> SourceRecord | None:
        url = f"{self.base_url}/player/{quote(name)}"
        payload = await self._request("GET", url, identity)
        return self.parse(require_mapping(self.name, payload, url), identity)

    def parse(self, payload: dict[str, Any], identity: str | None = None) -> SourceRecord:
        """
        Convert a plugin member object into a SourceRecord.

        Args:
            payload: Member object from the API or a pushed update
            identity: Identity requested; defaults to the payload's name

        Raises:
            MalformedPayloadError: If no identity can be determined
        """
        name = payload.get("name") or identity
        if not isinstance(name, str) or not name.strip():
            raise MalformedPayloadError(self.name, "Member payload has no name")

        fields = {key: payload.get(key) for key in self.FIELD_TYPES}
        fields["name"] = name
        for key in _JSON_STRING_FIELDS:
            fields[key] = self._decode_json_field(key, fields[key])

        fields = self._coerce_fields(fields)

        # Derive total level from skills when the plugin did not send it
        if fields.get("total_level") is None and isinstance(fields.get("skills"), dict):
            fields["total_level"] = _sum_levels(fields["skills"])

        enrichment_keys: dict[str, str] = {}
        interacting = fields.get("interacting")
        if isinstance(interacting, str) and interacting.strip():
            enrichment_keys["interacting_details"] = interacting

        return SourceRecord(
            source=self.kind,
            identity=self.normalize_name(identity or name),
            fields=fields,
            enrichment_keys=enrichment_keys,
            raw=payload,
        )

    def _decode_json_field(self, key: str, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            # Left as a string so field validation reports and drops it
            logger.debug(f"[{self.name}] field '{key}' is not valid JSON")
            return value


def _sum_levels(skills: dict[str, Any]) -> int | None:
    levels = []
    for name, skill in skills.items():
        if name == "overall":
            continue
        level = skill.get("level") if isinstance(skill, dict) else None
        if isinstance(level, int) and not isinstance(level, bool):
            levels.append(level)
    return sum(levels) if levels else None


__all__ = ["PluginSource"]
