"""Slack user identity cache: display names, timezones and mention expansion."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from threadline.slack.models import IdentityRecord

if TYPE_CHECKING:
    from slack_sdk.web.async_client import AsyncWebClient

    from threadline.connectors.metrics import AdapterMetrics

logger = logging.getLogger(__name__)


class IdentityCache:
    """Per-process cache of ``users.info`` lookups.

    Entries are never invalidated; a display name change mid-session is
    picked up on the next process start.  Concurrent lookups for the same
    uncached user may both hit the API, and the last write wins.
    """

    def __init__(
        self,
        client: AsyncWebClient,
        metrics: AdapterMetrics | None = None,
    ) -> None:
        self._client = client
        self._metrics = metrics
        self._records: dict[str, IdentityRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def get(self, user_id: str) -> IdentityRecord | None:
        return self._records.get(user_id)

    def prime(self, user_id: str, record: IdentityRecord) -> None:
        """Seed the cache without an API call."""
        self._records[user_id] = record

    async def resolve(self, user_id: str) -> IdentityRecord:
        """Return the display name and timezone for *user_id*.

        Lookup failures fall back to the raw user id and are not cached.
        """
        cached = self._records.get(user_id)
        if cached is not None:
            return cached

        try:
            result = await self._client.users_info(user=user_id)
        except Exception as exc:
            logger.debug(
                "Failed to resolve user info",
                extra={"user_id": user_id, "error": str(exc)},
            )
            if self._metrics is not None:
                self._metrics.record_source_api_call(api_method="users.info", status="error")
            return IdentityRecord(display_name=user_id)

        if self._metrics is not None:
            self._metrics.record_source_api_call(api_method="users.info", status="success")

        user = result.get("user") or {}
        profile = user.get("profile") or {}
        name = profile.get("display_name") or user.get("real_name") or user.get("name") or user_id
        record = IdentityRecord(display_name=name, timezone=user.get("tz") or None)
        self._records[user_id] = record
        return record

    def reverse_index(self) -> dict[str, str]:
        """Map lower-cased display names back to user ids."""
        return {record.display_name.lower(): user_id for user_id, record in self._records.items()}

    def resolve_mentions(self, text: str) -> str:
        """Rewrite ``@Name`` / ``<@Name>`` tokens as Slack ``<@U...>`` mentions.

        Names are matched longest first so "@Matt Weiss" is not consumed by a
        shorter "Matt" entry.
        """
        if "@" not in text:
            return text

        name_to_id = self.reverse_index()
        if not name_to_id:
            return text

        for name in sorted(name_to_id, key=len, reverse=True):
            escaped = re.escape(name)
            pattern = re.compile(rf"<@{escaped}>|@{escaped}\b", re.IGNORECASE)
            replacement = f"<@{name_to_id[name]}>"
            text = pattern.sub(lambda _m, r=replacement: r, text)

        return text
