"""Catch-up reconciliation: backfill history missed while disconnected.

For each conversation the reconciler pulls ``conversations.history`` strictly
newer than the stored cursor (or a fallback window when there is none),
oldest first, and feeds every entry through the same normalizer and delivery
path as live events.  Thread parents found in that window have their replies
fetched with ``conversations.replies`` and anchored to the parent.

The cursor is advanced through ``advance_cursor`` after each top-level entry
(and its thread) has been handled, never to a reply ts, so an interrupted
pass resumes at the first unhandled top-level message.

No dedup happens beyond the timestamp boundary; downstream storage upserts by
``(conversation_id, id)`` so a re-run re-delivers the same set harmlessly.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING, Any

from threadline.connectors.metrics import get_error_type
from threadline.slack.events import message_from_history

if TYPE_CHECKING:
    from slack_sdk.web.async_client import AsyncWebClient

    from threadline.connectors.metrics import AdapterMetrics
    from threadline.slack.events import NewMessage
    from threadline.slack.models import CanonicalMessage, ConversationSyncState
    from threadline.slack.normalizer import EventNormalizer

logger = logging.getLogger(__name__)

HISTORY_PAGE_SIZE = 200


def _ts_key(message: dict[str, Any]) -> float:
    try:
        return float(message.get("ts") or 0)
    except (TypeError, ValueError):
        return 0.0


class CatchUpReconciler:
    def __init__(
        self,
        client: AsyncWebClient,
        normalizer: EventNormalizer,
        deliver: Callable[[CanonicalMessage], Awaitable[None]],
        *,
        advance_cursor: Callable[[str, str], None] | None = None,
        fallback_window_s: float = 12 * 60 * 60,
        metrics: AdapterMetrics | None = None,
    ) -> None:
        self._client = client
        self._normalizer = normalizer
        self._deliver = deliver
        self._advance_cursor = advance_cursor
        self._fallback_window_s = fallback_window_s
        self._metrics = metrics

    async def reconcile(self, conversations: Iterable[ConversationSyncState]) -> int:
        """Recover missed messages for every conversation; returns the delivered count.

        A failure in one conversation is logged and does not stop the others.
        """
        total = 0
        for state in conversations:
            try:
                recovered = await self._reconcile_conversation(state)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "Failed to catch up messages for conversation",
                    extra={"conversation_id": state.conversation_id, "error": str(exc)},
                )
                if self._metrics is not None:
                    self._metrics.record_error(get_error_type(exc), "catch_up")
                continue

            if recovered:
                logger.info(
                    "Recovered missed messages",
                    extra={"conversation_id": state.conversation_id, "count": recovered},
                )
            total += recovered

        if self._metrics is not None:
            self._metrics.record_catchup_recovered(total)
        return total

    def _oldest(self, state: ConversationSyncState) -> str:
        if state.last_known_timestamp:
            return state.last_known_timestamp
        return f"{time.time() - self._fallback_window_s:.6f}"

    async def _reconcile_conversation(self, state: ConversationSyncState) -> int:
        conversation_id = state.conversation_id
        oldest = self._oldest(state)

        messages = await self._fetch_all(
            "conversations.history",
            self._client.conversations_history,
            channel=conversation_id,
            oldest=oldest,
        )

        recovered = 0
        for raw in sorted(messages, key=_ts_key):
            # inclusive=False already excludes the boundary; keep it out regardless.
            if str(raw.get("ts")) == oldest:
                continue

            event = message_from_history(conversation_id, raw, self._normalizer.bot_user_id)
            if event is not None:
                if await self._normalize_and_deliver(event):
                    recovered += 1
                if event.reply_count > 0:
                    recovered += await self._reconcile_thread(
                        conversation_id, event.event_id, oldest
                    )

            # Top-level ts only: replies are newer than the history entries that follow them.
            if self._advance_cursor is not None and raw.get("ts"):
                self._advance_cursor(conversation_id, str(raw["ts"]))

        return recovered

    async def _reconcile_thread(self, conversation_id: str, parent_ts: str, oldest: str) -> int:
        try:
            replies = await self._fetch_all(
                "conversations.replies",
                self._client.conversations_replies,
                channel=conversation_id,
                ts=parent_ts,
                oldest=oldest,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "Failed to fetch thread replies during catch-up",
                extra={
                    "conversation_id": conversation_id,
                    "thread_key": parent_ts,
                    "error": str(exc),
                },
            )
            if self._metrics is not None:
                self._metrics.record_error(get_error_type(exc), "catch_up_thread")
            return 0

        recovered = 0
        for raw in sorted(replies, key=_ts_key):
            if str(raw.get("ts")) == parent_ts:
                continue
            event = message_from_history(
                conversation_id,
                raw,
                self._normalizer.bot_user_id,
                parent_ref=parent_ts,
            )
            if event is None:
                continue
            if await self._normalize_and_deliver(event):
                recovered += 1
        return recovered

    async def _normalize_and_deliver(self, event: NewMessage) -> bool:
        message = await self._normalizer.normalize_new_message(event)
        if message is None:
            return False
        await self._deliver(message)
        return True

    async def _fetch_all(
        self,
        api_method: str,
        call: Callable[..., Awaitable[Any]],
        **params: Any,
    ) -> list[dict[str, Any]]:
        """Collect every page of a cursor-paginated history call."""
        messages: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            kwargs = dict(params, limit=HISTORY_PAGE_SIZE, inclusive=False)
            if cursor:
                kwargs["cursor"] = cursor
            try:
                response = await call(**kwargs)
            except Exception:
                if self._metrics is not None:
                    self._metrics.record_source_api_call(api_method, "error")
                raise
            if self._metrics is not None:
                self._metrics.record_source_api_call(api_method, "success")

            messages.extend(m for m in response.get("messages") or [] if isinstance(m, dict))

            metadata = response.get("response_metadata") or {}
            cursor = metadata.get("next_cursor")
            if not response.get("has_more") or not cursor:
                return messages
