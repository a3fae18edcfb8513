"""Turn parsed Slack events into canonical pipeline records.

Each ``normalize_*`` method first reports the conversation to the discovery
side channel (``on_conversation_seen``), whether or not the conversation is
registered, and then returns either a record for the pipeline or ``None``
when the event must be dropped.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from threadline.slack.events import CONTENT_SUBTYPES
from threadline.slack.models import (
    CanonicalMessage,
    DeletedMessageKey,
    call_hook,
    ts_to_iso,
)
from threadline.slack.threads import resolve_thread_key

if TYPE_CHECKING:
    from slack_sdk.web.async_client import AsyncWebClient

    from threadline.connectors.metrics import AdapterMetrics
    from threadline.slack.events import MessageDelete, MessageEdit, NewMessage, ReactionAdded
    from threadline.slack.files import FileFetcher
    from threadline.slack.identity import IdentityCache
    from threadline.slack.models import Attachment, PipelineHooks

logger = logging.getLogger(__name__)

REACTION_SNIPPET_LENGTH = 200


def _timestamp_iso(ts: str | None) -> str:
    if ts:
        try:
            return ts_to_iso(ts)
        except (TypeError, ValueError, OverflowError):
            pass
    return datetime.now(UTC).isoformat()


def reaction_content(reaction: str, reacted_content: str | None) -> str:
    """Describe a reaction, quoting at most ``REACTION_SNIPPET_LENGTH`` chars of the target."""
    if not reacted_content:
        return f"[reacted with :{reaction}:]"
    snippet = reacted_content
    if len(snippet) > REACTION_SNIPPET_LENGTH:
        snippet = snippet[:REACTION_SNIPPET_LENGTH] + "..."
    return f'[reacted with :{reaction}: to: "{snippet}"]'


class EventNormalizer:
    """Normalizes ``InboundEvent`` variants into ``CanonicalMessage`` records."""

    def __init__(
        self,
        identities: IdentityCache,
        files: FileFetcher,
        hooks: PipelineHooks,
        client: AsyncWebClient,
        metrics: AdapterMetrics | None = None,
        bot_user_id: str = "",
    ) -> None:
        self._identities = identities
        self._files = files
        self._hooks = hooks
        self._client = client
        self._metrics = metrics
        # Set by the adapter after auth.test
        self.bot_user_id = bot_user_id

    def strip_self_mention(self, text: str) -> str:
        if not self.bot_user_id:
            return text.strip()
        return re.sub(rf"<@{re.escape(self.bot_user_id)}>\s*", "", text).strip()

    async def report_seen(self, conversation_id: str, ts: str | None) -> None:
        """Fire the discovery hook; runs for every inbound event, registered or not."""
        if not conversation_id:
            return
        await call_hook(self._hooks.on_conversation_seen, conversation_id, _timestamp_iso(ts))

    def _record(self, kind: str, result: str) -> None:
        if self._metrics is not None:
            self._metrics.record_inbound_event(kind, result)

    async def _download(self, conversation_id: str, event_id: str, refs: Any) -> list[Attachment]:
        if not refs:
            return []
        return await self._files.fetch(conversation_id, event_id, refs)

    async def normalize_new_message(self, event: NewMessage) -> CanonicalMessage | None:
        """Normalize a new message (live mention, DM or recovered history entry)."""
        await self.report_seen(event.conversation_id, event.event_id)

        if event.is_bot_authored or (
            self.bot_user_id and event.user_id == self.bot_user_id
        ):
            self._record("message", "dropped")
            return None
        if event.subtype and event.subtype not in CONTENT_SUBTYPES:
            self._record("message", "dropped")
            return None

        text = self.strip_self_mention(event.text)
        if not text and not event.files:
            self._record("message", "dropped")
            return None

        if not self._hooks.is_registered(event.conversation_id):
            self._record("message", "unregistered")
            return None

        thread_key = resolve_thread_key(
            event.event_id,
            event.parent_ref,
            is_mention=event.is_mention,
            reply_count=event.reply_count,
        )
        identity = await self._identities.resolve(event.user_id)
        attachments = await self._download(event.conversation_id, event.event_id, event.files)

        if not text and not attachments:
            # Every attachment was skipped and there is nothing else to say.
            self._record("message", "dropped")
            return None

        self._record("message", "delivered")
        return CanonicalMessage(
            id=event.event_id,
            conversation_id=event.conversation_id,
            sender_id=event.user_id,
            sender_display_name=identity.display_name,
            sender_timezone=identity.timezone,
            content=text,
            timestamp_iso=_timestamp_iso(event.event_id),
            thread_key=thread_key,
            attachments=attachments or None,
        )

    async def normalize_edit(self, event: MessageEdit) -> CanonicalMessage | None:
        """Normalize an edit; the result replaces the stored ``(conversation_id, id)`` entry."""
        await self.report_seen(event.conversation_id, event.event_ts or event.event_id)

        if event.is_bot_authored:
            self._record("edit", "dropped")
            return None
        if not self._hooks.is_registered(event.conversation_id):
            self._record("edit", "unregistered")
            return None
        if not event.user_id or not event.event_id:
            self._record("edit", "dropped")
            return None

        text = self.strip_self_mention(event.text)
        attachments = await self._download(event.conversation_id, event.event_id, event.files)
        if not text and not attachments:
            self._record("edit", "dropped")
            return None

        thread_key = resolve_thread_key(
            event.event_id,
            event.parent_ref,
            is_mention=event.is_mention,
            reply_count=event.reply_count,
        )
        identity = await self._identities.resolve(event.user_id)

        self._record("edit", "delivered")
        return CanonicalMessage(
            id=event.event_id,
            conversation_id=event.conversation_id,
            sender_id=event.user_id,
            sender_display_name=identity.display_name,
            sender_timezone=identity.timezone,
            content=text,
            # Original send time, so the upsert keeps the message's position.
            timestamp_iso=_timestamp_iso(event.event_id),
            thread_key=thread_key,
            attachments=attachments or None,
        )

    async def normalize_delete(self, event: MessageDelete) -> DeletedMessageKey | None:
        await self.report_seen(event.conversation_id, event.event_ts or event.deleted_id)

        if event.is_bot_authored:
            self._record("delete", "dropped")
            return None
        if not self._hooks.is_registered(event.conversation_id):
            self._record("delete", "unregistered")
            return None
        if not event.deleted_id:
            self._record("delete", "dropped")
            return None

        self._record("delete", "delivered")
        return DeletedMessageKey(conversation_id=event.conversation_id, id=event.deleted_id)

    async def normalize_reaction(self, event: ReactionAdded) -> CanonicalMessage | None:
        """Synthesize a message for a reaction on one of the bot's own messages.

        The pipeline's local copy is consulted first because it also covers
        thread replies, which ``conversations.history`` does not return.
        """
        await self.report_seen(event.conversation_id, event.event_ts)

        if not self._hooks.is_registered(event.conversation_id):
            self._record("reaction", "unregistered")
            return None

        reacted_content: str | None = None
        thread_key: str | None = None

        if self._hooks.lookup_message is not None:
            stored = self._hooks.lookup_message(event.conversation_id, event.reacted_id)
            if stored is not None:
                if not stored.is_bot_message:
                    self._record("reaction", "dropped")
                    return None
                reacted_content = stored.content
                thread_key = stored.thread_key

        # Not stored, or stored without text (e.g. a file-only post): ask Slack.
        if not reacted_content:
            message = await self._fetch_reacted_message(event)
            if message is None or not self.bot_user_id or message.get("user") != self.bot_user_id:
                self._record("reaction", "dropped")
                return None
            reacted_content = message.get("text") or ""
            thread_key = message.get("thread_ts")

        identity = await self._identities.resolve(event.user_id)

        self._record("reaction", "delivered")
        return CanonicalMessage(
            id=f"reaction-{event.event_ts}",
            conversation_id=event.conversation_id,
            sender_id=event.user_id,
            sender_display_name=identity.display_name,
            sender_timezone=identity.timezone,
            content=reaction_content(event.reaction, reacted_content),
            timestamp_iso=_timestamp_iso(event.event_ts),
            thread_key=thread_key or event.reacted_id,
            is_reaction_event=True,
        )

    async def _fetch_reacted_message(self, event: ReactionAdded) -> dict[str, Any] | None:
        try:
            response = await self._client.conversations_history(
                channel=event.conversation_id,
                latest=event.reacted_id,
                inclusive=True,
                limit=1,
            )
        except Exception as exc:
            logger.debug(
                "Failed to look up reacted-to message",
                extra={
                    "conversation_id": event.conversation_id,
                    "event_id": event.reacted_id,
                    "error": str(exc),
                },
            )
            if self._metrics is not None:
                self._metrics.record_source_api_call("conversations.history", "error")
            return None

        if self._metrics is not None:
            self._metrics.record_source_api_call("conversations.history", "success")
        messages = response.get("messages") or []
        if not messages:
            return None
        message = messages[0]
        # A thread reply is not in channel history; latest= then returns an older message.
        if str(message.get("ts")) != event.reacted_id:
            return None
        return message
