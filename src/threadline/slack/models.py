"""Records exchanged between the Slack adapter and the downstream pipeline."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, NamedTuple

from pydantic import BaseModel


def ts_to_iso(ts: str) -> str:
    """Convert a Slack ``ts`` (epoch seconds with micro suffix) to ISO-8601 UTC."""
    return datetime.fromtimestamp(float(ts), UTC).isoformat()


class Attachment(BaseModel):
    """A downloaded file attached to a message."""

    display_name: str
    mime_type: str
    size_bytes: int
    local_storage_path: str


class CanonicalMessage(BaseModel):
    """The unit handed to the downstream pipeline.

    ``(conversation_id, id)`` is the primary key; a second delivery with the
    same key is an edit and must replace the stored content.
    """

    id: str
    conversation_id: str
    sender_id: str
    sender_display_name: str
    sender_timezone: str | None = None
    content: str
    timestamp_iso: str
    is_from_self: bool = False
    is_bot_origin: bool = False
    thread_key: str | None = None
    attachments: list[Attachment] | None = None
    is_reaction_event: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.conversation_id, self.id)


class DeletedMessageKey(NamedTuple):
    """Key of a message that must be removed from downstream storage."""

    conversation_id: str
    id: str


@dataclass(frozen=True)
class IdentityRecord:
    display_name: str
    timezone: str | None = None


@dataclass
class OutboundItem:
    """A logical outbound message waiting for (re)delivery."""

    conversation_id: str
    text: str
    thread_key: str | None = None
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    attempts: int = 0


@dataclass(frozen=True)
class ConversationSyncState:
    conversation_id: str
    last_known_timestamp: str | None = None


@dataclass(frozen=True)
class StoredMessage:
    """Downstream view of a previously stored message, used to resolve reactions."""

    content: str
    thread_key: str | None
    is_bot_message: bool


HookResult = Awaitable[None] | None


@dataclass
class PipelineHooks:
    """Callbacks into the downstream pipeline.

    Hooks may be plain functions or coroutine functions.
    ``registered_conversations`` and ``lookup_message`` must be synchronous.
    """

    on_message: Callable[[str, CanonicalMessage], HookResult]
    on_conversation_seen: Callable[[str, str], HookResult]
    registered_conversations: Callable[[], Mapping[str, Any]]
    on_message_deleted: Callable[[str, str], HookResult] | None = None
    lookup_message: Callable[[str, str], StoredMessage | None] | None = None

    def is_registered(self, conversation_id: str) -> bool:
        return conversation_id in self.registered_conversations()


async def call_hook(hook: Callable[..., HookResult], *args: Any) -> None:
    """Invoke a pipeline hook, awaiting it when it returns an awaitable."""
    result = hook(*args)
    if inspect.isawaitable(result):
        await result
