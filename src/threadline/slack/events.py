"""Tagged variants for inbound Slack events.

Slack delivers new messages, edits and deletions on the same ``message``
wire shape, distinguished only by ``subtype``.  ``parse_event`` turns a raw
event payload into exactly one of ``NewMessage``, ``MessageEdit``,
``MessageDelete`` or ``ReactionAdded``; everything the adapter does not
ingest maps to ``None``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

SUBTYPE_CHANGED = "message_changed"
SUBTYPE_DELETED = "message_deleted"
SUBTYPE_FILE_SHARE = "file_share"

# Subtypes that still carry user content; everything else (joins, topic
# changes, bot messages, ...) is administrative.
CONTENT_SUBTYPES = frozenset({SUBTYPE_FILE_SHARE})


@dataclass(frozen=True)
class AttachmentRef:
    """A file reference as announced by Slack, before download."""

    file_id: str
    name: str
    mime_type: str
    declared_size: int
    url: str | None

    @classmethod
    def from_slack(cls, file: dict[str, Any]) -> AttachmentRef:
        file_id = str(file.get("id", ""))
        return cls(
            file_id=file_id,
            name=file.get("name") or f"file-{file_id}",
            mime_type=file.get("mimetype") or "application/octet-stream",
            declared_size=int(file.get("size") or 0),
            url=file.get("url_private_download") or file.get("url_private"),
        )


def _attachment_refs(files: Any) -> tuple[AttachmentRef, ...]:
    if not isinstance(files, list):
        return ()
    return tuple(AttachmentRef.from_slack(f) for f in files if isinstance(f, dict))


@dataclass(frozen=True)
class NewMessage:
    conversation_id: str
    event_id: str
    user_id: str
    text: str
    parent_ref: str | None = None
    is_mention: bool = False
    reply_count: int = 0
    files: tuple[AttachmentRef, ...] = field(default_factory=tuple)
    subtype: str | None = None
    is_bot_authored: bool = False


@dataclass(frozen=True)
class MessageEdit:
    conversation_id: str
    event_id: str
    user_id: str
    text: str
    parent_ref: str | None = None
    is_mention: bool = False
    reply_count: int = 0
    files: tuple[AttachmentRef, ...] = field(default_factory=tuple)
    is_bot_authored: bool = False
    event_ts: str | None = None


@dataclass(frozen=True)
class MessageDelete:
    conversation_id: str
    deleted_id: str | None
    event_ts: str | None = None
    is_bot_authored: bool = False


@dataclass(frozen=True)
class ReactionAdded:
    conversation_id: str
    reacted_id: str
    user_id: str
    reaction: str
    event_ts: str


InboundEvent = NewMessage | MessageEdit | MessageDelete | ReactionAdded


def payload_conversation_id(payload: dict[str, Any]) -> str | None:
    """Conversation id of a raw event, wherever the event type keeps it."""
    channel = payload.get("channel")
    if not isinstance(channel, str):
        item = payload.get("item")
        channel = item.get("channel") if isinstance(item, dict) else None
    return channel if isinstance(channel, str) and channel else None


def mentions_user(text: str, user_id: str) -> bool:
    return bool(user_id) and f"<@{user_id}>" in (text or "")


def _is_bot_authored(message: dict[str, Any], bot_user_id: str) -> bool:
    if message.get("bot_id"):
        return True
    return bool(bot_user_id) and message.get("user") == bot_user_id


def _reply_count(message: dict[str, Any]) -> int:
    try:
        return int(message.get("reply_count") or 0)
    except (TypeError, ValueError):
        return 0


def message_from_history(
    conversation_id: str,
    message: dict[str, Any],
    bot_user_id: str,
    *,
    parent_ref: str | None = None,
) -> NewMessage | None:
    """Build a ``NewMessage`` from a ``conversations.history``/``replies`` entry.

    Returns None for bot-authored messages, administrative subtypes and
    entries without ``ts`` or ``user``.
    """
    subtype = message.get("subtype")
    if _is_bot_authored(message, bot_user_id):
        return None
    if subtype and subtype not in CONTENT_SUBTYPES:
        return None
    ts = message.get("ts")
    user = message.get("user")
    if not ts or not user:
        return None

    text = message.get("text") or ""
    return NewMessage(
        conversation_id=conversation_id,
        event_id=str(ts),
        user_id=str(user),
        text=text,
        parent_ref=parent_ref or message.get("thread_ts"),
        is_mention=mentions_user(text, bot_user_id),
        reply_count=_reply_count(message),
        files=_attachment_refs(message.get("files")),
        subtype=subtype,
    )


def parse_event(payload: dict[str, Any], bot_user_id: str) -> InboundEvent | None:
    """Map a raw Slack event payload to an ``InboundEvent`` variant."""
    event_type = payload.get("type")

    if event_type == "app_mention":
        user = payload.get("user")
        if not user or not payload.get("ts"):
            return None
        return NewMessage(
            conversation_id=str(payload.get("channel", "")),
            event_id=str(payload["ts"]),
            user_id=str(user),
            text=payload.get("text") or "",
            parent_ref=payload.get("thread_ts"),
            is_mention=True,
            reply_count=_reply_count(payload),
            files=_attachment_refs(payload.get("files")),
            is_bot_authored=_is_bot_authored(payload, bot_user_id),
        )

    if event_type == "message":
        return _parse_message_event(payload, bot_user_id)

    if event_type == "reaction_added":
        item = payload.get("item") or {}
        user = payload.get("user")
        if not user or user == bot_user_id:
            return None
        if item.get("type") != "message" or not item.get("ts"):
            return None
        return ReactionAdded(
            conversation_id=str(item.get("channel", "")),
            reacted_id=str(item["ts"]),
            user_id=str(user),
            reaction=str(payload.get("reaction", "")),
            event_ts=str(payload.get("event_ts") or item["ts"]),
        )

    logger.debug("Ignoring unsupported Slack event", extra={"event_type": event_type})
    return None


def _parse_message_event(payload: dict[str, Any], bot_user_id: str) -> InboundEvent | None:
    channel = str(payload.get("channel", ""))
    subtype = payload.get("subtype")

    if subtype == SUBTYPE_CHANGED:
        message = payload.get("message")
        if not isinstance(message, dict):
            return None
        text = message.get("text") or ""
        return MessageEdit(
            conversation_id=channel,
            event_id=str(message.get("ts") or ""),
            user_id=str(message.get("user") or ""),
            text=text,
            parent_ref=message.get("thread_ts"),
            is_mention=mentions_user(text, bot_user_id),
            reply_count=_reply_count(message),
            files=_attachment_refs(message.get("files")),
            is_bot_authored=_is_bot_authored(message, bot_user_id),
            event_ts=payload.get("event_ts") or payload.get("ts"),
        )

    if subtype == SUBTYPE_DELETED:
        previous = payload.get("previous_message") or {}
        return MessageDelete(
            conversation_id=channel,
            deleted_id=payload.get("deleted_ts") or previous.get("ts"),
            event_ts=payload.get("event_ts") or payload.get("ts"),
            is_bot_authored=_is_bot_authored(previous, bot_user_id),
        )

    if subtype and subtype not in CONTENT_SUBTYPES:
        return None
    if _is_bot_authored(payload, bot_user_id):
        return None

    # Channel messages arrive through app_mention; only DMs are ingested here.
    if not channel.startswith("D"):
        return None

    user = payload.get("user") or ""
    files = _attachment_refs(payload.get("files"))
    ts = payload.get("ts")
    if not ts or (not user and not files):
        return None

    text = payload.get("text") or ""
    return NewMessage(
        conversation_id=channel,
        event_id=str(ts),
        user_id=str(user),
        text=text,
        parent_ref=payload.get("thread_ts"),
        is_mention=mentions_user(text, bot_user_id),
        reply_count=_reply_count(payload),
        files=files,
        subtype=subtype,
    )
