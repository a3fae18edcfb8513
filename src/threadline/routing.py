"""Formatting and routing between channel adapters and the agent pipeline."""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from typing import Protocol

from threadline.slack.models import CanonicalMessage

DEFAULT_FILES_ROOT = "data/files"
DEFAULT_CONTAINER_FILES_ROOT = "/workspace/files"

_CLOSED_INTERNAL = re.compile(r"<internal>.*?</internal>", re.DOTALL)
_UNCLOSED_INTERNAL = re.compile(r"<internal>.*", re.DOTALL)


class Channel(Protocol):
    """The part of a channel adapter the router needs."""

    name: str

    def owns_conversation_id(self, conversation_id: str) -> bool: ...

    def is_connected(self) -> bool: ...

    async def send(
        self,
        conversation_id: str,
        text: str,
        thread_key: str | None = None,
    ) -> str | None: ...


def escape_xml(s: str | None) -> str:
    if not s:
        return ""
    return (
        s.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def _container_path(local_path: str, files_root: str, container_root: str) -> str:
    prefix = files_root.rstrip("/") + "/"
    if local_path.startswith(prefix):
        return container_root.rstrip("/") + "/" + local_path[len(prefix) :]
    return local_path


def format_messages(
    messages: Iterable[CanonicalMessage],
    *,
    files_root: str = DEFAULT_FILES_ROOT,
    container_root: str = DEFAULT_CONTAINER_FILES_ROOT,
) -> str:
    """Render messages as the ``<messages>`` block handed to the agent.

    Attachment paths under *files_root* are rewritten to the agent's
    *container_root* mount.
    """
    lines = []
    for message in messages:
        inner = escape_xml(message.content)
        for attachment in message.attachments or []:
            path = _container_path(attachment.local_storage_path, files_root, container_root)
            inner += (
                f'\n<file name="{escape_xml(attachment.display_name)}"'
                f' type="{escape_xml(attachment.mime_type)}"'
                f' path="{escape_xml(path)}" />'
            )
        tz_attr = f' tz="{escape_xml(message.sender_timezone)}"' if message.sender_timezone else ""
        lines.append(
            f'<message sender="{escape_xml(message.sender_display_name)}"'
            f' time="{message.timestamp_iso}"{tz_attr}'
            f' id="{escape_xml(message.id)}">{inner}</message>'
        )
    return "<messages>\n" + "\n".join(lines) + "\n</messages>"


def strip_internal_tags(text: str) -> str:
    """Remove ``<internal>`` blocks, including one left unclosed at the end."""
    result = _CLOSED_INTERNAL.sub("", text)
    result = _UNCLOSED_INTERNAL.sub("", result)
    return result.strip()


def format_outbound(raw_text: str) -> str:
    """Prepare agent output for a channel; empty string means send nothing."""
    return strip_internal_tags(raw_text)


def find_channel(channels: Sequence[Channel], conversation_id: str) -> Channel | None:
    for channel in channels:
        if channel.owns_conversation_id(conversation_id):
            return channel
    return None


async def route_outbound(
    channels: Sequence[Channel],
    conversation_id: str,
    text: str,
    thread_key: str | None = None,
) -> str | None:
    """Send via the channel that owns *conversation_id*.

    A connected owner is preferred. A disconnected owner still receives the
    send so it can queue the text until its connection returns.

    Raises:
        LookupError: No channel owns the conversation.
    """
    owners = [c for c in channels if c.owns_conversation_id(conversation_id)]
    for channel in owners:
        if channel.is_connected():
            return await channel.send(conversation_id, text, thread_key)
    if owners:
        return await owners[0].send(conversation_id, text, thread_key)
    raise LookupError(f"No channel for conversation: {conversation_id}")
