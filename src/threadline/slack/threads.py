"""Thread association for inbound Slack events."""

from __future__ import annotations


def resolve_thread_key(
    event_id: str,
    parent_ref: str | None,
    *,
    is_mention: bool,
    reply_count: int = 0,
) -> str | None:
    """Return the thread key an event belongs to, or None for top-level.

    Priority:
    1. An explicit parent reference other than the event itself (a reply).
    2. A mention of the bot anchors a thread at the mention.
    3. An event that already has replies is its own thread parent.
    4. Otherwise the event stays top-level.
    """
    if parent_ref and parent_ref != event_id:
        return parent_ref
    if is_mention:
        return event_id
    if reply_count > 0:
        return event_id
    return None
