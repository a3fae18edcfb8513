"""Ordered, rate-limited outbound delivery for the Slack adapter.

Sends go straight to ``chat.postMessage`` while the socket is connected and
the conversation has nothing waiting.  Anything else lands in an in-memory
FIFO that a single drain task works through:

    send() ──connected, nothing pending──▶ deliver ──fail──▶ enqueue + drain
      │
      └──disconnected / pending──▶ enqueue ──(connect)──▶ drain task

Drain:
    - one task at a time, guarded by ``DrainState``
    - ``send_delay_s`` between items (rate limit)
    - a failed item is re-appended at the back and the loop moves on
    - stops when the queue is empty or the socket drops

Items are never dropped; they are retried until delivered or the process exits.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from enum import StrEnum
from typing import TYPE_CHECKING

from threadline.connectors.metrics import get_error_type
from threadline.slack.models import OutboundItem

if TYPE_CHECKING:
    from slack_sdk.web.async_client import AsyncWebClient

    from threadline.connectors.metrics import AdapterMetrics
    from threadline.slack.identity import IdentityCache

logger = logging.getLogger(__name__)


class DrainState(StrEnum):
    IDLE = "idle"
    DRAINING = "draining"


def split_message(text: str, limit: int) -> list[str]:
    """Split *text* into chunks of at most *limit* characters.

    Prefers the last newline at or before the limit; the newline itself is
    consumed by the split.  Falls back to a hard cut when the range holds no
    usable newline.
    """
    if limit <= 0:
        raise ValueError(f"limit must be positive, got {limit}")
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    remaining = text
    while len(remaining) > limit:
        split_at = remaining.rfind("\n", 0, limit + 1)
        if split_at <= 0:
            chunks.append(remaining[:limit])
            remaining = remaining[limit:]
        else:
            chunks.append(remaining[:split_at])
            remaining = remaining[split_at + 1 :]
    if remaining:
        chunks.append(remaining)
    return chunks


class OutboundQueue:
    """Outbound message queue with a single-owner drain task."""

    def __init__(
        self,
        client: AsyncWebClient,
        identities: IdentityCache,
        *,
        is_connected: Callable[[], bool],
        max_message_length: int,
        send_delay_s: float = 1.0,
        metrics: AdapterMetrics | None = None,
    ) -> None:
        self._client = client
        self._identities = identities
        self._is_connected = is_connected
        self._max_message_length = max_message_length
        self._send_delay_s = send_delay_s
        self._metrics = metrics

        self._queue: deque[OutboundItem] = deque()
        self._in_flight: OutboundItem | None = None
        self._state = DrainState.IDLE
        self._drain_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> DrainState:
        return self._state

    @property
    def pending(self) -> int:
        return len(self._queue)

    def snapshot(self) -> list[OutboundItem]:
        """Queued items in delivery order (excluding any in-flight item)."""
        return list(self._queue)

    def _has_pending_for(self, conversation_id: str) -> bool:
        if self._in_flight is not None and self._in_flight.conversation_id == conversation_id:
            return True
        return any(item.conversation_id == conversation_id for item in self._queue)

    def _enqueue(self, item: OutboundItem) -> None:
        self._queue.append(item)
        self._update_depth()

    def _update_depth(self) -> None:
        if self._metrics is not None:
            self._metrics.set_queue_depth(len(self._queue))

    async def send(
        self,
        conversation_id: str,
        text: str,
        thread_key: str | None = None,
    ) -> str | None:
        """Send or enqueue a logical message.

        Returns the ``ts`` of the last chunk when delivered immediately, or
        None when the message was queued.
        """
        if not text:
            logger.debug(
                "Ignoring empty outbound message",
                extra={"conversation_id": conversation_id},
            )
            return None

        item = OutboundItem(conversation_id=conversation_id, text=text, thread_key=thread_key)

        if not self._is_connected():
            self._enqueue(item)
            self._record_send("queued")
            logger.info(
                "Slack disconnected, message queued",
                extra={"conversation_id": conversation_id, "queue_size": len(self._queue)},
            )
            return None

        if self._has_pending_for(conversation_id):
            # Earlier messages for this conversation are still waiting.
            self._enqueue(item)
            self._record_send("queued")
            self.trigger_drain()
            return None

        start = time.monotonic()
        try:
            ts = await self._deliver(item)
        except Exception as exc:
            item.attempts += 1
            self._enqueue(item)
            self._record_send("failed", time.monotonic() - start)
            if self._metrics is not None:
                self._metrics.record_error(get_error_type(exc), "send")
            logger.warning(
                "Failed to send Slack message, queued for retry",
                extra={
                    "conversation_id": conversation_id,
                    "queue_size": len(self._queue),
                    "error": str(exc),
                },
            )
            self.trigger_drain()
            return None

        self._record_send("sent", time.monotonic() - start)
        logger.info(
            "Slack message sent",
            extra={"conversation_id": conversation_id, "length": len(text)},
        )
        return ts

    async def _deliver(self, item: OutboundItem) -> str | None:
        """Post every chunk of *item* in order; any failure propagates."""
        text = self._identities.resolve_mentions(item.text)
        last_ts: str | None = None
        for chunk in split_message(text, self._max_message_length):
            kwargs: dict[str, str] = {"channel": item.conversation_id, "text": chunk}
            if item.thread_key:
                kwargs["thread_ts"] = item.thread_key
            response = await self._client.chat_postMessage(**kwargs)
            last_ts = response.get("ts")
        return last_ts

    def _record_send(self, status: str, latency: float | None = None) -> None:
        if self._metrics is not None:
            self._metrics.record_outbound_send(status, latency)

    def trigger_drain(self) -> asyncio.Task[None] | None:
        """Start the drain task unless one is running or there is nothing to do."""
        if self._state is DrainState.DRAINING:
            return None
        if not self._queue or not self._is_connected():
            return None

        self._state = DrainState.DRAINING
        self._drain_task = asyncio.create_task(self._drain_loop())
        return self._drain_task

    async def drain(self) -> None:
        """Trigger a drain (if needed) and wait for it to finish."""
        task = self.trigger_drain() or self._drain_task
        if task is not None:
            await task

    async def _drain_loop(self) -> None:
        logger.info("Flushing Slack outgoing queue", extra={"queue_size": len(self._queue)})
        try:
            while self._queue and self._is_connected():
                item = self._queue.popleft()
                self._in_flight = item
                self._update_depth()
                start = time.monotonic()
                try:
                    await self._deliver(item)
                except asyncio.CancelledError:
                    self._queue.appendleft(item)
                    raise
                except Exception as exc:
                    item.attempts += 1
                    self._queue.append(item)
                    self._record_send("failed", time.monotonic() - start)
                    if self._metrics is not None:
                        self._metrics.record_error(get_error_type(exc), "drain")
                    logger.warning(
                        "Failed to send queued Slack message, requeued",
                        extra={
                            "conversation_id": item.conversation_id,
                            "attempts": item.attempts,
                            "error": str(exc),
                        },
                    )
                else:
                    self._record_send("sent", time.monotonic() - start)
                    logger.info(
                        "Queued Slack message sent",
                        extra={"conversation_id": item.conversation_id, "attempts": item.attempts},
                    )
                finally:
                    self._in_flight = None
                    self._update_depth()

                if self._queue:
                    await asyncio.sleep(self._send_delay_s)
        finally:
            self._state = DrainState.IDLE
            self._drain_task = None

    async def close(self) -> None:
        """Cancel a running drain; queued items stay in memory."""
        task = self._drain_task
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        # A task cancelled before its first step never runs its finally block.
        self._state = DrainState.IDLE
        self._drain_task = None
