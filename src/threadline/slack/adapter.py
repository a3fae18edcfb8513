"""Slack channel adapter (Socket Mode).

Wires identity lookup, event normalization, file download, outbound delivery
and catch-up reconciliation behind one public surface.

Connection state machine::

    DISCONNECTED ──connect()──▶ CONNECTING ──auth.test ok──▶ CONNECTED
         ▲                                                      │
         └──────────── watchdog sees socket drop ◀──────────────┘

Entering CONNECTED runs, in order:
1. trigger the outbound drain
2. catch-up reconciliation for registered conversations
3. arm the periodic tasks (metadata sync, file cleanup), once per process

A failure in steps 1-3 is logged and isolated; the adapter stays CONNECTED.

Environment variables: see ``threadline.config``.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from threading import Thread
from typing import TYPE_CHECKING, Any, Literal, assert_never

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.responses import Response
from opentelemetry import trace
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from pydantic import BaseModel
from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp
from slack_sdk.web.async_client import AsyncWebClient

from threadline.config import SlackAdapterConfig
from threadline.connectors.metrics import AdapterMetrics, get_error_type
from threadline.core.logging import event_context
from threadline.slack.catchup import CatchUpReconciler
from threadline.slack.events import (
    MessageDelete,
    MessageEdit,
    NewMessage,
    ReactionAdded,
    parse_event,
    payload_conversation_id,
)
from threadline.slack.files import FileFetcher
from threadline.slack.identity import IdentityCache
from threadline.slack.models import (
    CanonicalMessage,
    ConversationSyncState,
    PipelineHooks,
    call_hook,
)
from threadline.slack.normalizer import EventNormalizer
from threadline.slack.outbound import OutboundQueue

if TYPE_CHECKING:
    from threadline.store import MetadataStore

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer(__name__)

CONVERSATION_ID_PATTERN = re.compile(r"^[CDG][A-Z0-9]+$")

MAX_BACKOFF_S = 60.0
CONVERSATION_LIST_TYPES = "public_channel,private_channel,im"


class AdapterState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class HealthStatus(BaseModel):
    """Health check response model for liveness checks."""

    status: Literal["healthy", "unhealthy"]
    state: AdapterState
    uptime_seconds: float
    outbound_queue_depth: int
    last_event_at: str | None
    last_catchup_at: str | None
    source_api_connectivity: Literal["connected", "disconnected", "unknown"]
    timestamp: str


def _iso_or_none(epoch: float | None) -> str | None:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, UTC).isoformat()


class SlackChannelAdapter:
    """Slack implementation of a pipeline channel."""

    name = "slack"

    def __init__(
        self,
        config: SlackAdapterConfig,
        hooks: PipelineHooks,
        store: MetadataStore,
        *,
        client: AsyncWebClient | None = None,
        metrics: AdapterMetrics | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._hooks = hooks
        self._store = store
        self._client = client or AsyncWebClient(token=config.bot_token)
        self._metrics = metrics or AdapterMetrics(
            connector_type="slack", endpoint_identity="unknown"
        )

        self._identities = IdentityCache(self._client, self._metrics)
        self._files = FileFetcher(
            config.files_dir,
            bot_token=config.bot_token,
            max_bytes=config.max_file_bytes,
            ttl_s=config.file_ttl_s,
            http_client=http_client,
            metrics=self._metrics,
        )
        self._normalizer = EventNormalizer(
            self._identities,
            self._files,
            hooks,
            self._client,
            self._metrics,
        )
        self._outbound = OutboundQueue(
            self._client,
            self._identities,
            is_connected=self.is_connected,
            max_message_length=config.max_message_length,
            send_delay_s=config.send_delay_s,
            metrics=self._metrics,
        )
        self._catchup = CatchUpReconciler(
            self._client,
            self._normalizer,
            self._deliver_recovered,
            advance_cursor=self._store.set_last_event_timestamp,
            fallback_window_s=config.catchup_window_s,
            metrics=self._metrics,
        )

        self._state = AdapterState.DISCONNECTED
        self._bot_user_id = ""
        self._app: AsyncApp | None = None
        self._handler: AsyncSocketModeHandler | None = None

        self._watchdog_task: asyncio.Task[None] | None = None
        self._periodic_tasks: list[asyncio.Task[None]] = []
        self._periodic_armed = False
        self._consecutive_failures = 0
        # Conversations with a catch-up pass in flight; their cursor belongs to it.
        self._catching_up: set[str] = set()

        # Health tracking
        self._start_time = time.time()
        self._last_event_at: float | None = None
        self._last_catchup_at: float | None = None
        self._health_server: uvicorn.Server | None = None
        self._health_thread: Thread | None = None

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def state(self) -> AdapterState:
        return self._state

    @property
    def bot_user_id(self) -> str:
        return self._bot_user_id

    @property
    def outbound(self) -> OutboundQueue:
        return self._outbound

    @property
    def identities(self) -> IdentityCache:
        return self._identities

    def is_connected(self) -> bool:
        return self._state is AdapterState.CONNECTED

    def owns_conversation_id(self, conversation_id: str) -> bool:
        """True for Slack channel (C), DM (D) and private group (G) ids."""
        return bool(CONVERSATION_ID_PATTERN.match(conversation_id))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the Socket Mode connection and run the on-connected sequence.

        Raises:
            ConfigError: When credentials are missing. Not retried.
        """
        self._config.validate()
        self._state = AdapterState.CONNECTING

        try:
            await self._open_socket()
            auth = await self._client.auth_test()
        except Exception as exc:
            self._state = AdapterState.DISCONNECTED
            self._metrics.record_error(get_error_type(exc), "connect")
            raise

        self._bot_user_id = str(auth.get("user_id") or "")
        self._normalizer.bot_user_id = self._bot_user_id
        self._metrics.set_endpoint_identity(
            f"{auth.get('team_id') or 'unknown'}:{self._bot_user_id or 'unknown'}"
        )
        logger.info(
            "Connected to Slack (Socket Mode)",
            extra={"bot_user_id": self._bot_user_id, "team_id": auth.get("team_id")},
        )

        await self._mark_connected()

        if self._watchdog_task is None:
            self._watchdog_task = asyncio.create_task(self._watchdog_loop())
        if self._config.health_port and self._health_server is None:
            self._start_health_server()

    async def disconnect(self) -> None:
        """Stop background work and close the socket; queued sends stay in memory."""
        self._state = AdapterState.DISCONNECTED

        tasks = [t for t in [self._watchdog_task, *self._periodic_tasks] if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._watchdog_task = None
        self._periodic_tasks = []
        self._periodic_armed = False

        await self._outbound.close()

        if self._handler is not None:
            try:
                await self._handler.close_async()
            except Exception:
                logger.debug("Error closing Socket Mode handler", exc_info=True)
            self._handler = None
            self._app = None

        await self._files.aclose()

        if self._health_server is not None:
            self._health_server.should_exit = True
            self._health_server = None

        logger.info("Slack adapter disconnected")

    async def _open_socket(self) -> None:
        """Create the bolt app on first use and (re)open the socket."""
        if self._handler is None:
            self._app = AsyncApp(client=self._client)
            self._register_listeners(self._app)
            self._handler = AsyncSocketModeHandler(self._app, self._config.app_token)
        await self._handler.connect_async()

    def _socket_connected(self) -> bool:
        if self._handler is None:
            return False
        try:
            return bool(self._handler.client.is_connected())
        except Exception:
            return False

    def _register_listeners(self, app: AsyncApp) -> None:
        @app.event("app_mention")
        async def on_app_mention(event: dict[str, Any]) -> None:
            await self.handle_event(event)

        @app.event("message")
        async def on_message(event: dict[str, Any]) -> None:
            await self.handle_event(event)

        @app.event("reaction_added")
        async def on_reaction_added(event: dict[str, Any]) -> None:
            await self.handle_event(event)

    async def _mark_connected(self) -> None:
        self._state = AdapterState.CONNECTED
        self._consecutive_failures = 0
        await self._on_connected()

    async def _on_connected(self) -> None:
        self._outbound.trigger_drain()

        try:
            await self.catch_up()
        except Exception:
            logger.exception("Catch-up after connect failed")

        self._arm_periodic_tasks()

    async def _watchdog_loop(self) -> None:
        """Poll the socket; reconnect with exponential backoff when it drops."""
        while True:
            await asyncio.sleep(self._config.connection_check_s)

            if self._socket_connected():
                if self._state is not AdapterState.CONNECTED:
                    # The SDK reconnected on its own.
                    logger.info("Slack socket connection restored")
                    await self._mark_connected()
                continue

            if self._state is AdapterState.CONNECTED:
                logger.warning("Slack socket connection lost")
            self._state = AdapterState.CONNECTING

            try:
                await self._open_socket()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._state = AdapterState.DISCONNECTED
                self._consecutive_failures += 1
                self._metrics.record_error(get_error_type(exc), "reconnect")

                # Exponential backoff with jitter, capped at 60s
                base_backoff = 1.0 * (2 ** min(self._consecutive_failures, 6))
                capped_backoff = min(base_backoff, MAX_BACKOFF_S)
                jitter = capped_backoff * 0.1 * (2 * random.random() - 1)
                sleep_s = capped_backoff + jitter
                logger.warning(
                    "Slack reconnect failed, backing off",
                    extra={
                        "error": str(exc),
                        "consecutive_failures": self._consecutive_failures,
                        "backoff_s": round(sleep_s, 2),
                    },
                )
                await asyncio.sleep(sleep_s)
                continue

            if self._socket_connected():
                logger.info("Reconnected to Slack (Socket Mode)")
                await self._mark_connected()
            else:
                self._state = AdapterState.DISCONNECTED

    def _arm_periodic_tasks(self) -> None:
        if self._periodic_armed:
            return
        self._periodic_armed = True
        self._periodic_tasks = [
            asyncio.create_task(
                self._run_periodically(
                    "metadata_sync",
                    self._config.metadata_sync_interval_s,
                    self.sync_metadata,
                )
            ),
            asyncio.create_task(
                self._run_periodically(
                    "file_cleanup",
                    self._config.file_cleanup_interval_s,
                    self._cleanup_files,
                )
            ),
        ]

    async def _run_periodically(
        self,
        name: str,
        interval_s: float,
        job: Callable[[], Awaitable[Any]],
    ) -> None:
        while True:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic task failed", extra={"task": name})
            await asyncio.sleep(interval_s)

    async def _cleanup_files(self) -> int:
        removed = await self._files.sweep()
        if removed:
            logger.info("Removed expired attachment directories", extra={"count": removed})
        return removed

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    async def handle_event(self, payload: dict[str, Any]) -> None:
        """Parse, normalize and deliver one raw Slack event.

        Never raises; failures are logged and counted.
        """
        self._last_event_at = time.time()
        conversation_id = payload_conversation_id(payload)
        event_type = str(payload.get("type") or "")
        with (
            _tracer.start_as_current_span(
                "threadline.slack.inbound",
                attributes={"slack.event_type": event_type, "slack.channel": conversation_id or ""},
            ),
            event_context(conversation_id=conversation_id, event_type=event_type),
        ):
            try:
                await self._dispatch(payload)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception(
                    "Failed to process Slack event",
                    extra={"subtype": payload.get("subtype")},
                )
                self._metrics.record_error(get_error_type(exc), "inbound")

    async def _dispatch(self, payload: dict[str, Any]) -> None:
        event = parse_event(payload, self._bot_user_id)
        if event is None:
            # Dropped events still count for discovery.
            conversation_id = payload_conversation_id(payload)
            if conversation_id:
                await self._normalizer.report_seen(
                    conversation_id, payload.get("event_ts") or payload.get("ts")
                )
            return

        if isinstance(event, NewMessage):
            message = await self._normalizer.normalize_new_message(event)
            if message is not None:
                await self._acknowledge(event.conversation_id, event.event_id)
                await self._deliver_inbound(message)
        elif isinstance(event, MessageEdit):
            message = await self._normalizer.normalize_edit(event)
            if message is not None:
                await self._deliver_inbound(message)
        elif isinstance(event, MessageDelete):
            key = await self._normalizer.normalize_delete(event)
            if key is not None and self._hooks.on_message_deleted is not None:
                await call_hook(self._hooks.on_message_deleted, key.conversation_id, key.id)
        elif isinstance(event, ReactionAdded):
            message = await self._normalizer.normalize_reaction(event)
            if message is not None:
                await self._deliver_inbound(message)
        else:
            assert_never(event)

    async def _deliver_inbound(self, message: CanonicalMessage) -> None:
        await call_hook(self._hooks.on_message, message.conversation_id, message)
        if message.is_reaction_event or message.conversation_id in self._catching_up:
            return
        self._store.set_last_event_timestamp(message.conversation_id, message.id)

    async def _deliver_recovered(self, message: CanonicalMessage) -> None:
        # The reconciler owns the cursor while it replays history.
        await call_hook(self._hooks.on_message, message.conversation_id, message)

    async def _acknowledge(self, conversation_id: str, event_id: str) -> None:
        if not self._config.ack_reaction:
            return
        try:
            await self._client.reactions_add(
                channel=conversation_id,
                name=self._config.ack_reaction,
                timestamp=event_id,
            )
        except Exception as exc:
            logger.debug(
                "Failed to add acknowledgement reaction",
                extra={
                    "conversation_id": conversation_id,
                    "event_id": event_id,
                    "error": str(exc),
                },
            )

    async def catch_up(self) -> int:
        """Reconcile every registered conversation this adapter owns.

        While a conversation is being reconciled, live deliveries in it leave
        the cursor alone so an interrupted pass cannot skip unrecovered history.
        """
        conversations = [
            ConversationSyncState(
                conversation_id=conversation_id,
                last_known_timestamp=self._store.get_last_event_timestamp(conversation_id),
            )
            for conversation_id in self._hooks.registered_conversations()
            if self.owns_conversation_id(conversation_id)
        ]
        if not conversations:
            return 0

        ids = {state.conversation_id for state in conversations} - self._catching_up
        self._catching_up |= ids
        try:
            with _tracer.start_as_current_span(
                "threadline.slack.catch_up", attributes={"slack.conversations": len(conversations)}
            ):
                recovered = await self._catchup.reconcile(conversations)
        finally:
            self._catching_up -= ids

        self._last_catchup_at = time.time()
        logger.info(
            "Catch-up complete",
            extra={"conversations": len(conversations), "recovered": recovered},
        )
        return recovered

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    async def send(
        self,
        conversation_id: str,
        text: str,
        thread_key: str | None = None,
    ) -> str | None:
        """Send text to a conversation; queued (returns None) while disconnected."""
        return await self._outbound.send(conversation_id, text, thread_key)

    async def add_reaction(self, conversation_id: str, emoji: str, event_id: str) -> None:
        try:
            await self._client.reactions_add(
                channel=conversation_id, name=emoji, timestamp=event_id
            )
        except Exception as exc:
            logger.warning(
                "Failed to add reaction",
                extra={"conversation_id": conversation_id, "emoji": emoji, "error": str(exc)},
            )
            self._metrics.record_error(get_error_type(exc), "add_reaction")
            raise
        logger.info(
            "Reaction added",
            extra={"conversation_id": conversation_id, "emoji": emoji, "event_id": event_id},
        )

    async def remove_reaction(self, conversation_id: str, emoji: str, event_id: str) -> None:
        try:
            await self._client.reactions_remove(
                channel=conversation_id, name=emoji, timestamp=event_id
            )
        except Exception as exc:
            logger.warning(
                "Failed to remove reaction",
                extra={"conversation_id": conversation_id, "emoji": emoji, "error": str(exc)},
            )
            self._metrics.record_error(get_error_type(exc), "remove_reaction")
            raise
        logger.info(
            "Reaction removed",
            extra={"conversation_id": conversation_id, "emoji": emoji, "event_id": event_id},
        )

    async def send_file(
        self,
        conversation_id: str,
        path: str | Path,
        filename: str | None = None,
        title: str | None = None,
        comment: str | None = None,
        thread_key: str | None = None,
    ) -> None:
        """Upload a local file with ``files.upload_v2``; errors are logged and re-raised."""
        actual_filename = filename or Path(path).name
        kwargs: dict[str, Any] = {
            "channel": conversation_id,
            "file": str(path),
            "filename": actual_filename,
            "title": title or actual_filename,
        }
        if comment:
            kwargs["initial_comment"] = comment
        if thread_key:
            kwargs["thread_ts"] = thread_key

        try:
            await self._client.files_upload_v2(**kwargs)
        except Exception as exc:
            logger.error(
                "Failed to upload file",
                extra={"conversation_id": conversation_id, "path": str(path), "error": str(exc)},
            )
            self._metrics.record_error(get_error_type(exc), "send_file")
            raise
        logger.info(
            "File uploaded",
            extra={
                "conversation_id": conversation_id,
                "file_name": actual_filename,
                "thread_key": thread_key,
            },
        )

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    async def sync_metadata(self, force: bool = False) -> int:
        """Refresh conversation names from ``conversations.list``.

        Skipped when the last sync is newer than the sync interval unless
        *force* is set.  Returns the number of names recorded; errors are
        logged, never raised.
        """
        if not force:
            last_sync = self._store.get_last_sync_timestamp()
            if last_sync:
                try:
                    age_s = (datetime.now(UTC) - datetime.fromisoformat(last_sync)).total_seconds()
                except ValueError:
                    age_s = None
                if age_s is not None and age_s < self._config.metadata_sync_interval_s:
                    logger.debug(
                        "Skipping conversation sync, synced recently",
                        extra={"last_sync": last_sync},
                    )
                    return 0

        count = 0
        cursor: str | None = None
        logger.info("Syncing conversation metadata from Slack")
        try:
            while True:
                kwargs: dict[str, Any] = {"types": CONVERSATION_LIST_TYPES, "limit": 200}
                if cursor:
                    kwargs["cursor"] = cursor
                result = await self._client.conversations_list(**kwargs)
                self._metrics.record_source_api_call("conversations.list", "success")

                for channel in result.get("channels") or []:
                    conversation_id = channel.get("id")
                    if not conversation_id:
                        continue
                    if channel.get("name"):
                        self._store.update_conversation_name(conversation_id, channel["name"])
                        count += 1
                    elif channel.get("is_im") and channel.get("user"):
                        identity = await self._identities.resolve(channel["user"])
                        self._store.update_conversation_name(
                            conversation_id, f"DM: {identity.display_name}"
                        )
                        count += 1

                cursor = (result.get("response_metadata") or {}).get("next_cursor") or None
                if not cursor:
                    break
        except Exception as exc:
            logger.error("Failed to sync conversation metadata", extra={"error": str(exc)})
            self._metrics.record_source_api_call("conversations.list", "error")
            self._metrics.record_error(get_error_type(exc), "sync_metadata")
            return count

        self._store.set_last_sync_timestamp()
        logger.info("Conversation metadata synced", extra={"count": count})
        return count

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    async def get_health_status(self) -> HealthStatus:
        """Get current health status for liveness checks."""
        if self._state is AdapterState.CONNECTED:
            connectivity = "connected"
        elif self._handler is None:
            connectivity = "unknown"
        else:
            connectivity = "disconnected"

        return HealthStatus(
            status="healthy" if self._state is AdapterState.CONNECTED else "unhealthy",
            state=self._state,
            uptime_seconds=time.time() - self._start_time,
            outbound_queue_depth=self._outbound.pending,
            last_event_at=_iso_or_none(self._last_event_at),
            last_catchup_at=_iso_or_none(self._last_catchup_at),
            source_api_connectivity=connectivity,
            timestamp=datetime.now(UTC).isoformat(),
        )

    def _start_health_server(self) -> None:
        """Start FastAPI health check server in background thread."""
        app = FastAPI(title="Slack Adapter Health")

        @app.get("/health")
        async def health() -> HealthStatus:
            return await self.get_health_status()

        @app.get("/metrics")
        async def metrics() -> Response:
            """Prometheus metrics endpoint."""
            return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self._config.health_port,
            log_level="warning",
            # Handlers come from configure_logging; uvicorn must not install its own.
            log_config=None,
        )
        server = uvicorn.Server(config)
        self._health_server = server

        def run_server() -> None:
            asyncio.run(server.serve())

        self._health_thread = Thread(target=run_server, daemon=True)
        self._health_thread.start()
        logger.info("Health server started", extra={"port": self._config.health_port})
