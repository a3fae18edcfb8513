"""Tests for the Slack channel adapter orchestration."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from threadline.cli import LoggingPipeline
from threadline.config import ConfigError, SlackAdapterConfig
from threadline.connectors.metrics import AdapterMetrics
from threadline.slack.adapter import AdapterState, SlackChannelAdapter
from threadline.store import JsonFileMetadataStore

pytestmark = pytest.mark.unit


@pytest.fixture
def socket() -> dict[str, bool]:
    return {"up": True}


@pytest.fixture
async def adapter(
    config: SlackAdapterConfig,
    pipeline: LoggingPipeline,
    store: JsonFileMetadataStore,
    slack_client: MagicMock,
    metrics: AdapterMetrics,
    socket: dict[str, bool],
    monkeypatch: pytest.MonkeyPatch,
) -> AsyncIterator[SlackChannelAdapter]:
    """Adapter whose Socket Mode transport is replaced by a flag."""
    adapter = SlackChannelAdapter(
        config, pipeline.hooks(), store, client=slack_client, metrics=metrics
    )

    async def open_socket() -> None:
        socket["up"] = True

    monkeypatch.setattr(adapter, "_open_socket", AsyncMock(side_effect=open_socket))
    monkeypatch.setattr(adapter, "_socket_connected", lambda: socket["up"])
    yield adapter
    await adapter.disconnect()


async def _wait_for(predicate: Callable[[], bool], timeout_s: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _mention(text: str = "<@UBOT> hello", ts: str = "100.1", channel: str = "C1") -> dict[str, Any]:
    return {"type": "app_mention", "channel": channel, "user": "U1", "text": text, "ts": ts}


class TestConnect:
    async def test_connect_resolves_bot_identity(
        self, adapter: SlackChannelAdapter, slack_client: MagicMock
    ) -> None:
        await adapter.connect()

        assert adapter.state is AdapterState.CONNECTED
        assert adapter.is_connected()
        assert adapter.bot_user_id == "UBOT"
        slack_client.auth_test.assert_awaited_once()

    async def test_missing_credentials_are_fatal(
        self,
        config: SlackAdapterConfig,
        pipeline: LoggingPipeline,
        store: JsonFileMetadataStore,
        slack_client: MagicMock,
    ) -> None:
        config.app_token = ""
        adapter = SlackChannelAdapter(config, pipeline.hooks(), store, client=slack_client)

        with pytest.raises(ConfigError, match="SLACK_APP_TOKEN"):
            await adapter.connect()

        assert adapter.state is AdapterState.DISCONNECTED
        slack_client.auth_test.assert_not_awaited()
        await adapter.disconnect()

    async def test_auth_failure_leaves_adapter_disconnected(
        self, adapter: SlackChannelAdapter, slack_client: MagicMock
    ) -> None:
        slack_client.auth_test.side_effect = RuntimeError("invalid_auth")

        with pytest.raises(RuntimeError):
            await adapter.connect()

        assert adapter.state is AdapterState.DISCONNECTED

    async def test_messages_queued_while_disconnected_drain_on_connect(
        self, adapter: SlackChannelAdapter, slack_client: MagicMock
    ) -> None:
        assert await adapter.send("C1", "first") is None
        assert await adapter.send("D1", "second") is None
        slack_client.chat_postMessage.assert_not_awaited()

        await adapter.connect()
        await adapter.outbound.drain()

        texts = [c.kwargs["text"] for c in slack_client.chat_postMessage.await_args_list]
        assert texts == ["first", "second"]

    async def test_connect_catches_up_registered_conversations(
        self,
        adapter: SlackChannelAdapter,
        slack_client: MagicMock,
        store: JsonFileMetadataStore,
        pipeline: LoggingPipeline,
    ) -> None:
        store.set_last_event_timestamp("C1", "100.0")

        async def history(channel: str, **kwargs: Any) -> dict[str, Any]:
            if channel == "C1":
                return {"messages": [{"user": "U1", "text": "missed", "ts": "101.0"}]}
            return {"messages": []}

        slack_client.conversations_history = AsyncMock(side_effect=history)

        await adapter.connect()

        calls = slack_client.conversations_history.await_args_list
        channels = {c.kwargs["channel"]: c.kwargs for c in calls}
        assert set(channels) == {"C1", "D1"}
        assert channels["C1"]["oldest"] == "100.0"
        assert pipeline.messages[("C1", "101.0")].content == "missed"
        assert store.get_last_event_timestamp("C1") == "101.0"

    async def test_catch_up_failure_does_not_block_connected(
        self, adapter: SlackChannelAdapter, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(adapter, "catch_up", AsyncMock(side_effect=RuntimeError("boom")))

        await adapter.connect()

        assert adapter.state is AdapterState.CONNECTED

    async def test_periodic_tasks_armed_once(
        self, adapter: SlackChannelAdapter, slack_client: MagicMock
    ) -> None:
        await adapter.connect()
        tasks = list(adapter._periodic_tasks)

        await adapter._on_connected()

        assert len(tasks) == 2
        assert adapter._periodic_tasks == tasks
        await _wait_for(lambda: slack_client.conversations_list.await_count == 1)

    async def test_watchdog_reconnects_and_reruns_catch_up(
        self,
        adapter: SlackChannelAdapter,
        slack_client: MagicMock,
        socket: dict[str, bool],
    ) -> None:
        await adapter.connect()
        history_calls = slack_client.conversations_history.await_count

        socket["up"] = False

        await _wait_for(lambda: adapter._open_socket.await_count >= 2)
        await _wait_for(lambda: slack_client.conversations_history.await_count > history_calls)
        assert adapter.state is AdapterState.CONNECTED


class TestInbound:
    async def test_mention_end_to_end(
        self,
        adapter: SlackChannelAdapter,
        pipeline: LoggingPipeline,
        store: JsonFileMetadataStore,
        slack_client: MagicMock,
    ) -> None:
        await adapter.connect()

        await adapter.handle_event(_mention())

        message = pipeline.messages[("C1", "100.1")]
        assert message.content == "hello"
        assert message.thread_key == "100.1"
        assert message.sender_display_name == "Alice"
        assert store.get_last_event_timestamp("C1") == "100.1"
        slack_client.reactions_add.assert_awaited_once_with(
            channel="C1", name="eyes", timestamp="100.1"
        )

    async def test_ack_reaction_failure_does_not_block_delivery(
        self, adapter: SlackChannelAdapter, pipeline: LoggingPipeline, slack_client: MagicMock
    ) -> None:
        await adapter.connect()
        slack_client.reactions_add.side_effect = RuntimeError("already_reacted")

        await adapter.handle_event(_mention())

        assert ("C1", "100.1") in pipeline.messages

    async def test_unregistered_conversation_is_seen_not_delivered(
        self, adapter: SlackChannelAdapter, pipeline: LoggingPipeline, slack_client: MagicMock
    ) -> None:
        await adapter.connect()

        await adapter.handle_event(_mention(channel="C42"))

        assert "C42" in pipeline.seen
        assert not pipeline.messages
        slack_client.reactions_add.assert_not_awaited()

    async def test_edit_then_delete(
        self, adapter: SlackChannelAdapter, pipeline: LoggingPipeline
    ) -> None:
        await adapter.connect()
        await adapter.handle_event(_mention())

        await adapter.handle_event(
            {
                "type": "message",
                "subtype": "message_changed",
                "channel": "C1",
                "event_ts": "200.2",
                "message": {"user": "U1", "text": "<@UBOT> hello again", "ts": "100.1"},
            }
        )
        assert pipeline.messages[("C1", "100.1")].content == "hello again"

        await adapter.handle_event(
            {
                "type": "message",
                "subtype": "message_deleted",
                "channel": "C1",
                "deleted_ts": "100.1",
                "previous_message": {"user": "U1", "ts": "100.1"},
            }
        )
        assert ("C1", "100.1") not in pipeline.messages

    async def test_reaction_on_bot_message(
        self,
        adapter: SlackChannelAdapter,
        pipeline: LoggingPipeline,
        store: JsonFileMetadataStore,
        slack_client: MagicMock,
    ) -> None:
        await adapter.connect()
        slack_client.conversations_history = AsyncMock(
            return_value={"messages": [{"user": "UBOT", "text": "All done", "ts": "150.0"}]}
        )

        await adapter.handle_event(
            {
                "type": "reaction_added",
                "user": "U1",
                "reaction": "tada",
                "event_ts": "160.0",
                "item": {"type": "message", "channel": "C1", "ts": "150.0"},
            }
        )

        message = pipeline.messages[("C1", "reaction-160.0")]
        assert message.is_reaction_event is True
        assert message.content == '[reacted with :tada: to: "All done"]'
        assert store.get_last_event_timestamp("C1") is None

    async def test_pipeline_errors_are_contained(
        self,
        adapter: SlackChannelAdapter,
        pipeline: LoggingPipeline,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await adapter.connect()
        monkeypatch.setattr(adapter._hooks, "on_message", MagicMock(side_effect=ValueError("db")))

        await adapter.handle_event(_mention())

    async def test_dropped_events_still_report_conversation_seen(
        self, adapter: SlackChannelAdapter, pipeline: LoggingPipeline
    ) -> None:
        await adapter.connect()

        for payload in [
            {
                "type": "message",
                "subtype": "channel_join",
                "channel": "C42",
                "user": "U1",
                "ts": "10.0",
            },
            {"type": "message", "channel": "D42", "bot_id": "B1", "text": "beep", "ts": "11.0"},
            {"type": "message", "channel": "C43", "user": "U1", "text": "chatter", "ts": "12.0"},
            {
                "type": "reaction_added",
                "user": "UBOT",
                "reaction": "eyes",
                "event_ts": "13.0",
                "item": {"type": "message", "channel": "C44", "ts": "9.0"},
            },
        ]:
            await adapter.handle_event(payload)

        assert {"C42", "D42", "C43", "C44"} <= set(pipeline.seen)
        assert not pipeline.messages

    async def test_attachments_download_after_reconnect(
        self,
        adapter: SlackChannelAdapter,
        pipeline: LoggingPipeline,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        real_client = httpx.AsyncClient
        created: list[httpx.AsyncClient] = []

        def make_client(**kwargs: Any) -> httpx.AsyncClient:
            transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"abc"))
            client = real_client(transport=transport, **kwargs)
            created.append(client)
            return client

        monkeypatch.setattr(httpx, "AsyncClient", make_client)
        files = [
            {
                "id": "F1",
                "name": "notes.txt",
                "mimetype": "text/plain",
                "size": 3,
                "url_private_download": "https://files.slack.com/notes",
            }
        ]

        await adapter.connect()
        await adapter.handle_event({**_mention(ts="100.1"), "files": files})
        await adapter.disconnect()
        await adapter.connect()
        await adapter.handle_event({**_mention(ts="200.2"), "files": files})

        assert created[0].is_closed
        for key in [("C1", "100.1"), ("C1", "200.2")]:
            attachments = pipeline.messages[key].attachments
            assert attachments is not None
            assert [(a.display_name, a.size_bytes) for a in attachments] == [("notes.txt", 3)]

    async def test_unsupported_events_are_ignored(
        self, adapter: SlackChannelAdapter, pipeline: LoggingPipeline
    ) -> None:
        await adapter.handle_event({"type": "team_join", "user": {"id": "U9"}})
        assert not pipeline.seen


class TestCatchUpCursor:
    async def test_failed_entry_is_recovered_on_the_next_pass(
        self,
        adapter: SlackChannelAdapter,
        slack_client: MagicMock,
        store: JsonFileMetadataStore,
        pipeline: LoggingPipeline,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await adapter.connect()

        async def history(channel: str, **kwargs: Any) -> dict[str, Any]:
            if channel == "C1":
                return {
                    "messages": [
                        {"user": "U1", "text": "later", "ts": "30.0"},
                        {"user": "U1", "text": "parent", "ts": "10.0", "reply_count": 1},
                    ]
                }
            return {"messages": []}

        slack_client.conversations_history = AsyncMock(side_effect=history)
        slack_client.conversations_replies = AsyncMock(
            return_value={
                "messages": [
                    {"user": "U1", "text": "parent", "ts": "10.0", "thread_ts": "10.0"},
                    {"user": "U2", "text": "reply", "ts": "50.0", "thread_ts": "10.0"},
                ]
            }
        )
        failures = {"30.0"}

        def on_message(conversation_id: str, message: Any) -> None:
            if message.id in failures:
                failures.discard(message.id)
                raise RuntimeError("pipeline unavailable")
            pipeline.on_message(conversation_id, message)

        monkeypatch.setattr(adapter._hooks, "on_message", on_message)

        await adapter.catch_up()

        assert store.get_last_event_timestamp("C1") == "10.0"
        assert ("C1", "50.0") in pipeline.messages
        assert ("C1", "30.0") not in pipeline.messages

        await adapter.catch_up()

        assert ("C1", "30.0") in pipeline.messages
        assert store.get_last_event_timestamp("C1") == "30.0"
        oldest = [
            c.kwargs["oldest"]
            for c in slack_client.conversations_history.await_args_list
            if c.kwargs["channel"] == "C1"
        ]
        assert oldest[-1] == "10.0"

    async def test_live_delivery_during_catch_up_leaves_cursor_to_the_pass(
        self,
        adapter: SlackChannelAdapter,
        slack_client: MagicMock,
        store: JsonFileMetadataStore,
        pipeline: LoggingPipeline,
    ) -> None:
        await adapter.connect()
        store.set_last_event_timestamp("C1", "100.0")

        async def history(channel: str, **kwargs: Any) -> dict[str, Any]:
            if channel != "C1":
                return {"messages": []}
            await adapter.handle_event(_mention(ts="500.0"))
            return {"messages": [{"user": "U1", "text": "missed", "ts": "101.0"}]}

        slack_client.conversations_history = AsyncMock(side_effect=history)

        await adapter.catch_up()

        assert ("C1", "500.0") in pipeline.messages
        assert ("C1", "101.0") in pipeline.messages
        assert store.get_last_event_timestamp("C1") == "101.0"

        await adapter.handle_event(_mention(ts="600.0"))
        assert store.get_last_event_timestamp("C1") == "600.0"


class TestOutboundOperations:
    async def test_add_and_remove_reaction(
        self, adapter: SlackChannelAdapter, slack_client: MagicMock
    ) -> None:
        await adapter.add_reaction("C1", "white_check_mark", "100.1")
        await adapter.remove_reaction("C1", "eyes", "100.1")

        slack_client.reactions_add.assert_awaited_once_with(
            channel="C1", name="white_check_mark", timestamp="100.1"
        )
        slack_client.reactions_remove.assert_awaited_once_with(
            channel="C1", name="eyes", timestamp="100.1"
        )

    async def test_reaction_errors_are_reraised(
        self, adapter: SlackChannelAdapter, slack_client: MagicMock
    ) -> None:
        slack_client.reactions_add.side_effect = RuntimeError("invalid_name")
        slack_client.reactions_remove.side_effect = RuntimeError("no_reaction")

        with pytest.raises(RuntimeError, match="invalid_name"):
            await adapter.add_reaction("C1", "nope", "100.1")
        with pytest.raises(RuntimeError, match="no_reaction"):
            await adapter.remove_reaction("C1", "nope", "100.1")

    async def test_send_file(
        self, adapter: SlackChannelAdapter, slack_client: MagicMock, tmp_path: Path
    ) -> None:
        path = tmp_path / "report.txt"
        path.write_text("numbers")

        await adapter.send_file("C1", path, comment="see attached", thread_key="100.1")

        slack_client.files_upload_v2.assert_awaited_once_with(
            channel="C1",
            file=str(path),
            filename="report.txt",
            title="report.txt",
            initial_comment="see attached",
            thread_ts="100.1",
        )

    async def test_send_file_errors_are_reraised(
        self, adapter: SlackChannelAdapter, slack_client: MagicMock, tmp_path: Path
    ) -> None:
        slack_client.files_upload_v2.side_effect = RuntimeError("not_in_channel")

        with pytest.raises(RuntimeError):
            await adapter.send_file("C1", tmp_path / "x.bin", filename="x.bin", title="X")

    @pytest.mark.parametrize(
        ("conversation_id", "expected"),
        [
            ("C0123ABC", True),
            ("D0123ABC", True),
            ("G0123ABC", True),
            ("c0123abc", False),
            ("U0123ABC", False),
            ("123@g.us", False),
            ("C", False),
        ],
    )
    def test_owns_conversation_id(
        self, adapter: SlackChannelAdapter, conversation_id: str, expected: bool
    ) -> None:
        assert adapter.owns_conversation_id(conversation_id) is expected


class TestSyncMetadata:
    async def test_names_channels_and_dms_across_pages(
        self,
        adapter: SlackChannelAdapter,
        slack_client: MagicMock,
        store: JsonFileMetadataStore,
    ) -> None:
        slack_client.conversations_list = AsyncMock(
            side_effect=[
                {
                    "channels": [
                        {"id": "C1", "name": "general"},
                        {"id": "D1", "is_im": True, "user": "U1"},
                    ],
                    "response_metadata": {"next_cursor": "next"},
                },
                {"channels": [{"id": "G1", "name": "secret"}], "response_metadata": {}},
            ]
        )

        count = await adapter.sync_metadata()

        assert count == 3
        assert store.get_conversation_name("C1") == "general"
        assert store.get_conversation_name("D1") == "DM: Alice"
        assert store.get_conversation_name("G1") == "secret"
        assert store.get_last_sync_timestamp() is not None
        first_call = slack_client.conversations_list.await_args_list[0]
        assert first_call.kwargs == {"types": "public_channel,private_channel,im", "limit": 200}

    async def test_recent_sync_is_skipped_unless_forced(
        self,
        adapter: SlackChannelAdapter,
        slack_client: MagicMock,
        store: JsonFileMetadataStore,
    ) -> None:
        store.set_last_sync_timestamp(datetime.now(UTC) - timedelta(hours=1))

        assert await adapter.sync_metadata() == 0
        slack_client.conversations_list.assert_not_awaited()

        await adapter.sync_metadata(force=True)
        slack_client.conversations_list.assert_awaited_once()

    async def test_stale_sync_runs(
        self,
        adapter: SlackChannelAdapter,
        slack_client: MagicMock,
        store: JsonFileMetadataStore,
    ) -> None:
        store.set_last_sync_timestamp(datetime.now(UTC) - timedelta(hours=25))

        await adapter.sync_metadata()

        slack_client.conversations_list.assert_awaited_once()

    async def test_errors_are_logged_not_raised(
        self,
        adapter: SlackChannelAdapter,
        slack_client: MagicMock,
        store: JsonFileMetadataStore,
    ) -> None:
        slack_client.conversations_list = AsyncMock(side_effect=RuntimeError("ratelimited"))

        assert await adapter.sync_metadata(force=True) == 0
        assert store.get_last_sync_timestamp() is None


class TestHealth:
    async def test_health_reflects_state(self, adapter: SlackChannelAdapter) -> None:
        status = await adapter.get_health_status()
        assert status.status == "unhealthy"
        assert status.state is AdapterState.DISCONNECTED

        await adapter.send("C1", "queued")
        await adapter.connect()

        status = await adapter.get_health_status()
        assert status.status == "healthy"
        assert status.source_api_connectivity == "connected"
        assert status.last_catchup_at is not None
