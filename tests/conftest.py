"""Shared fixtures for the threadline test suite."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from threadline.cli import LoggingPipeline
from threadline.config import SlackAdapterConfig
from threadline.connectors.metrics import AdapterMetrics
from threadline.slack.files import FileFetcher
from threadline.slack.identity import IdentityCache
from threadline.slack.models import IdentityRecord
from threadline.slack.normalizer import EventNormalizer
from threadline.store import JsonFileMetadataStore

BOT_USER_ID = "UBOT"
REGISTERED = ("C1", "D1")


@pytest.fixture
def slack_client() -> MagicMock:
    """AsyncWebClient stand-in with every Web API method the adapter calls."""
    client = MagicMock()
    client.auth_test = AsyncMock(return_value={"ok": True, "user_id": BOT_USER_ID, "team_id": "T1"})
    client.users_info = AsyncMock(
        return_value={"ok": True, "user": {"name": "alice", "profile": {"display_name": "Alice"}}}
    )
    client.chat_postMessage = AsyncMock(return_value={"ok": True, "ts": "999.000001"})
    client.conversations_history = AsyncMock(return_value={"ok": True, "messages": []})
    client.conversations_replies = AsyncMock(return_value={"ok": True, "messages": []})
    client.conversations_list = AsyncMock(return_value={"ok": True, "channels": []})
    client.reactions_add = AsyncMock(return_value={"ok": True})
    client.reactions_remove = AsyncMock(return_value={"ok": True})
    client.files_upload_v2 = AsyncMock(return_value={"ok": True})
    return client


@pytest.fixture
def metrics() -> AdapterMetrics:
    return AdapterMetrics(connector_type="slack", endpoint_identity="test")


@pytest.fixture
def pipeline() -> LoggingPipeline:
    """In-memory pipeline with C1 and D1 registered."""
    return LoggingPipeline(REGISTERED)


@pytest.fixture
def config(tmp_path: Path) -> SlackAdapterConfig:
    return SlackAdapterConfig(
        bot_token="xoxb-test",
        app_token="xapp-test",
        data_dir=tmp_path / "data",
        send_delay_s=0.0,
        health_port=0,
        connection_check_s=0.01,
    )


@pytest.fixture
def store(config: SlackAdapterConfig) -> JsonFileMetadataStore:
    return JsonFileMetadataStore(config.metadata_path)


@pytest.fixture
def identities(slack_client: MagicMock) -> IdentityCache:
    cache = IdentityCache(slack_client)
    cache.prime("U1", IdentityRecord(display_name="Alice", timezone="Europe/Berlin"))
    return cache


@pytest.fixture
def file_fetcher() -> MagicMock:
    fetcher = MagicMock(spec=FileFetcher)
    fetcher.fetch = AsyncMock(return_value=[])
    return fetcher


@pytest.fixture
def normalizer(
    identities: IdentityCache,
    file_fetcher: FileFetcher,
    pipeline: LoggingPipeline,
    slack_client: MagicMock,
) -> EventNormalizer:
    return EventNormalizer(
        identities,
        file_fetcher,
        pipeline.hooks(),
        slack_client,
        bot_user_id=BOT_USER_ID,
    )
