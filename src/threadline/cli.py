"""CLI for threadline: run the Slack adapter or refresh conversation metadata."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any

import click

from threadline.config import ConfigError, SlackAdapterConfig
from threadline.core.logging import configure_logging
from threadline.slack.adapter import SlackChannelAdapter
from threadline.slack.models import CanonicalMessage, PipelineHooks, StoredMessage
from threadline.store import JsonFileMetadataStore

logger = logging.getLogger(__name__)


class LoggingPipeline:
    """Stand-in downstream pipeline that logs and keeps messages in memory.

    Messages are upserted by ``(conversation_id, id)`` so edits replace the
    stored content.
    """

    def __init__(self, registered: tuple[str, ...] | list[str]) -> None:
        self.registered: dict[str, dict[str, Any]] = {cid: {} for cid in registered}
        self.messages: dict[tuple[str, str], CanonicalMessage] = {}
        self.seen: dict[str, str] = {}

    def on_message(self, conversation_id: str, message: CanonicalMessage) -> None:
        self.messages[message.key] = message
        logger.info(
            "Message received",
            extra={
                "conversation_id": conversation_id,
                "event_id": message.id,
                "sender": message.sender_display_name,
                "thread_key": message.thread_key,
                "attachments": len(message.attachments or []),
                "reaction": message.is_reaction_event,
            },
        )

    def on_conversation_seen(self, conversation_id: str, timestamp_iso: str) -> None:
        self.seen[conversation_id] = timestamp_iso

    def on_message_deleted(self, conversation_id: str, event_id: str) -> None:
        self.messages.pop((conversation_id, event_id), None)
        logger.info(
            "Message deleted",
            extra={"conversation_id": conversation_id, "event_id": event_id},
        )

    def registered_conversations(self) -> dict[str, dict[str, Any]]:
        return self.registered

    def lookup_message(self, conversation_id: str, event_id: str) -> StoredMessage | None:
        message = self.messages.get((conversation_id, event_id))
        if message is None:
            return None
        return StoredMessage(
            content=message.content,
            thread_key=message.thread_key,
            is_bot_message=message.is_bot_origin or message.is_from_self,
        )

    def hooks(self) -> PipelineHooks:
        return PipelineHooks(
            on_message=self.on_message,
            on_conversation_seen=self.on_conversation_seen,
            registered_conversations=self.registered_conversations,
            on_message_deleted=self.on_message_deleted,
            lookup_message=self.lookup_message,
        )


def _load_config() -> SlackAdapterConfig:
    try:
        return SlackAdapterConfig.from_env()
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version="0.1.0")
@click.option("--log-level", default="INFO", show_default=True, help="Root log level")
@click.option(
    "--log-format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
    help="Console log format",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str, log_format: str) -> None:
    """threadline: Slack channel adapter for agent pipelines."""
    ctx.obj = {"log_level": log_level, "log_format": log_format}
    configure_logging(level=log_level, fmt=log_format, adapter_name="slack")


def _log_to_data_dir(ctx: click.Context, config: SlackAdapterConfig) -> None:
    """Reconfigure logging once the data directory is known, adding the log files."""
    configure_logging(
        level=ctx.obj["log_level"],
        fmt=ctx.obj["log_format"],
        log_dir=config.log_dir,
        adapter_name="slack",
    )


@cli.command()
@click.option(
    "--register",
    "registered",
    multiple=True,
    help="Conversation id to deliver messages for (repeatable)",
)
@click.pass_context
def run(ctx: click.Context, registered: tuple[str, ...]) -> None:
    """Connect to Slack and log normalized messages until interrupted."""
    config = _load_config()
    _log_to_data_dir(ctx, config)
    pipeline = LoggingPipeline(registered)
    store = JsonFileMetadataStore(config.metadata_path)
    adapter = SlackChannelAdapter(config, pipeline.hooks(), store)

    click.echo(f"Starting Slack adapter ({len(registered)} registered conversation(s))")
    try:
        asyncio.run(_run_until_interrupted(adapter))
    except KeyboardInterrupt:
        click.echo("Stopped.")


async def _run_until_interrupted(adapter: SlackChannelAdapter) -> None:
    await adapter.connect()
    try:
        await asyncio.Event().wait()
    finally:
        await adapter.disconnect()


@cli.command("sync-metadata")
@click.option("--force", is_flag=True, help="Sync even if the last sync is recent")
@click.pass_context
def sync_metadata(ctx: click.Context, force: bool) -> None:
    """Refresh conversation names from Slack into the metadata store."""
    config = _load_config()
    _log_to_data_dir(ctx, config)
    store = JsonFileMetadataStore(config.metadata_path)
    adapter = SlackChannelAdapter(config, LoggingPipeline(()).hooks(), store)

    count = asyncio.run(_sync_once(adapter, force))
    click.echo(f"Synced {count} conversation name(s) to {store.path}")


async def _sync_once(adapter: SlackChannelAdapter, force: bool) -> int:
    try:
        return await adapter.sync_metadata(force=force)
    finally:
        await adapter.disconnect()
