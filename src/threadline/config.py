"""Adapter configuration loading and validation.

Environment variables:
    SLACK_BOT_TOKEN: Bot token (xoxb-...) for Web API calls (required)
    SLACK_APP_TOKEN: App-level token (xapp-...) for Socket Mode (required)
    THREADLINE_DATA_DIR: Root for downloaded files, logs and adapter state (default "data")
    SLACK_MAX_MESSAGE_LENGTH: Chunk size for outbound text (default 39000)
    SLACK_SEND_DELAY_S: Delay between drained outbound items (default 1.0)
    SLACK_MAX_FILE_BYTES: Attachment size cap (default 20 MiB)
    SLACK_FILE_TTL_S: Age after which downloaded files are purged (default 7 days)
    SLACK_FILE_CLEANUP_INTERVAL_S: Sweep period for downloaded files (default 6 h)
    SLACK_METADATA_SYNC_INTERVAL_S: Conversation name sync period (default 24 h)
    SLACK_CATCHUP_WINDOW_S: History window when a conversation has no cursor (default 12 h)
    SLACK_ACK_REACTION: Reaction added to accepted messages (default "eyes", empty disables)
    SLACK_CONNECTION_CHECK_S: Socket watchdog poll interval (default 5)
    CONNECTOR_HEALTH_PORT: Health/metrics HTTP port (default 40090, 0 disables)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

# Slack's hard limit is 40k characters; keep headroom for mention expansion.
DEFAULT_MAX_MESSAGE_LENGTH = 39_000
DEFAULT_SEND_DELAY_S = 1.0
DEFAULT_MAX_FILE_BYTES = 20 * 1024 * 1024
DEFAULT_FILE_TTL_S = 7 * 24 * 60 * 60
DEFAULT_FILE_CLEANUP_INTERVAL_S = 6 * 60 * 60
DEFAULT_METADATA_SYNC_INTERVAL_S = 24 * 60 * 60
DEFAULT_CATCHUP_WINDOW_S = 12 * 60 * 60
DEFAULT_ACK_REACTION = "eyes"
DEFAULT_CONNECTION_CHECK_S = 5.0
DEFAULT_HEALTH_PORT = 40090


class ConfigError(Exception):
    """Raised when adapter configuration is missing, malformed, or invalid."""


def _env_number(name: str, default: float, cast: type = float) -> float | int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return cast(default)
    try:
        value = cast(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {raw!r}")
    return value


@dataclass
class SlackAdapterConfig:
    """Configuration for the Slack channel adapter."""

    bot_token: str
    app_token: str

    data_dir: Path = field(default_factory=lambda: Path("data"))

    # Outbound delivery
    max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH
    send_delay_s: float = DEFAULT_SEND_DELAY_S

    # Attachments
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES
    file_ttl_s: float = DEFAULT_FILE_TTL_S
    file_cleanup_interval_s: float = DEFAULT_FILE_CLEANUP_INTERVAL_S

    # Metadata / catch-up
    metadata_sync_interval_s: float = DEFAULT_METADATA_SYNC_INTERVAL_S
    catchup_window_s: float = DEFAULT_CATCHUP_WINDOW_S

    ack_reaction: str | None = DEFAULT_ACK_REACTION
    connection_check_s: float = DEFAULT_CONNECTION_CHECK_S

    # 0 disables the health server
    health_port: int = DEFAULT_HEALTH_PORT

    @property
    def files_dir(self) -> Path:
        return self.data_dir / "files"

    @property
    def metadata_path(self) -> Path:
        return self.data_dir / "slack_metadata.json"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    def validate(self) -> None:
        """Raise ConfigError when required credentials are missing."""
        if not self.bot_token or not self.app_token:
            raise ConfigError(
                "Missing SLACK_BOT_TOKEN or SLACK_APP_TOKEN. "
                "Set them in the environment and re-run."
            )
        if self.max_message_length <= 0:
            raise ConfigError("max_message_length must be positive")

    @classmethod
    def from_env(cls) -> SlackAdapterConfig:
        """Load configuration from environment variables."""
        bot_token = os.environ.get("SLACK_BOT_TOKEN", "")
        app_token = os.environ.get("SLACK_APP_TOKEN", "")

        ack_reaction = os.environ.get("SLACK_ACK_REACTION", DEFAULT_ACK_REACTION).strip()

        config = cls(
            bot_token=bot_token,
            app_token=app_token,
            data_dir=Path(os.environ.get("THREADLINE_DATA_DIR", "data")),
            max_message_length=_env_number(
                "SLACK_MAX_MESSAGE_LENGTH", DEFAULT_MAX_MESSAGE_LENGTH, int
            ),
            send_delay_s=_env_number("SLACK_SEND_DELAY_S", DEFAULT_SEND_DELAY_S),
            max_file_bytes=_env_number("SLACK_MAX_FILE_BYTES", DEFAULT_MAX_FILE_BYTES, int),
            file_ttl_s=_env_number("SLACK_FILE_TTL_S", DEFAULT_FILE_TTL_S),
            file_cleanup_interval_s=_env_number(
                "SLACK_FILE_CLEANUP_INTERVAL_S", DEFAULT_FILE_CLEANUP_INTERVAL_S
            ),
            metadata_sync_interval_s=_env_number(
                "SLACK_METADATA_SYNC_INTERVAL_S", DEFAULT_METADATA_SYNC_INTERVAL_S
            ),
            catchup_window_s=_env_number("SLACK_CATCHUP_WINDOW_S", DEFAULT_CATCHUP_WINDOW_S),
            ack_reaction=ack_reaction or None,
            connection_check_s=_env_number("SLACK_CONNECTION_CHECK_S", DEFAULT_CONNECTION_CHECK_S),
            health_port=_env_number("CONNECTOR_HEALTH_PORT", DEFAULT_HEALTH_PORT, int),
        )
        config.validate()
        return config
