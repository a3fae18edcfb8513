"""Slack channel adapter."""

from threadline.slack.adapter import AdapterState, SlackChannelAdapter
from threadline.slack.models import (
    Attachment,
    CanonicalMessage,
    DeletedMessageKey,
    PipelineHooks,
    StoredMessage,
)

__all__ = [
    "AdapterState",
    "Attachment",
    "CanonicalMessage",
    "DeletedMessageKey",
    "PipelineHooks",
    "SlackChannelAdapter",
    "StoredMessage",
]
