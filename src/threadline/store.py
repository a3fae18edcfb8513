"""Persisted adapter metadata: sync timestamps, conversation names and cursors.

The adapter treats the store as a small key-value collaborator.  The bundled
``JsonFileMetadataStore`` keeps everything in one JSON document that is
rewritten atomically on every change; hosts with a real database can supply
their own implementation of the ``MetadataStore`` protocol.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


def _ts_value(ts: str) -> float:
    try:
        return float(ts)
    except (TypeError, ValueError):
        return float("-inf")


class MetadataStore(Protocol):
    """Protocol for adapter metadata backends."""

    def get_last_sync_timestamp(self) -> str | None:
        """Return the ISO timestamp of the last conversation metadata sync."""
        ...

    def set_last_sync_timestamp(self, now: datetime | None = None) -> None:
        """Record a completed conversation metadata sync."""
        ...

    def update_conversation_name(self, conversation_id: str, name: str) -> None:
        """Store the human-readable name of a conversation."""
        ...

    def get_conversation_name(self, conversation_id: str) -> str | None:
        ...

    def get_last_event_timestamp(self, conversation_id: str) -> str | None:
        """Return the newest platform event timestamp processed for a conversation."""
        ...

    def set_last_event_timestamp(self, conversation_id: str, ts: str) -> None:
        """Advance the per-conversation cursor; older timestamps are ignored."""
        ...


class JsonFileMetadataStore:
    """Single-file JSON metadata store.

    Layout::

        {
          "last_sync_at": "2026-01-01T00:00:00+00:00",
          "conversation_names": {"C123": "general"},
          "conversation_cursors": {"C123": "1700000000.000100"}
        }
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._last_sync_at: str | None = None
        self._names: dict[str, str] = {}
        self._cursors: dict[str, str] = {}
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            logger.info(
                "No metadata file found, starting empty",
                extra={"metadata_path": str(self._path)},
            )
            return

        try:
            with self._path.open("r") as f:
                data = json.load(f)
        except (OSError, ValueError):
            logger.exception(
                "Failed to load metadata file, starting empty",
                extra={"metadata_path": str(self._path)},
            )
            return

        if not isinstance(data, dict):
            logger.warning(
                "Metadata file is not a JSON object, ignoring",
                extra={"metadata_path": str(self._path)},
            )
            return

        last_sync = data.get("last_sync_at")
        self._last_sync_at = str(last_sync) if last_sync else None
        names = data.get("conversation_names", {})
        if isinstance(names, dict):
            self._names = {str(k): str(v) for k, v in names.items()}
        cursors = data.get("conversation_cursors", {})
        if isinstance(cursors, dict):
            self._cursors = {str(k): str(v) for k, v in cursors.items()}

    def _save(self) -> None:
        snapshot: dict[str, Any] = {
            "last_sync_at": self._last_sync_at,
            "conversation_names": dict(self._names),
            "conversation_cursors": dict(self._cursors),
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(".tmp")
            with tmp_path.open("w") as f:
                json.dump(snapshot, f)
            tmp_path.replace(self._path)
        except OSError:
            logger.exception(
                "Failed to save metadata file",
                extra={"metadata_path": str(self._path)},
            )

    def get_last_sync_timestamp(self) -> str | None:
        return self._last_sync_at

    def set_last_sync_timestamp(self, now: datetime | None = None) -> None:
        self._last_sync_at = (now or datetime.now(UTC)).isoformat()
        self._save()

    def update_conversation_name(self, conversation_id: str, name: str) -> None:
        if self._names.get(conversation_id) == name:
            return
        self._names[conversation_id] = name
        self._save()

    def get_conversation_name(self, conversation_id: str) -> str | None:
        return self._names.get(conversation_id)

    def get_last_event_timestamp(self, conversation_id: str) -> str | None:
        return self._cursors.get(conversation_id)

    def set_last_event_timestamp(self, conversation_id: str, ts: str) -> None:
        current = self._cursors.get(conversation_id)
        if current is not None and _ts_value(ts) <= _ts_value(current):
            return
        self._cursors[conversation_id] = ts
        self._save()
