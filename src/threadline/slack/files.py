"""Attachment download and local file retention.

Files are stored under ``{root}/{conversation_id}/{safe_event_id}/{name}``.
One directory per event means a re-delivered event (an edit) lands on the
same paths instead of duplicating files.  Event directories older than the
retention TTL are removed by ``sweep_expired_files``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import time
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from threadline.slack.models import Attachment

if TYPE_CHECKING:
    from threadline.connectors.metrics import AdapterMetrics
    from threadline.slack.events import AttachmentRef

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def safe_event_id(event_id: str) -> str:
    """Filesystem-safe form of a Slack ``ts`` (``1700000000.000100`` -> ``1700000000-000100``)."""
    return _UNSAFE_CHARS.sub("-", event_id)


def _safe_file_name(name: str, file_id: str) -> str:
    base = Path(name).name if name else ""
    if base in ("", ".", ".."):
        return f"file-{file_id}"
    return base


class FileFetcher:
    """Downloads Slack-hosted attachments with the bot token."""

    def __init__(
        self,
        root: Path,
        *,
        bot_token: str,
        max_bytes: int,
        ttl_s: float = 7 * 24 * 60 * 60,
        http_client: httpx.AsyncClient | None = None,
        metrics: AdapterMetrics | None = None,
    ) -> None:
        self._root = Path(root)
        self._bot_token = bot_token
        self._max_bytes = max_bytes
        self._ttl_s = ttl_s
        # An injected client belongs to the caller; our own is created on demand.
        self._http_client = http_client
        self._owns_client = http_client is None
        self._metrics = metrics

    @property
    def root(self) -> Path:
        return self._root

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=60.0, follow_redirects=True)
            self._owns_client = True
        return self._http_client

    async def aclose(self) -> None:
        """Close the HTTP client if this fetcher created it; the next fetch reopens one."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def fetch(
        self,
        conversation_id: str,
        event_id: str,
        refs: Iterable[AttachmentRef],
    ) -> list[Attachment]:
        """Download every retrievable attachment; failures are logged and omitted."""
        target_dir = self._root / conversation_id / safe_event_id(event_id)
        result: list[Attachment] = []

        for ref in refs:
            if not ref.url:
                logger.debug("Skipping file with no download URL", extra={"file_id": ref.file_id})
                self._record("no_url")
                continue

            if ref.declared_size > self._max_bytes:
                logger.warning(
                    "Skipping file exceeding size limit",
                    extra={
                        "file_name": ref.name,
                        "size": ref.declared_size,
                        "max_bytes": self._max_bytes,
                    },
                )
                if self._metrics is not None:
                    self._metrics.record_attachment_skipped_oversized()
                continue

            attachment = await self._fetch_one(target_dir, ref)
            if attachment is not None:
                result.append(attachment)

        return result

    async def _fetch_one(self, target_dir: Path, ref: AttachmentRef) -> Attachment | None:
        local_path = target_dir / _safe_file_name(ref.name, ref.file_id)

        # Same event, same file: already on disk from an earlier delivery.
        if ref.declared_size and local_path.is_file():
            existing_size = local_path.stat().st_size
            if existing_size == ref.declared_size:
                return Attachment(
                    display_name=ref.name,
                    mime_type=ref.mime_type,
                    size_bytes=existing_size,
                    local_storage_path=str(local_path),
                )

        try:
            response = await self._client().get(
                ref.url,
                headers={"Authorization": f"Bearer {self._bot_token}"},
            )
            if response.status_code != 200:
                logger.warning(
                    "Failed to download file",
                    extra={"file_name": ref.name, "status": response.status_code},
                )
                self._record("error")
                return None

            data = response.content
            if len(data) > self._max_bytes:
                logger.warning(
                    "Downloaded file exceeds size limit, discarding",
                    extra={"file_name": ref.name, "size": len(data)},
                )
                if self._metrics is not None:
                    self._metrics.record_attachment_skipped_oversized()
                return None

            def _write() -> None:
                target_dir.mkdir(parents=True, exist_ok=True)
                local_path.write_bytes(data)

            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, _write)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "Error downloading file",
                extra={"file_name": ref.name, "error": str(exc)},
            )
            self._record("error")
            return None

        self._record("success")
        logger.info(
            "File downloaded",
            extra={"file_name": ref.name, "size": len(data), "path": str(local_path)},
        )
        return Attachment(
            display_name=ref.name,
            mime_type=ref.mime_type,
            size_bytes=len(data),
            local_storage_path=str(local_path),
        )

    def _record(self, result: str) -> None:
        if self._metrics is not None:
            self._metrics.record_attachment_download(result)

    async def sweep(self) -> int:
        """Run ``sweep_expired_files`` off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, sweep_expired_files, self._root, self._ttl_s)


def sweep_expired_files(root: Path, ttl_s: float, now: float | None = None) -> int:
    """Delete event directories older than *ttl_s* and prune empty conversation dirs.

    Returns the number of event directories removed.
    """
    root = Path(root)
    if not root.is_dir():
        return 0

    now = time.time() if now is None else now
    removed = 0
    try:
        for conversation_dir in root.iterdir():
            if not conversation_dir.is_dir():
                continue

            for event_dir in conversation_dir.iterdir():
                if not event_dir.is_dir():
                    continue
                if now - event_dir.stat().st_mtime > ttl_s:
                    shutil.rmtree(event_dir, ignore_errors=True)
                    removed += 1
                    logger.debug(
                        "Cleaned up expired file directory",
                        extra={"path": str(event_dir)},
                    )

            if not any(conversation_dir.iterdir()):
                conversation_dir.rmdir()
    except OSError as exc:
        logger.warning("Error during file cleanup", extra={"error": str(exc)})

    return removed
