# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Attachment resolution: validate, download and stage broker files.

For each descriptor on a message the resolver validates the file id,
asks the broker for a short-lived signed URL, downloads the content with
a size cap and stages it in a process-local temporary directory. Failures
are logged and the attachment is skipped; the message is still delivered.
Staged files are removed by a best-effort timer once consumers had time to
read them.
"""

from __future__ import annotations

import asyncio
import mimetypes
import os
import re
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional, Set

from ..broker import BrokerClient
from ..errors import AttachmentError, BrokerError
from ..logger import get_logger
from ..models import AttachmentRef, ResolvedAttachment
from .http_fetcher import DEFAULT_MAX_BYTES, HttpFetcher

FILE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,100}$")
UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")
MAX_FILENAME_LENGTH = 200
CLEANUP_DELAY = 60.0


def is_valid_file_id(file_id: str) -> bool:
    """Return ``True`` when ``file_id`` is safe to use in paths and URLs."""
    return bool(FILE_ID_RE.match(file_id or ""))


def sanitize_filename(filename: str) -> str:
    """Reduce ``filename`` to a safe charset, truncated to 200 characters."""
    safe = UNSAFE_FILENAME_CHARS.sub("_", os.path.basename(filename or ""))
    safe = safe.lstrip(".")[:MAX_FILENAME_LENGTH]
    return safe or "file"


class AttachmentResolver:
    """Resolve attachment descriptors into staged local files."""

    def __init__(
        self,
        broker: BrokerClient,
        *,
        fetcher: Optional[HttpFetcher] = None,
        staging_dir: Optional[str | os.PathLike[str]] = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
        cleanup_delay: float = CLEANUP_DELAY,
        logger=None,
    ):
        self.broker = broker
        self.fetcher = fetcher or HttpFetcher(max_bytes=max_bytes)
        self.cleanup_delay = cleanup_delay
        self.logger = logger or get_logger(__name__)
        self._staging_dir = Path(staging_dir) if staging_dir else None
        self._cleanup_tasks: Set[asyncio.Task] = set()

    @property
    def staging_dir(self) -> Path:
        """Process-local directory holding staged files, created on demand."""
        if self._staging_dir is None:
            self._staging_dir = Path(tempfile.mkdtemp(prefix="tell-relay-"))
        self._staging_dir.mkdir(parents=True, exist_ok=True)
        return self._staging_dir

    @staticmethod
    def guess_mime(filename: str, declared: str | None = None) -> str:
        """Return the declared MIME type, or guess it from the filename."""
        if declared and declared != "application/octet-stream":
            return declared
        mt, _ = mimetypes.guess_type(filename)
        return mt or declared or "application/octet-stream"

    async def resolve(self, api_key: str, refs: Iterable[AttachmentRef]) -> List[ResolvedAttachment]:
        """Return the subset of ``refs`` that could be staged locally."""
        resolved: List[ResolvedAttachment] = []
        for ref in refs:
            if not is_valid_file_id(ref.file_id):
                self.logger.warning("Skipping attachment with invalid file id %r", ref.file_id)
                continue
            try:
                resolved.append(await self._resolve_one(api_key, ref))
            except (AttachmentError, BrokerError, OSError) as exc:
                self.logger.warning("Skipping attachment %s (%s): %s", ref.file_id, ref.filename, exc)
        return resolved

    async def _resolve_one(self, api_key: str, ref: AttachmentRef) -> ResolvedAttachment:
        url = await self.broker.file_url(api_key, ref.file_id)
        content = await self.fetcher.fetch(url)
        target = self.staging_dir / f"{ref.file_id}_{sanitize_filename(ref.filename)}"
        await asyncio.to_thread(target.write_bytes, content)
        self.logger.debug("Staged attachment %s at %s (%d bytes)", ref.file_id, target, len(content))
        return ResolvedAttachment(
            file_id=ref.file_id,
            filename=ref.filename,
            mime_type=self.guess_mime(ref.filename, ref.mime_type),
            local_path=str(target),
        )

    def schedule_cleanup(
        self, attachments: Iterable[ResolvedAttachment], delay: float | None = None
    ) -> Optional[asyncio.Task]:
        """Delete staged files after ``delay`` seconds in the background."""
        paths = [Path(att.local_path) for att in attachments]
        if not paths:
            return None
        task = asyncio.create_task(
            self._cleanup_later(paths, self.cleanup_delay if delay is None else delay),
            name="attachment-cleanup",
        )
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)
        return task

    async def _cleanup_later(self, paths: List[Path], delay: float) -> None:
        await asyncio.sleep(delay)
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError:
                # Deletion is best-effort; a leftover temp file is harmless.
                continue
