# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Durable per-account retry queue backed by a single JSON file.

Messages whose dispatch to a non-default consumer failed are parked here
until the consumer accepts them. Every mutation reads the whole file,
applies the change and writes it back through a temporary file followed by
``os.replace``, so a crash leaves either the old or the new content on
disk. Entries that reach ``max_attempts`` move to a bounded dead-letter
list.

File layout::

    {"pending": [<QueuedMessage>, ...], "deadLetter": [<QueuedMessage>, ...]}
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from .logger import get_logger
from .models import QueuedMessage, QueueFile

MAX_ATTEMPTS = 10
DEAD_LETTER_CAP = 100


class RetryQueue:
    """Retry queue for one broker account.

    The queue file is owned by a single account loop; no cross-process
    locking is attempted.
    """

    def __init__(
        self,
        path: str | os.PathLike[str],
        *,
        max_attempts: int = MAX_ATTEMPTS,
        dead_letter_cap: int = DEAD_LETTER_CAP,
        logger=None,
    ):
        self.path = Path(path)
        self.max_attempts = max_attempts
        self.dead_letter_cap = dead_letter_cap
        self.logger = logger or get_logger(__name__)

    # ------------------------------------------------------------------ file io
    def _read(self) -> QueueFile:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return QueueFile()
        except OSError as exc:
            self.logger.warning("Cannot read retry queue %s: %s", self.path, exc)
            return QueueFile()
        try:
            return QueueFile.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as exc:
            self.logger.warning("Retry queue %s is corrupt, starting empty: %s", self.path, exc)
            return QueueFile()

    def _write(self, state: QueueFile) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        payload = state.model_dump(by_alias=True, mode="json")
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
        os.replace(tmp_path, self.path)

    # ---------------------------------------------------------- sync mutations
    def _enqueue(self, entry: QueuedMessage) -> bool:
        state = self._read()
        if any(item.id == entry.id for item in state.pending):
            return False
        state.pending.append(entry)
        self._write(state)
        return True

    def _dequeue(self, message_id: str) -> bool:
        state = self._read()
        remaining = [item for item in state.pending if item.id != message_id]
        if len(remaining) == len(state.pending):
            return False
        state.pending = remaining
        self._write(state)
        return True

    def _mark_attempt(self, message_id: str, error: str) -> Optional[QueuedMessage]:
        state = self._read()
        entry = next((item for item in state.pending if item.id == message_id), None)
        if entry is None:
            return None
        entry.attempts += 1
        entry.last_error = error
        if entry.attempts < self.max_attempts:
            self._write(state)
            return None
        state.pending = [item for item in state.pending if item.id != message_id]
        state.dead_letter.append(entry)
        if len(state.dead_letter) > self.dead_letter_cap:
            state.dead_letter = state.dead_letter[-self.dead_letter_cap:]
        self._write(state)
        return entry

    # ------------------------------------------------------------- public api
    async def enqueue(self, entry: QueuedMessage) -> bool:
        """Add ``entry`` unless its id is already pending.

        Returns:
            ``True`` when the entry was added, ``False`` for a duplicate.
        """
        added = await asyncio.to_thread(self._enqueue, entry)
        if added:
            self.logger.info("Queued message %s for consumer %s", entry.id, entry.consumer)
        return added

    async def dequeue(self, message_id: str) -> bool:
        """Remove a pending entry. Returns ``False`` when it was not pending."""
        return await asyncio.to_thread(self._dequeue, message_id)

    async def mark_attempt(self, message_id: str, error: str) -> Optional[QueuedMessage]:
        """Record one more failed attempt for a pending entry.

        Returns:
            The entry when this attempt moved it to the dead-letter list,
            otherwise ``None``.
        """
        dead = await asyncio.to_thread(self._mark_attempt, message_id, error)
        if dead is not None:
            self.logger.warning(
                "Message %s dead-lettered after %d attempts: %s", dead.id, dead.attempts, dead.last_error
            )
        return dead

    async def list_pending(self) -> List[QueuedMessage]:
        state = await asyncio.to_thread(self._read)
        return state.pending

    async def list_dead_letter(self) -> List[QueuedMessage]:
        state = await asyncio.to_thread(self._read)
        return state.dead_letter

    async def counts(self) -> tuple[int, int]:
        """Return ``(pending, dead_letter)`` sizes."""
        state = await asyncio.to_thread(self._read)
        return len(state.pending), len(state.dead_letter)
