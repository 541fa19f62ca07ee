# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Acquisition transport: how one account pulls messages from the broker.

One class covers the three acquisition modes and the matching
acknowledgement protocol:

- ``STREAM``: long-lived event stream; ``message`` events are handed over
  immediately, ``timeout`` events trigger a reconnect, and three consecutive
  connection failures run one polling cycle before streaming is retried.
- ``POLL``: account-level long polling, acknowledged in batches.
- ``LEGACY``: single-identity inbox, de-duplicated with a bounded seen set
  and acknowledged by marking each message read.
"""

from __future__ import annotations

import asyncio
import json
from collections import OrderedDict
from contextlib import aclosing
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from pydantic import ValidationError

from .broker import BrokerClient
from .config_loader import AccountConfig
from .errors import BrokerError
from .logger import get_logger
from .models import Message, TransportMode
from .sse import EventStreamParser

SEEN_IDS_LIMIT = 1000
SEEN_IDS_KEEP = 500
STREAM_FAILURES_BEFORE_POLL = 3
RECONNECT_STEP = 2.0
RECONNECT_MAX = 10.0


def reconnect_delay(failures: int) -> float:
    """Linear reconnect backoff: 2 s per consecutive failure, capped at 10 s."""
    return min(RECONNECT_STEP * max(failures, 1), RECONNECT_MAX)


async def wait_or_stop(stop_event: asyncio.Event, delay: float) -> bool:
    """Sleep ``delay`` seconds unless ``stop_event`` fires first.

    Returns:
        ``True`` when the stop event is set.
    """
    if delay <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


class SeenIds:
    """Insertion-ordered id set bounded to the most recent entries."""

    def __init__(self, limit: int = SEEN_IDS_LIMIT, keep: int = SEEN_IDS_KEEP):
        self.limit = limit
        self.keep = keep
        self._ids: "OrderedDict[str, None]" = OrderedDict()

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, message_id: str) -> bool:
        """Remember ``message_id``; returns ``False`` if it was already seen."""
        if message_id in self._ids:
            return False
        self._ids[message_id] = None
        if len(self._ids) > self.limit:
            while len(self._ids) > self.keep:
                self._ids.popitem(last=False)
        return True

    def discard(self, message_id: str) -> None:
        self._ids.pop(message_id, None)


class StreamHandler(Protocol):
    """Callbacks the stream loop drives."""

    async def on_connected(self) -> None: ...

    async def on_messages(self, messages: List[Message]) -> None: ...

    async def on_poll_fallback(self) -> None: ...

    async def on_stream_error(self, error: BrokerError, failures: int) -> None: ...


class AcquisitionTransport:
    """Acquire and acknowledge messages for one broker account."""

    def __init__(self, broker: BrokerClient, account: AccountConfig, *, logger=None):
        self.broker = broker
        self.account = account
        self.mode = TransportMode(account.mode)
        self.logger = logger or get_logger(__name__)
        self.seen = SeenIds()
        self.stream_failures = 0
        self._undeliverable: List[str] = []

    # ---------------------------------------------------------------- parsing
    def parse_message(self, raw: Any) -> Optional[Message]:
        """Validate one raw broker message.

        Input without a usable id is logged and dropped. A message that has
        an id but still fails validation is remembered as undeliverable so
        the engine acknowledges it instead of fetching it again forever.
        """
        try:
            message = Message.model_validate(raw)
        except ValidationError as exc:
            message_id = raw.get("id") if isinstance(raw, dict) else None
            if isinstance(message_id, (str, int)) and not isinstance(message_id, bool) and str(message_id).strip():
                self.logger.error("Undeliverable message %s from broker, acknowledging it: %s", message_id, exc)
                self._undeliverable.append(str(message_id))
            else:
                self.logger.warning("Dropping malformed message from broker: %s", exc)
            return None
        if not message.to_name and self.account.name:
            message.to_name = self.account.name
        return message

    def take_undeliverable(self) -> List[str]:
        """Return and forget the ids of messages that failed validation."""
        ids, self._undeliverable = self._undeliverable, []
        return ids

    def parse_messages(self, raws: Iterable[Any]) -> List[Message]:
        messages = []
        for raw in raws:
            message = self.parse_message(raw)
            if message is not None:
                messages.append(message)
        return messages

    # ---------------------------------------------------------------- polling
    async def poll(self) -> List[Message]:
        """Run one pull cycle (account poll or legacy inbox)."""
        if self.mode == TransportMode.LEGACY:
            raws = await self.broker.fetch_inbox(self.account.api_key, unread_only=True, limit=self.account.poll_limit)
            fresh = []
            for message in self.parse_messages(raws):
                if self.seen.add(message.id):
                    fresh.append(message)
            return fresh
        raws = await self.broker.poll_account(
            self.account.api_key, limit=self.account.poll_limit, wait=self.account.poll_wait
        )
        return self.parse_messages(raws)

    # -------------------------------------------------------- acknowledgement
    async def acknowledge(self, message_ids: Sequence[str]) -> List[str]:
        """Acknowledge handled ids; returns those the broker accepted.

        Account modes send one batch ack. Legacy mode marks each message
        read; a failed mark forgets the id so the next cycle retries it.
        """
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return []
        if self.mode != TransportMode.LEGACY:
            await self.broker.ack(self.account.api_key, ids)
            return ids
        acked = []
        for message_id in ids:
            try:
                await self.broker.mark_read(self.account.api_key, message_id)
                acked.append(message_id)
            except BrokerError as exc:
                self.logger.error("Failed to mark %s read: %s", message_id, exc)
                self.seen.discard(message_id)
        return acked

    def release(self, message_ids: Iterable[str]) -> None:
        """Forget ids left un-acknowledged so the next legacy cycle retries them."""
        for message_id in message_ids:
            self.seen.discard(message_id)

    # -------------------------------------------------------------- streaming
    def _decode_event_data(self, data: str) -> Optional[Message]:
        try:
            raw: Dict[str, Any] = json.loads(data)
        except ValueError:
            self.logger.warning("Ignoring non-JSON stream event payload")
            return None
        if isinstance(raw, dict) and isinstance(raw.get("message"), dict):
            raw = raw["message"]
        return self.parse_message(raw)

    async def _consume_stream(self, stop_event: asyncio.Event, handler: StreamHandler) -> bool:
        """Read one connection; returns ``True`` when the broker asked for a reconnect."""
        parser = EventStreamParser()

        async def connected() -> None:
            self.stream_failures = 0
            self.logger.info("Stream connected for account %s", self.account.account_id)
            await handler.on_connected()

        lines = self.broker.stream_lines(self.account.api_key, url=self.account.stream_url, on_connected=connected)
        async with aclosing(lines):
            async for line in lines:
                event = parser.feed_line(line)
                if event is not None:
                    if event.event == "message":
                        message = self._decode_event_data(event.data)
                        if message is not None:
                            await handler.on_messages([message])
                        elif self._undeliverable:
                            await handler.on_messages([])
                    elif event.event == "timeout":
                        self.logger.debug("Stream timeout event, reconnecting")
                        return True
                if stop_event.is_set():
                    return True
        return False

    async def run_stream(self, stop_event: asyncio.Event, handler: StreamHandler) -> None:
        """Stream until ``stop_event`` is set, falling back to polling on failures."""
        while not stop_event.is_set():
            try:
                if await self._consume_stream(stop_event, handler):
                    continue
                # Connection closed without a timeout event.
                if await wait_or_stop(stop_event, RECONNECT_STEP):
                    return
                continue
            except BrokerError as exc:
                self.stream_failures += 1
                self.logger.warning(
                    "Stream failure %d for account %s: %s", self.stream_failures, self.account.account_id, exc
                )
                await handler.on_stream_error(exc, self.stream_failures)
            if self.stream_failures >= STREAM_FAILURES_BEFORE_POLL:
                self.logger.info("Falling back to one polling cycle for account %s", self.account.account_id)
                self.stream_failures = 0
                await handler.on_poll_fallback()
            if await wait_or_stop(stop_event, reconnect_delay(self.stream_failures)):
                return
