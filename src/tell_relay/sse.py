# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Incremental parser for the broker's line-oriented event stream.

The protocol is a subset of server-sent events: ``event: <type>`` and
``data: <payload>`` lines accumulate into one event, a blank line
terminates it, and lines starting with ``:`` are keepalives.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class StreamEvent:
    """One complete event read from the stream."""

    event: str
    data: str


class EventStreamParser:
    """Turn stream lines into :class:`StreamEvent` objects."""

    def __init__(self) -> None:
        self._event: Optional[str] = None
        self._data: List[str] = []
        self.keepalives = 0

    def feed_line(self, line: str) -> Optional[StreamEvent]:
        """Consume one line (with or without its line terminator).

        Returns:
            The completed event when ``line`` terminates one, else ``None``.
        """
        line = line.rstrip("\r\n")
        if not line:
            return self._flush()
        if line.startswith(":"):
            self.keepalives += 1
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value.strip()
        elif field == "data":
            self._data.append(value)
        # Other fields (id, retry) are not used by the broker.
        return None

    def _flush(self) -> Optional[StreamEvent]:
        if self._event is None and not self._data:
            return None
        event = StreamEvent(event=self._event or "message", data="\n".join(self._data))
        self._event = None
        self._data = []
        return event
