# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Size-capped HTTP download of attachment content.

The fetcher checks the declared ``Content-Length`` before reading anything
and enforces the same cap while streaming, so an oversized file is never
written to disk.

Example:
    Downloading a signed URL::

        fetcher = HttpFetcher(max_bytes=20 * 1024 * 1024)
        content = await fetcher.fetch("https://files.example.com/signed/abc")
"""

from __future__ import annotations

import asyncio

import aiohttp

from ..errors import AttachmentError, AttachmentTooLargeError

DEFAULT_MAX_BYTES = 20 * 1024 * 1024
DEFAULT_TIMEOUT = 60.0
CHUNK_SIZE = 64 * 1024


class HttpFetcher:
    """Download attachments from (signed) URLs with a hard size cap.

    Attributes:
        max_bytes: Largest accepted payload, declared or actual.
        timeout: Total time budget for one download in seconds.
    """

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES, timeout: float = DEFAULT_TIMEOUT):
        self.max_bytes = max_bytes
        self.timeout = timeout

    def _check_declared(self, declared: int | None) -> None:
        if declared is not None and declared > self.max_bytes:
            raise AttachmentTooLargeError(
                f"declared size {declared} exceeds limit of {self.max_bytes} bytes"
            )

    async def fetch(self, url: str) -> bytes:
        """Download ``url`` and return its content.

        Raises:
            AttachmentTooLargeError: If the declared or actual size exceeds
                ``max_bytes``.
            AttachmentError: On HTTP errors, connection failures or timeouts.
        """
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.get(url) as response:
                    if response.status >= 400:
                        raise AttachmentError(f"download failed: HTTP {response.status}")
                    self._check_declared(response.content_length)
                    chunks: list[bytes] = []
                    received = 0
                    async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                        received += len(chunk)
                        if received > self.max_bytes:
                            raise AttachmentTooLargeError(
                                f"download exceeded limit of {self.max_bytes} bytes"
                            )
                        chunks.append(chunk)
                    return b"".join(chunks)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise AttachmentError(f"download failed: {exc or type(exc).__name__}") from exc
