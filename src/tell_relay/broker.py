# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""HTTP client for the remote message broker.

Every call authenticates with a bearer credential (one credential per
broker account) and carries an explicit timeout so a stalled broker cannot
hang a delivery loop. Transport failures of any kind (connection errors,
timeouts, non-2xx answers) surface as :class:`~tell_relay.errors.BrokerError`.

Example:
    Polling one account and acknowledging what was handled::

        broker = BrokerClient("https://www.clawtell.com/api")
        messages = await broker.poll_account(api_key, limit=50, wait=5)
        await broker.ack(api_key, [m["id"] for m in messages])
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp

from .errors import BrokerError
from .logger import get_logger

JsonDict = Dict[str, Any]

ACK_TIMEOUT = 10.0
READ_TIMEOUT = 10.0
FILE_URL_TIMEOUT = 10.0
INBOX_TIMEOUT = 30.0
SEND_TIMEOUT = 30.0
CHECK_TIMEOUT = 10.0
STREAM_CONNECT_TIMEOUT = 10.0
STREAM_READ_TIMEOUT = 120.0


class BrokerClient:
    """Thin async wrapper around the broker REST and stream endpoints."""

    def __init__(self, base_url: str, *, logger=None):
        self.base_url = base_url.rstrip("/")
        self.logger = logger or get_logger(__name__)

    def _endpoint(self, suffix: str) -> str:
        """Build the full URL for the given suffix."""
        return f"{self.base_url}/{suffix.lstrip('/')}"

    @staticmethod
    def _headers(api_key: str, *, json_body: bool = False) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {api_key}"}
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    async def _request(
        self,
        method: str,
        suffix: str,
        api_key: str,
        *,
        timeout: float,
        params: Optional[Dict[str, str]] = None,
        payload: Optional[JsonDict] = None,
    ) -> JsonDict:
        """Perform one request and return the decoded JSON body (``{}`` if none)."""
        url = self._endpoint(suffix)
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
                async with session.request(
                    method,
                    url,
                    params=params,
                    json=payload,
                    headers=self._headers(api_key, json_body=payload is not None),
                ) as resp:
                    if resp.status >= 400:
                        detail = (await resp.text())[:200]
                        raise BrokerError(f"{method} {suffix} failed: HTTP {resp.status} {detail}".strip(), resp.status)
                    if resp.content_type != "application/json":
                        return {}
                    data = await resp.json()
                    return data if isinstance(data, dict) else {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise BrokerError(f"{method} {suffix} failed: {exc or type(exc).__name__}") from exc

    @staticmethod
    def _messages(data: JsonDict) -> List[JsonDict]:
        msgs = data.get("messages", [])
        return [item for item in msgs if isinstance(item, dict)] if isinstance(msgs, list) else []

    # ------------------------------------------------------------- acquisition
    async def poll_account(self, api_key: str, *, limit: int = 50, wait: int = 5) -> List[JsonDict]:
        """Long-poll every identity of the account; returns raw messages."""
        data = await self._request(
            "GET",
            "messages/poll-account",
            api_key,
            timeout=wait + 5,
            params={"limit": str(limit), "timeout": str(wait)},
        )
        return self._messages(data)

    async def fetch_inbox(self, api_key: str, *, unread_only: bool = True, limit: int = 50) -> List[JsonDict]:
        """Fetch the single-identity inbox used by legacy accounts."""
        params = {"limit": str(limit)}
        if unread_only:
            params["unread"] = "true"
        data = await self._request("GET", "messages/inbox", api_key, timeout=INBOX_TIMEOUT, params=params)
        return self._messages(data)

    async def stream_lines(
        self,
        api_key: str,
        *,
        url: Optional[str] = None,
        on_connected: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> AsyncIterator[str]:
        """Open the event stream and yield its lines as text.

        Args:
            api_key: Account credential.
            url: Stream URL override; defaults to ``<base>/messages/stream``.
            on_connected: Awaited once the broker answered with a 2xx status.

        Raises:
            BrokerError: On connection failure, non-2xx status or read timeout.
        """
        timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=STREAM_CONNECT_TIMEOUT, sock_read=STREAM_READ_TIMEOUT
        )
        headers = self._headers(api_key)
        headers["Accept"] = "text/event-stream"
        target = url or self._endpoint("messages/stream")
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(target, headers=headers) as resp:
                    if resp.status >= 400:
                        raise BrokerError(f"stream connect failed: HTTP {resp.status}", resp.status)
                    if on_connected is not None:
                        await on_connected()
                    async for raw in resp.content:
                        yield raw.decode("utf-8", errors="replace")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise BrokerError(f"stream failed: {exc or type(exc).__name__}") from exc

    # --------------------------------------------------------- acknowledgement
    async def ack(self, api_key: str, message_ids: Sequence[str]) -> None:
        """Batch-acknowledge consumed messages."""
        if not message_ids:
            return
        await self._request(
            "POST", "messages/ack", api_key, timeout=ACK_TIMEOUT, payload={"messageIds": list(message_ids)}
        )

    async def mark_read(self, api_key: str, message_id: str) -> None:
        """Mark one legacy inbox message as read."""
        await self._request("POST", f"messages/{message_id}/read", api_key, timeout=READ_TIMEOUT)

    # ---------------------------------------------------------------- outbound
    async def send(
        self,
        api_key: str,
        *,
        to: str,
        body: str,
        subject: Optional[str] = None,
        from_name: Optional[str] = None,
        reply_to_id: Optional[str] = None,
    ) -> JsonDict:
        """Send a message (typically a consumer reply) through the broker."""
        payload: JsonDict = {"to": to, "body": body}
        if subject:
            payload["subject"] = subject
        if from_name:
            payload["from_name"] = from_name
        if reply_to_id:
            payload["reply_to_id"] = reply_to_id
        return await self._request("POST", "messages/send", api_key, timeout=SEND_TIMEOUT, payload=payload)

    async def file_url(self, api_key: str, file_id: str) -> str:
        """Return a short-lived signed download URL for an attachment."""
        data = await self._request("GET", f"files/{file_id}", api_key, timeout=FILE_URL_TIMEOUT)
        url = data.get("url") or data.get("signedUrl")
        if not url:
            raise BrokerError(f"no download URL returned for file {file_id}")
        return str(url)

    # ------------------------------------------------------------ diagnostics
    async def check_connectivity(self, api_key: str, *, timeout: float = CHECK_TIMEOUT) -> JsonDict:
        """Check that the broker accepts ``api_key`` with one read-only request.

        Fetches at most one inbox entry and marks nothing read. Never raises:
        the outcome is returned as ``{"ok", "error", "elapsed_ms"}``.
        """
        started = time.monotonic()
        error: Optional[str] = None
        try:
            await self._request("GET", "messages/inbox", api_key, timeout=timeout, params={"limit": "1"})
        except BrokerError as exc:
            error = str(exc)
            self.logger.warning("Broker connectivity check failed: %s", exc)
        return {"ok": error is None, "error": error, "elapsed_ms": int((time.monotonic() - started) * 1000)}
