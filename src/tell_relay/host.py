# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Consumer host capability: where dispatched messages are processed.

The delivery engine never calls consumers directly. It submits a
:class:`DispatchRequest` to a :class:`ConsumerHost`; the request carries a
future that the host resolves with a :class:`~tell_relay.models.DispatchResponse`
(or an exception) once the consumer is done.

Two implementations ship with the relay:

- :class:`LocalConsumerHost` runs coroutine handlers registered in-process.
- :class:`SessionApiClient` talks to the session HTTP API of a sibling
  host process and is used as fallback when the local host rejects a
  session path.

Example:
    Registering an in-process consumer::

        host = LocalConsumerHost()

        async def main_agent(ctx: InboundContext):
            return [ReplyPayload(text=f"Got it, {ctx.sender_name}")]

        host.register("main", main_agent)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, runtime_checkable
from urllib.parse import quote

import aiohttp
from pydantic import ValidationError

from .errors import DispatchError, RelayError, SessionPathError
from .logger import get_logger
from .models import DeliveryContext, DispatchResponse, InboundContext, ReplyPayload

ConsumerHandler = Callable[[InboundContext], Awaitable[Any]]
ChannelSender = Callable[[DeliveryContext, str], Awaitable[None]]

SESSION_API_TIMEOUT = 120.0


@dataclass
class DispatchRequest:
    """One message handed to a consumer.

    Attributes:
        consumer: Name of the target consumer.
        context: Normalized inbound context.
        future: Resolved by the host with a ``DispatchResponse``.
    """

    consumer: str
    context: InboundContext
    future: asyncio.Future


@runtime_checkable
class ConsumerHost(Protocol):
    """Capability interface the engine uses to reach consumers."""

    async def submit(self, request: DispatchRequest) -> None:
        """Accept ``request``; resolve ``request.future`` when done."""


def coerce_response(result: Any) -> DispatchResponse:
    """Normalize whatever a consumer handler returned into a response."""
    if isinstance(result, DispatchResponse):
        return result
    if result is None:
        return DispatchResponse()
    if isinstance(result, str):
        return DispatchResponse(replies=[ReplyPayload(text=result)])
    if isinstance(result, ReplyPayload):
        return DispatchResponse(replies=[result])
    if isinstance(result, dict):
        return DispatchResponse.model_validate(result)
    if isinstance(result, (list, tuple)):
        replies = [
            item if isinstance(item, ReplyPayload) else ReplyPayload.model_validate(item)
            for item in result
        ]
        return DispatchResponse(replies=replies)
    raise DispatchError(f"Unsupported consumer result type: {type(result).__name__}")


class LocalConsumerHost:
    """In-process consumer host.

    Handlers run as background tasks so the dispatcher's bounded wait also
    covers slow consumers. A request for an unregistered consumer fails with
    :class:`SessionPathError`.
    """

    def __init__(self, logger=None):
        self.logger = logger or get_logger(__name__)
        self._handlers: Dict[str, ConsumerHandler] = {}
        self._channel_senders: Dict[str, ChannelSender] = {}
        self._tasks: Set[asyncio.Task] = set()

    def register(self, name: str, handler: ConsumerHandler) -> None:
        self._handlers[name] = handler

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def register_channel(self, channel: str, sender: ChannelSender) -> None:
        """Provide a sender used to forward renderings to ``channel``."""
        self._channel_senders[channel.lower()] = sender

    def has_channel(self, channel: str) -> bool:
        return channel.lower() in self._channel_senders

    @property
    def consumers(self) -> List[str]:
        return sorted(self._handlers)

    async def submit(self, request: DispatchRequest) -> None:
        handler = self._handlers.get(request.consumer)
        if handler is None:
            request.future.set_exception(
                SessionPathError(f"No local consumer registered for {request.context.session_key}")
            )
            return
        task = asyncio.create_task(self._run(handler, request), name=f"consumer-{request.consumer}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, handler: ConsumerHandler, request: DispatchRequest) -> None:
        try:
            result = coerce_response(await handler(request.context))
        except RelayError as exc:
            if not request.future.done():
                request.future.set_exception(exc)
            return
        except Exception as exc:
            self.logger.exception("Consumer %s failed on message %s", request.consumer, request.context.message_id)
            if not request.future.done():
                request.future.set_exception(DispatchError(f"consumer {request.consumer} failed: {exc}"))
            return
        if not request.future.done():
            request.future.set_result(result)

    async def send_to_channel(self, context: DeliveryContext, text: str) -> None:
        """Send ``text`` to a human channel through a registered sender.

        Raises:
            RelayError: If no sender is registered for the channel.
        """
        sender = self._channel_senders.get(context.channel.lower())
        if sender is None:
            raise RelayError(f"Channel {context.channel!r} forwarding not supported by this host")
        await sender(context, text)


class SessionApiClient:
    """Dispatch through the session HTTP API of a sibling host process."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = SESSION_API_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def dispatch(self, context: InboundContext) -> DispatchResponse:
        """Post ``context`` to the session it targets and return the replies.

        Raises:
            DispatchError: On transport failures, non-2xx answers or an
                unreadable response body.
        """
        url = f"{self.base_url}/sessions/{quote(context.session_key, safe='')}/messages"
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(url, json=context.model_dump(mode="json"), headers=self._headers()) as resp:
                    if resp.status >= 400:
                        detail = (await resp.text())[:200]
                        raise DispatchError(f"session API returned HTTP {resp.status} {detail}".strip())
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise DispatchError(f"session API call failed: {exc or type(exc).__name__}") from exc
        try:
            return DispatchResponse.model_validate(data or {})
        except ValidationError as exc:
            raise DispatchError(f"session API returned an invalid body: {exc}") from exc
