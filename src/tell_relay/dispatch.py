# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Dispatch gateway: hand one message to a consumer and relay its replies.

The gateway builds the consumer-facing :class:`~tell_relay.models.InboundContext`,
submits it to the :class:`~tell_relay.host.ConsumerHost` and waits for the
response with a bounded timeout. Replies are sent back to the original
sender through the broker using the route's reply credential, so they
originate from the identity that was addressed.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Sequence

from .broker import BrokerClient
from .errors import BrokerError, DispatchError, SessionPathError
from .host import ConsumerHost, DispatchRequest, SessionApiClient
from .logger import get_logger
from .models import (
    IDENTITY_PREFIX,
    DispatchResponse,
    InboundContext,
    Message,
    ReplyPayload,
    ResolvedAttachment,
)

DEFAULT_DISPATCH_TIMEOUT = 120.0


def session_key_for(consumer: str) -> str:
    """Session key of a consumer's main conversation."""
    return f"agent:{consumer}:main"


class DispatchGateway:
    """Deliver messages to consumers for one broker account.

    Attributes:
        last_error: Reason of the most recent failed dispatch, used as the
            ``lastError`` of retry queue entries.
        replies_sent: Replies delivered to the broker so far.
    """

    def __init__(
        self,
        host: ConsumerHost,
        broker: BrokerClient,
        *,
        session_api: Optional[SessionApiClient] = None,
        timeout: float = DEFAULT_DISPATCH_TIMEOUT,
        logger=None,
    ):
        self.host = host
        self.broker = broker
        self.session_api = session_api
        self.timeout = timeout
        self.logger = logger or get_logger(__name__)
        self.last_error: str = ""
        self.replies_sent = 0

    def build_context(
        self,
        message: Message,
        consumer: str,
        *,
        account_id: str,
        rendered: str,
        attachments: Sequence[ResolvedAttachment] = (),
        auto_reply_allowed: bool = False,
    ) -> InboundContext:
        return InboundContext(
            body=rendered,
            raw_body=message.body,
            sender=f"{IDENTITY_PREFIX}{message.sender}",
            recipient=f"{IDENTITY_PREFIX}{message.to_name or ''}",
            session_key=session_key_for(consumer),
            account_id=account_id,
            sender_name=message.sender,
            message_id=message.id,
            timestamp=message.created_at,
            reply_to_id=message.reply_to_message_id,
            thread_id=message.thread_id,
            subject=message.subject,
            media=[att.as_media() for att in attachments],
            auto_reply_allowed=auto_reply_allowed,
        )

    async def _submit(self, consumer: str, context: InboundContext) -> DispatchResponse:
        future = asyncio.get_running_loop().create_future()
        await self.host.submit(DispatchRequest(consumer=consumer, context=context, future=future))
        try:
            response = await asyncio.wait_for(future, self.timeout)
        except asyncio.TimeoutError as exc:
            raise DispatchError(f"consumer {consumer} did not answer within {self.timeout:g}s") from exc
        if response.error:
            if response.error_code == SessionPathError.code:
                raise SessionPathError(response.error)
            raise DispatchError(response.error)
        return response

    async def _submit_with_fallback(self, consumer: str, context: InboundContext) -> DispatchResponse:
        try:
            return await self._submit(consumer, context)
        except SessionPathError as exc:
            if self.session_api is None:
                raise
            self.logger.info("Session path rejected for %s (%s), retrying via session API", consumer, exc)
        response = await self.session_api.dispatch(context)
        if response.error:
            raise DispatchError(response.error)
        return response

    async def send_replies(self, message: Message, replies: Sequence[ReplyPayload], reply_credential: str) -> int:
        """Send consumer replies to the original sender; returns how many went out."""
        sent = 0
        for reply in replies:
            if not reply.text:
                continue
            try:
                await self.broker.send(
                    reply_credential,
                    to=message.sender,
                    body=reply.text,
                    subject=reply.subject,
                    from_name=message.to_name,
                    reply_to_id=message.id,
                )
                sent += 1
            except BrokerError as exc:
                self.logger.error("Reply from %s to %s failed: %s", message.to_name, message.sender, exc)
        return sent

    async def dispatch(
        self,
        message: Message,
        consumer: str,
        reply_credential: str,
        *,
        account_id: str,
        rendered: str,
        attachments: Sequence[ResolvedAttachment] = (),
        auto_reply_allowed: bool = False,
    ) -> bool:
        """Dispatch ``message`` to ``consumer``.

        Returns:
            ``True`` once the consumer accepted the message (reply send
            failures do not count), ``False`` on any dispatch failure.
        """
        context = self.build_context(
            message,
            consumer,
            account_id=account_id,
            rendered=rendered,
            attachments=attachments,
            auto_reply_allowed=auto_reply_allowed,
        )
        try:
            response = await self._submit_with_fallback(consumer, context)
        except DispatchError as exc:
            self.last_error = str(exc)
            self.logger.warning("Dispatch of %s to %s failed: %s", message.id, consumer, exc)
            return False
        except Exception as exc:
            self.last_error = str(exc) or type(exc).__name__
            self.logger.exception("Unexpected error dispatching %s to %s", message.id, consumer)
            return False
        self.last_error = ""
        self.replies_sent += await self.send_replies(message, response.replies, reply_credential)
        return True
