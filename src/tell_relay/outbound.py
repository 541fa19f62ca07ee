# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Operator initiated sends on behalf of a configured account.

Consumer replies go out through the delivery engine. This module covers
messages an operator sends by hand, from ``tell-relay send`` or
``POST /accounts/{account_id}/send``. The broker has no media message type,
so a media URL travels in the body below its caption.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from .broker import BrokerClient
from .config_loader import AccountConfig
from .logger import get_logger
from .models import normalize_target

DEFAULT_MEDIA_CAPTION = "Media attachment"

logger = get_logger(__name__)


@dataclass
class SendResult:
    """Outcome of :func:`send_message`."""

    account_id: str
    to: str
    message_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compose_body(text: Optional[str], media_url: Optional[str] = None) -> str:
    """Message body for ``text``, with ``media_url`` appended when given."""
    if not media_url:
        return text or ""
    return f"{text or DEFAULT_MEDIA_CAPTION}\n\n{media_url}"


async def send_message(
    broker: BrokerClient,
    account: AccountConfig,
    to: str,
    text: Optional[str],
    *,
    subject: Optional[str] = None,
    reply_to_id: Optional[str] = None,
    media_url: Optional[str] = None,
) -> SendResult:
    """Send one message as ``account`` to the identity ``to``.

    ``to`` accepts both ``tell/<name>`` and ``<name>``. The account's primary
    identity, when configured, is used as sender name.

    Raises:
        ValueError: If the target or the body is empty.
        BrokerError: If the broker rejects the send.
    """
    target = normalize_target(to)
    body = compose_body(text, media_url)
    if not body.strip():
        raise ValueError("message text is required")
    data = await broker.send(
        account.api_key,
        to=target,
        body=body,
        subject=subject,
        from_name=account.name,
        reply_to_id=reply_to_id,
    )
    message_id = data.get("messageId") or data.get("id")
    logger.info("Sent message to tell/%s from account %s", target, account.account_id)
    return SendResult(account.account_id, target, str(message_id) if message_id else None)
