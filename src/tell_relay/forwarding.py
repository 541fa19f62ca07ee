# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Forward human-readable renderings of inbound messages to a human channel.

The target channel is resolved fresh for every forward with a fixed
priority: the route's own target, then the global ``[forward]`` target, then
the delivery context recorded in the consumer's main session
(``<sessions_dir>/<consumer>/sessions/sessions.json``). Telegram targets are
sent through the Bot API when a bot token is configured; every other channel
goes through the host's ``send_to_channel`` capability when it offers one.

Forwarding never blocks dispatch: failures are logged and reported as
:attr:`ForwardResult.FAILED`.
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

import aiohttp

from .config_loader import ForwardTarget
from .errors import RelayError
from .logger import get_logger
from .models import IDENTITY_PREFIX, DeliveryContext, Message, QueuedMessage, RouteEntry

TELEGRAM_API_URL = "https://api.telegram.org"
FORWARD_TIMEOUT = 10.0


class ForwardResult(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


def render_message(message: Message) -> str:
    """Human-readable rendering used for forwards and as consumer body."""
    header = f"**Message from {IDENTITY_PREFIX}{message.sender}**"
    if message.to_name:
        header += f" (to: {message.to_name})"
    if message.subject:
        return f"{header}\n**Subject:** {message.subject}\n\n{message.body}"
    return f"{header}\n\n{message.body}"


def render_dead_letter_alert(entry: QueuedMessage) -> str:
    """Alert text sent to the human channel when a message is dead-lettered."""
    lines = [
        f"**Undeliverable message from {IDENTITY_PREFIX}{entry.sender}** (to: {entry.to_name})",
        f"Consumer `{entry.consumer}` failed {entry.attempts} times. Last error: {entry.last_error or 'unknown'}",
    ]
    if entry.subject:
        lines.append(f"**Subject:** {entry.subject}")
    return "\n".join(lines) + f"\n\n{entry.raw_body}"


def read_session_context(sessions_dir: Path, consumer: str) -> Optional[DeliveryContext]:
    """Delivery context of the consumer's main session, if one is recorded."""
    path = Path(sessions_dir) / consumer / "sessions" / "sessions.json"
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    session = data.get(f"agent:{consumer}:main") if isinstance(data, dict) else None
    dc: Any = session.get("deliveryContext") if isinstance(session, dict) else None
    if not isinstance(dc, dict) or not dc.get("channel") or not dc.get("to"):
        return None
    return DeliveryContext(channel=str(dc["channel"]), to=str(dc["to"]), account_id=str(dc.get("accountId") or "default"))


class TelegramForwarder:
    """Send text to a Telegram chat through the Bot API."""

    def __init__(self, bot_tokens: Mapping[str, str], *, api_url: str = TELEGRAM_API_URL, timeout: float = FORWARD_TIMEOUT):
        self.bot_tokens = dict(bot_tokens)
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def token_for(self, account_id: str) -> Optional[str]:
        return self.bot_tokens.get(account_id) or self.bot_tokens.get("default")

    async def send(self, context: DeliveryContext, text: str) -> None:
        """Post ``text`` to the chat in ``context``.

        Raises:
            RelayError: When no token is configured or the API call fails.
        """
        token = self.token_for(context.account_id)
        if not token:
            raise RelayError(f"No Telegram bot token for account {context.account_id!r}")
        chat_id = context.to[len("telegram:"):] if context.to.startswith("telegram:") else context.to
        url = f"{self.api_url}/bot{token}/sendMessage"
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(url, json={"chat_id": chat_id, "text": text}) as resp:
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise RelayError(f"Telegram request failed: {exc or type(exc).__name__}") from exc
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else None
            raise RelayError(f"Telegram API error: {description or 'unknown error'}")


class Forwarder:
    """Resolve a human channel and deliver a rendering to it."""

    def __init__(
        self,
        *,
        global_target: Optional[ForwardTarget] = None,
        sessions_dir: Optional[Path] = None,
        telegram: Optional[TelegramForwarder] = None,
        host: Any = None,
        logger=None,
    ):
        self.global_target = global_target
        self.sessions_dir = Path(sessions_dir) if sessions_dir else None
        self.telegram = telegram
        self.host = host
        self.logger = logger or get_logger(__name__)

    async def resolve_context(self, consumer: str, route: Optional[RouteEntry] = None) -> Optional[DeliveryContext]:
        """Pick the delivery context: route target, global target, then session."""
        if route is not None and route.forward_channel and route.forward_to:
            return DeliveryContext(
                channel=route.forward_channel.lower(),
                to=route.forward_to,
                account_id=route.forward_account or "default",
            )
        if self.global_target is not None:
            return DeliveryContext(
                channel=self.global_target.channel.lower(),
                to=self.global_target.to,
                account_id=self.global_target.account_id,
            )
        if self.sessions_dir is not None:
            return await asyncio.to_thread(read_session_context, self.sessions_dir, consumer)
        return None

    async def _deliver(self, context: DeliveryContext, text: str) -> bool:
        send_to_channel = getattr(self.host, "send_to_channel", None)
        has_channel = getattr(self.host, "has_channel", None)
        if send_to_channel is not None and (has_channel is None or has_channel(context.channel)):
            await send_to_channel(context, text)
            return True
        # Bot API is only the fallback when the host has no telegram sender.
        if context.channel == "telegram" and self.telegram is not None and self.telegram.token_for(context.account_id):
            await self.telegram.send(context, text)
            return True
        if send_to_channel is None:
            self.logger.info("Channel %r forwarding not supported, skipping", context.channel)
            return False
        await send_to_channel(context, text)
        return True

    async def forward(self, text: str, consumer: str, route: Optional[RouteEntry] = None) -> ForwardResult:
        """Forward ``text`` on behalf of ``consumer``; never raises."""
        try:
            context = await self.resolve_context(consumer, route)
            if context is None:
                self.logger.info("No delivery context for consumer=%s, skipping forward", consumer)
                return ForwardResult.SKIPPED
            self.logger.info("Forwarding to %s: %s (consumer=%s)", context.channel, context.to, consumer)
            if not await self._deliver(context, text):
                return ForwardResult.SKIPPED
        except Exception as exc:
            self.logger.error("Forward failed for consumer=%s: %s", consumer, exc)
            return ForwardResult.FAILED
        return ForwardResult.SENT
