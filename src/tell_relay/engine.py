# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Inbound delivery engine for one broker account.

Each cycle runs the same pipeline regardless of the acquisition mode::

    RETRY_QUEUED -> ACQUIRE -> FILTER -> ROUTE -> ATTACH
        -> FORWARD (optional) -> DISPATCH -> ACK_OR_QUEUE

Delivery is at-least-once. A message id is acknowledged on the broker only
once its disposition is certain: dispatched, durably queued for retry,
rejected by the delivery policy, or dead-lettered. A failed dispatch to the
default consumer is never acknowledged, so the broker delivers it again.

Example:
    Running one account until interrupted::

        engine = DeliveryEngine(account, config=config, broker=broker, host=host)
        stop = asyncio.Event()
        await engine.run(stop)
"""

from __future__ import annotations

import asyncio
from typing import List, Optional, Sequence, Tuple

from .attachments import AttachmentResolver
from .broker import BrokerClient
from .config_loader import AccountConfig, RelayConfig
from .dispatch import DispatchGateway
from .errors import BrokerError
from .forwarding import Forwarder, ForwardResult, TelegramForwarder, render_dead_letter_alert, render_message
from .host import ConsumerHost, SessionApiClient
from .logger import get_logger
from .models import AccountStatus, Message, QueuedMessage, ResolvedAttachment, TransportMode, utc_now_iso
from .policy import check_delivery_policy, is_auto_reply_allowed
from .prometheus import RelayMetrics
from .retry_queue import RetryQueue
from .routing import RouteTable
from .transport import AcquisitionTransport, reconnect_delay, wait_or_stop


class DeliveryEngine:
    """Sequential delivery loop for one account.

    Collaborators default to instances built from ``config``; tests and the
    service may inject their own.
    """

    def __init__(
        self,
        account: AccountConfig,
        *,
        config: RelayConfig,
        broker: BrokerClient,
        host: ConsumerHost,
        transport: Optional[AcquisitionTransport] = None,
        queue: Optional[RetryQueue] = None,
        resolver: Optional[AttachmentResolver] = None,
        forwarder: Optional[Forwarder] = None,
        gateway: Optional[DispatchGateway] = None,
        metrics: Optional[RelayMetrics] = None,
        logger=None,
    ):
        self.account = account
        self.config = config
        self.broker = broker
        self.host = host
        self.logger = logger or get_logger(f"tell_relay.engine.{account.account_id}")
        self.routes = RouteTable(account.routes, config.default_consumer)
        self.transport = transport or AcquisitionTransport(broker, account)
        self.queue = queue or RetryQueue(config.queue_path(account.account_id))
        self.resolver = resolver or AttachmentResolver(broker)
        self.forwarder = forwarder or Forwarder(
            global_target=config.forward,
            sessions_dir=config.sessions_dir,
            telegram=TelegramForwarder(config.telegram_bot_tokens) if config.telegram_bot_tokens else None,
            host=host,
        )
        session_api = SessionApiClient(config.gateway_url, config.gateway_token) if config.gateway_url else None
        self.gateway = gateway or DispatchGateway(
            host, broker, session_api=session_api, timeout=config.dispatch_timeout
        )
        self.metrics = metrics or RelayMetrics()
        self.status = AccountStatus(
            account_id=account.account_id,
            mode=TransportMode(account.mode).value,
            name=account.name,
            enabled=account.enabled,
            configured=bool(account.api_key) and (account.mode != TransportMode.LEGACY or bool(account.name)),
        )
        self._wake_event = asyncio.Event()
        self._stop = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def account_id(self) -> str:
        return self.account.account_id

    def _activity(self, msg: str, *args) -> None:
        if self.config.log_delivery_activity:
            self.logger.info(msg, *args)
        else:
            self.logger.debug(msg, *args)

    # ------------------------------------------------------------ lifecycle
    async def start(self) -> None:
        """Run the engine as a background task until :meth:`stop`."""
        self._stop.clear()
        self._task = asyncio.create_task(self.run(self._stop), name=f"engine-{self.account_id}")

    async def stop(self) -> None:
        self._stop.set()
        self._wake_event.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def wake(self) -> None:
        """Cut the current sleep short and run a cycle now."""
        self._wake_event.set()

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Deliver messages until ``stop_event`` is set."""
        stop = stop_event or self._stop
        self.status.running = True
        self.status.last_start_at = utc_now_iso()
        self.status.last_error = None
        self.logger.info("Starting %s delivery for account %s", self.transport.mode.value, self.account_id)
        try:
            if self.transport.mode == TransportMode.STREAM:
                await self._run_stream(stop)
            else:
                await self._run_polling(stop)
        finally:
            self.status.running = False
            self.status.last_stop_at = utc_now_iso()
            self.logger.info("Stopped delivery for account %s", self.account_id)

    async def _wait_for_wakeup(self, stop: asyncio.Event, timeout: float) -> None:
        """Sleep until ``timeout``, the stop signal or a :meth:`wake` call."""
        if stop.is_set():
            return
        waiters = [asyncio.create_task(stop.wait()), asyncio.create_task(self._wake_event.wait())]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        self._wake_event.clear()

    async def _run_polling(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self.run_cycle()
            except Exception as exc:  # pragma: no cover
                self.status.last_error = str(exc) or type(exc).__name__
                self.logger.exception("Unhandled error in delivery cycle: %s", exc)
            await self._wait_for_wakeup(stop, self.account.poll_interval)

    async def _run_stream(self, stop: asyncio.Event) -> None:
        waker = asyncio.create_task(self._wake_loop(stop), name=f"engine-wake-{self.account_id}")
        try:
            while not stop.is_set():
                stream_task = asyncio.create_task(self.transport.run_stream(stop, self))
                stop_task = asyncio.create_task(stop.wait())
                done, _ = await asyncio.wait({stream_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
                for task in (stream_task, stop_task):
                    if task not in done:
                        task.cancel()
                await asyncio.gather(stream_task, stop_task, return_exceptions=True)
                if stream_task in done and not stream_task.cancelled() and stream_task.exception() is not None:
                    exc = stream_task.exception()
                    self.status.last_error = str(exc) or type(exc).__name__
                    self.logger.error("Stream loop crashed for account %s: %s", self.account_id, exc, exc_info=exc)
                    await wait_or_stop(stop, reconnect_delay(1))
        finally:
            waker.cancel()
            await asyncio.gather(waker, return_exceptions=True)

    async def _wake_loop(self, stop: asyncio.Event) -> None:
        """In stream mode a wake-up drains the retry queue."""
        while not stop.is_set():
            await self._wake_event.wait()
            self._wake_event.clear()
            if stop.is_set():
                return
            await self.on_connected()

    # ------------------------------------------------------- stream callbacks
    async def on_connected(self) -> None:
        try:
            await self.drain_retry_queue()
        except Exception as exc:  # pragma: no cover
            self.status.last_error = str(exc) or type(exc).__name__
            self.logger.exception("Retry queue drain failed: %s", exc)

    async def on_messages(self, messages: List[Message]) -> None:
        try:
            await self.handle_batch(messages)
        except Exception as exc:  # pragma: no cover
            self.status.last_error = str(exc) or type(exc).__name__
            self.logger.exception("Unhandled error handling streamed messages: %s", exc)

    async def on_poll_fallback(self) -> None:
        try:
            await self.run_cycle()
        except Exception as exc:
            self.status.last_error = str(exc) or type(exc).__name__
            self.logger.exception("Fallback polling cycle failed: %s", exc)

    async def on_stream_error(self, error: BrokerError, failures: int) -> None:
        self.status.last_error = str(error)
        self.metrics.inc_stream_reconnect(self.account_id)

    # --------------------------------------------------------------- cycles
    async def run_cycle(self) -> int:
        """Drain the retry queue, then acquire and process one batch.

        Returns:
            Number of messages acquired from the broker.
        """
        await self.drain_retry_queue()
        try:
            messages = await self.transport.poll()
        except BrokerError as exc:
            self.status.last_error = str(exc)
            self.logger.warning("Polling failed for account %s: %s", self.account_id, exc)
            return 0
        await self.handle_batch(messages)
        return len(messages)

    async def handle_batch(self, messages: Sequence[Message]) -> None:
        """Process ``messages`` and send one batch acknowledgement.

        Messages the transport could not validate are acknowledged in the
        same batch so the broker stops delivering them.
        """
        undeliverable = self.transport.take_undeliverable()
        if not messages and not undeliverable:
            return
        async with self._cycle_lock:
            self.status.last_inbound_at = utc_now_iso()
            self.metrics.inc_received(self.account_id, len(messages) + len(undeliverable))
            if undeliverable:
                self.metrics.inc_rejected(self.account_id, len(undeliverable))
            ack_ids, unacked = await self.process_messages(messages)
            await self._acknowledge(undeliverable + ack_ids)
            self.transport.release(unacked)
            await self._refresh_queue_counts()

    async def process_messages(self, messages: Sequence[Message]) -> Tuple[List[str], List[str]]:
        """Process each message; returns ``(ids to ack, ids left un-acked)``."""
        ack_ids: List[str] = []
        unacked: List[str] = []
        for message in messages:
            if await self.process_message(message):
                ack_ids.append(message.id)
            else:
                unacked.append(message.id)
        return ack_ids, unacked

    async def process_message(self, message: Message) -> bool:
        """Run one message through the pipeline.

        Returns:
            ``True`` when the message may be acknowledged.
        """
        decision = check_delivery_policy(message.sender, self.config.delivery)
        if not decision.allowed:
            self.logger.info("Rejecting message %s from %s: %s", message.id, message.sender, decision.reason)
            self.metrics.inc_rejected(self.account_id)
            return True

        route = self.routes.resolve(message.to_name)
        self._activity(
            "Message %s: %s -> %s -> consumer:%s (forward:%s)",
            message.id,
            message.sender,
            message.to_name,
            route.consumer,
            route.forward,
        )
        rendered = render_message(message)
        attachments = await self._resolve_attachments(message)

        if route.forward:
            result = await self.forwarder.forward(rendered, route.consumer, route)
            if result == ForwardResult.FAILED:
                self.metrics.inc_forward_error(self.account_id)

        dispatched = await self._dispatch(
            message,
            route.consumer,
            self.routes.reply_credential(route, self.account.api_key),
            rendered,
            attachments,
        )
        if dispatched:
            return True

        if self.routes.is_default_consumer(route.consumer):
            self.logger.warning(
                "Dispatch of %s to default consumer %s failed, leaving it on the broker", message.id, route.consumer
            )
            return False

        entry = QueuedMessage(
            id=message.id,
            sender=message.sender,
            to_name=message.to_name or "",
            consumer=route.consumer,
            forward=route.forward,
            content=rendered,
            raw_body=message.body,
            subject=message.subject,
            created_at=message.created_at.isoformat() if message.created_at else None,
            last_error=self.gateway.last_error or "dispatch failed",
            account_id=self.account_id,
            api_key=self.account.api_key,
            reply_api_key=self.routes.reply_credential(route, self.account.api_key),
            reply_to_message_id=message.reply_to_message_id,
            thread_id=message.thread_id,
            attachments=message.attachments,
        )
        try:
            await self.queue.enqueue(entry)
        except OSError as exc:
            self.status.last_error = str(exc)
            self.logger.error("Cannot queue message %s, leaving it on the broker: %s", message.id, exc)
            return False
        self.metrics.inc_queued(self.account_id)
        return True

    async def drain_retry_queue(self) -> int:
        """Retry every pending entry once.

        Returns:
            Number of entries delivered.
        """
        async with self._cycle_lock:
            pending = await self.queue.list_pending()
            if not pending:
                return 0
            self.logger.info("Retrying %d queued message(s) for account %s", len(pending), self.account_id)
            ack_ids: List[str] = []
            delivered = 0
            for entry in pending:
                message = entry.to_message()
                attachments = await self._resolve_attachments(message, api_key=entry.api_key)
                if await self._dispatch(message, entry.consumer, entry.reply_api_key, entry.content, attachments):
                    await self.queue.dequeue(entry.id)
                    ack_ids.append(entry.id)
                    delivered += 1
                    continue
                dead = await self.queue.mark_attempt(entry.id, self.gateway.last_error or "dispatch failed")
                if dead is not None:
                    self.metrics.inc_dead_lettered(self.account_id)
                    await self._alert_dead_letter(dead)
                    ack_ids.append(dead.id)
            await self._acknowledge(ack_ids)
            await self._refresh_queue_counts()
            return delivered

    # -------------------------------------------------------------- helpers
    async def _resolve_attachments(self, message: Message, api_key: Optional[str] = None) -> List[ResolvedAttachment]:
        if not message.attachments:
            return []
        return await self.resolver.resolve(api_key or self.account.api_key, message.attachments)

    async def _dispatch(
        self,
        message: Message,
        consumer: str,
        reply_credential: str,
        rendered: str,
        attachments: List[ResolvedAttachment],
    ) -> bool:
        replies_before = self.gateway.replies_sent
        try:
            ok = await self.gateway.dispatch(
                message,
                consumer,
                reply_credential,
                account_id=self.account_id,
                rendered=rendered,
                attachments=attachments,
                auto_reply_allowed=is_auto_reply_allowed(message.sender, self.config.delivery),
            )
        finally:
            if attachments:
                self.resolver.schedule_cleanup(attachments)
        if self.gateway.replies_sent > replies_before:
            self.status.last_outbound_at = utc_now_iso()
        if ok:
            self.metrics.inc_dispatched(self.account_id)
            self._activity("Dispatched %s to consumer %s", message.id, consumer)
        else:
            self.metrics.inc_dispatch_error(self.account_id)
            self.status.last_error = self.gateway.last_error or "dispatch failed"
        return ok

    async def _alert_dead_letter(self, entry: QueuedMessage) -> None:
        route = self.routes.resolve(entry.to_name)
        result = await self.forwarder.forward(render_dead_letter_alert(entry), entry.consumer, route)
        if result == ForwardResult.FAILED:
            self.metrics.inc_forward_error(self.account_id)

    async def _acknowledge(self, message_ids: Sequence[str]) -> None:
        if not message_ids:
            return
        try:
            acked = await self.transport.acknowledge(message_ids)
        except BrokerError as exc:
            self.logger.error("Acknowledgement of %d message(s) failed: %s", len(message_ids), exc)
            return
        if acked:
            self.metrics.inc_acked(self.account_id, len(acked))
            self._activity("Acknowledged %d message(s)", len(acked))

    async def _refresh_queue_counts(self) -> None:
        pending, dead = await self.queue.counts()
        self.status.pending = pending
        self.status.dead_letter = dead
        self.metrics.set_pending(self.account_id, pending)

    async def snapshot(self) -> AccountStatus:
        """Current status including fresh queue depths."""
        await self._refresh_queue_counts()
        return self.status
