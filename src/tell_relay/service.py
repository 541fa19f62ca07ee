# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Multi-account relay service.

One :class:`~tell_relay.engine.DeliveryEngine` is built per enabled account,
each with its own credentials, transport and retry queue file. All engines
run concurrently under a single stop event and share the broker client and
the metrics registry.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from .broker import BrokerClient
from .config_loader import RelayConfig
from .engine import DeliveryEngine
from .host import ConsumerHost, LocalConsumerHost
from .logger import get_logger
from .models import AccountStatus, utc_now_iso
from .outbound import SendResult, send_message
from .prometheus import RelayMetrics


class RelayService:
    """Run the delivery engines of every enabled account."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        host: Optional[ConsumerHost] = None,
        broker: Optional[BrokerClient] = None,
        metrics: Optional[RelayMetrics] = None,
        logger=None,
    ):
        self.config = config
        self.host = host or LocalConsumerHost()
        self.broker = broker or BrokerClient(config.broker_url)
        self.metrics = metrics or RelayMetrics()
        self.logger = logger or get_logger(__name__)
        self.engines: Dict[str, DeliveryEngine] = {
            account.account_id: DeliveryEngine(
                account, config=config, broker=self.broker, host=self.host, metrics=self.metrics
            )
            for account in config.enabled_accounts()
        }
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def get_engine(self, account_id: str) -> DeliveryEngine:
        """Return the engine of ``account_id``.

        Raises:
            KeyError: If the account is unknown or disabled.
        """
        return self.engines[account_id]

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run every engine until ``stop_event`` (or :meth:`stop`) fires."""
        stop = stop_event or self._stop
        if not self.engines:
            self.logger.warning("No enabled accounts configured, nothing to do")
            return
        self.logger.info("Starting relay for %d account(s)", len(self.engines))
        results = await asyncio.gather(
            *(engine.run(stop) for engine in self.engines.values()), return_exceptions=True
        )
        for account_id, result in zip(self.engines, results):
            if isinstance(result, BaseException):
                self.logger.error("Engine for account %s exited with error: %s", account_id, result)

    async def start(self) -> None:
        self._stop.clear()
        self._task = asyncio.create_task(self.run(self._stop), name="relay-service")

    async def stop(self) -> None:
        self._stop.set()
        for engine in self.engines.values():
            engine.wake()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def wake(self, account_id: str) -> None:
        self.get_engine(account_id).wake()

    async def status(self, check: bool = False) -> List[Dict[str, Any]]:
        """Status snapshot of every engine.

        With ``check`` every account's credential is also verified against
        the broker and the result is reported under ``connectivity``.
        """
        engines = list(self.engines.values())
        snapshots = [await engine.snapshot() for engine in engines]
        if check:
            results = await asyncio.gather(
                *(self.broker.check_connectivity(engine.account.api_key) for engine in engines)
            )
            for snapshot, result in zip(snapshots, results):
                snapshot.connectivity = {**result, "checked_at": utc_now_iso()}
        for snapshot in snapshots:
            snapshot.connected = bool(snapshot.connectivity["ok"]) if snapshot.connectivity else snapshot.running
            snapshot.issues = collect_status_issues(snapshot)
        return [snapshot.as_dict() for snapshot in snapshots]

    async def send(
        self,
        account_id: str,
        to: str,
        text: Optional[str],
        *,
        subject: Optional[str] = None,
        reply_to_id: Optional[str] = None,
        media_url: Optional[str] = None,
    ) -> SendResult:
        """Send a message as ``account_id``; see :func:`~tell_relay.outbound.send_message`.

        Raises:
            ConfigError: If the account is unknown.
        """
        account = self.config.get_account(account_id)
        result = await send_message(
            self.broker, account, to, text, subject=subject, reply_to_id=reply_to_id, media_url=media_url
        )
        engine = self.engines.get(account_id)
        if engine is not None:
            engine.status.last_outbound_at = utc_now_iso()
        return result

    async def queue_contents(self, account_id: str) -> Dict[str, Any]:
        """Pending and dead-lettered entries of one account's retry queue."""
        engine = self.get_engine(account_id)
        pending = await engine.queue.list_pending()
        dead = await engine.queue.list_dead_letter()
        return {
            "account_id": account_id,
            "pending": [entry.model_dump(by_alias=True, mode="json", exclude={"api_key", "reply_api_key"}) for entry in pending],
            "dead_letter": [entry.model_dump(by_alias=True, mode="json", exclude={"api_key", "reply_api_key"}) for entry in dead],
        }


def collect_status_issues(status: AccountStatus) -> List[str]:
    """Problems an operator should act on for one account."""
    issues = []
    if not status.configured:
        issues.append("not configured: set name and api_key")
    if status.connectivity is not None and not status.connectivity.get("ok"):
        issues.append(f"broker unreachable: {status.connectivity.get('error')}")
    if status.dead_letter:
        issues.append(f"{status.dead_letter} message(s) in dead letter")
    return issues
