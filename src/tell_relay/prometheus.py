# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the delivery engines.

All metrics use the ``tr_`` prefix and are labeled by ``account_id``.

Metrics exposed:
    - ``tr_received_total``: Messages acquired from the broker.
    - ``tr_rejected_total``: Messages dropped by the delivery policy.
    - ``tr_dispatched_total``: Successful consumer dispatches.
    - ``tr_dispatch_errors_total``: Failed consumer dispatches.
    - ``tr_queued_total``: Messages placed in the local retry queue.
    - ``tr_dead_lettered_total``: Messages moved to the dead-letter list.
    - ``tr_acked_total``: Message ids acknowledged on the broker.
    - ``tr_forward_errors_total``: Failed human-channel forwards.
    - ``tr_stream_reconnects_total``: Stream reconnect attempts.
    - ``tr_pending_messages``: Current retry queue depth.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class RelayMetrics:
    """Prometheus metrics collector for the relay.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        labels = ["account_id"]
        self.received = Counter("tr_received_total", "Messages received", labels, registry=self.registry)
        self.rejected = Counter("tr_rejected_total", "Messages rejected by policy", labels, registry=self.registry)
        self.dispatched = Counter("tr_dispatched_total", "Successful dispatches", labels, registry=self.registry)
        self.dispatch_errors = Counter(
            "tr_dispatch_errors_total", "Failed dispatches", labels, registry=self.registry
        )
        self.queued = Counter("tr_queued_total", "Messages queued for retry", labels, registry=self.registry)
        self.dead_lettered = Counter(
            "tr_dead_lettered_total", "Messages moved to dead letter", labels, registry=self.registry
        )
        self.acked = Counter("tr_acked_total", "Messages acknowledged", labels, registry=self.registry)
        self.forward_errors = Counter(
            "tr_forward_errors_total", "Failed human-channel forwards", labels, registry=self.registry
        )
        self.stream_reconnects = Counter(
            "tr_stream_reconnects_total", "Stream reconnect attempts", labels, registry=self.registry
        )
        self.pending = Gauge("tr_pending_messages", "Messages in the retry queue", labels, registry=self.registry)

    @staticmethod
    def _label(account_id: str) -> str:
        return account_id or "default"

    def inc_received(self, account_id: str, count: int = 1):
        self.received.labels(account_id=self._label(account_id)).inc(count)

    def inc_rejected(self, account_id: str, count: int = 1):
        self.rejected.labels(account_id=self._label(account_id)).inc(count)

    def inc_dispatched(self, account_id: str):
        self.dispatched.labels(account_id=self._label(account_id)).inc()

    def inc_dispatch_error(self, account_id: str):
        self.dispatch_errors.labels(account_id=self._label(account_id)).inc()

    def inc_queued(self, account_id: str):
        self.queued.labels(account_id=self._label(account_id)).inc()

    def inc_dead_lettered(self, account_id: str):
        self.dead_lettered.labels(account_id=self._label(account_id)).inc()

    def inc_acked(self, account_id: str, count: int = 1):
        self.acked.labels(account_id=self._label(account_id)).inc(count)

    def inc_forward_error(self, account_id: str):
        self.forward_errors.labels(account_id=self._label(account_id)).inc()

    def inc_stream_reconnect(self, account_id: str):
        self.stream_reconnects.labels(account_id=self._label(account_id)).inc()

    def set_pending(self, account_id: str, value: int):
        """Update the gauge tracking the retry queue depth."""
        self.pending.labels(account_id=self._label(account_id)).set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
