# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the mail dispatcher.

All metrics use the ``mds_`` prefix and are labeled by job kind
(``immediate``, ``retry``, ``scheduled``) where it applies.

Metrics exposed:
    - ``mds_sent_total``: Emails accepted by the transport.
    - ``mds_failed_total``: Attempt chains that ended in ``failed``.
    - ``mds_retries_total``: Retry jobs enqueued.
    - ``mds_skipped_total``: Scheduled occurrences skipped, by block reason.
    - ``mds_rescheduled_total``: Scheduled sends pushed past quiet hours.
    - ``mds_pending_jobs``: Jobs currently stored in the queue.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class DeliveryMetrics:
    """Prometheus collector for delivery outcomes.

    Attributes:
        registry: The CollectorRegistry holding all metrics; a private one
            is created when none is given so instances never collide.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("mds_sent_total", "Total sent emails", ["kind"], registry=self.registry)
        self.failed = Counter("mds_failed_total", "Total failed deliveries", ["kind"], registry=self.registry)
        self.retries = Counter("mds_retries_total", "Total retry jobs enqueued", registry=self.registry)
        self.skipped = Counter(
            "mds_skipped_total",
            "Total scheduled occurrences skipped by recipient preferences",
            ["reason"],
            registry=self.registry,
        )
        self.rescheduled = Counter(
            "mds_rescheduled_total",
            "Total scheduled sends deferred past quiet hours",
            registry=self.registry,
        )
        self.pending = Gauge("mds_pending_jobs", "Jobs currently in the queue", registry=self.registry)

    def inc_sent(self, kind: str) -> None:
        self.sent.labels(kind=kind or "immediate").inc()

    def inc_failed(self, kind: str) -> None:
        self.failed.labels(kind=kind or "immediate").inc()

    def inc_retry(self) -> None:
        self.retries.inc()

    def inc_skipped(self, reason: str) -> None:
        self.skipped.labels(reason=reason or "unknown").inc()

    def inc_rescheduled(self) -> None:
        self.rescheduled.inc()

    def set_pending(self, value: int) -> None:
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
