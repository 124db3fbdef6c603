# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the dispatch engine.

All metrics use the ``mds_`` prefix (mail dispatch service).

Metrics exposed:
    - ``mds_sent_total``: Counter of delivered emails per sender.
    - ``mds_errors_total``: Counter of failed delivery attempts per sender.
    - ``mds_deferred_total``: Counter of re-delayed jobs per sender and reason.
    - ``mds_skipped_total``: Counter of jobs skipped because already sent.
    - ``mds_pending_jobs``: Gauge of queue entries waiting or in flight.

Example:
    Reading the metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class DispatchMetrics:
    """Prometheus metrics collector for the dispatch workers.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        sent: Counter of delivered emails.
        errors: Counter of failed delivery attempts.
        deferred: Counter of rate-limit deferrals, labelled by reason.
        skipped: Counter of jobs found already sent.
        pending: Gauge of the queue depth.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A private one is
                created when omitted, so tests never share counters.
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "mds_sent_total",
            "Total delivered emails",
            ["sender_id"],
            registry=self.registry,
        )
        self.errors = Counter(
            "mds_errors_total",
            "Total failed delivery attempts",
            ["sender_id"],
            registry=self.registry,
        )
        self.deferred = Counter(
            "mds_deferred_total",
            "Total jobs re-delayed by a rate constraint",
            ["sender_id", "reason"],
            registry=self.registry,
        )
        self.skipped = Counter(
            "mds_skipped_total",
            "Total jobs skipped because the email was already sent",
            registry=self.registry,
        )
        self.pending = Gauge(
            "mds_pending_jobs",
            "Queue entries waiting or in flight",
            registry=self.registry,
        )

    def inc_sent(self, sender_id: str) -> None:
        self.sent.labels(sender_id=sender_id or "unknown").inc()

    def inc_error(self, sender_id: str) -> None:
        self.errors.labels(sender_id=sender_id or "unknown").inc()

    def inc_deferred(self, sender_id: str, reason: str) -> None:
        """Count a deferral.

        Args:
            sender_id: Owner of the deferred job.
            reason: ``hourly_cap`` or ``min_delay``.
        """
        self.deferred.labels(sender_id=sender_id or "unknown", reason=reason).inc()

    def inc_skipped(self) -> None:
        self.skipped.inc()

    def set_pending(self, value: int) -> None:
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
