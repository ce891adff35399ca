"""
Prometheus metrics for observability.

Exposes metrics on a dedicated port for Prometheus scraping.

Metrics Categories:
- Ingress: pushes accepted and deduplicated
- Delivery: polls served and events handed out
- Acks: acknowledgments by status
- Retention: events removed by cause, log and registry sizes
"""

import time
from prometheus_client import (
    Counter,
    Gauge,
    Info,
    start_http_server,
)

from tradecopier.infrastructure.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# Ingress Metrics
# =============================================================================

PUSHES_ACCEPTED = Counter(
    "copier_pushes_accepted_total",
    "Pushes that created a new event",
    ["group", "type"],
)

PUSHES_DUPLICATED = Counter(
    "copier_pushes_duplicated_total",
    "Pushes answered as duplicates",
    ["group", "reason"],
)

# =============================================================================
# Delivery / Ack Metrics
# =============================================================================

POLLS_TOTAL = Counter(
    "copier_polls_total",
    "Slave polls served",
    ["group"],
)

EVENTS_DELIVERED = Counter(
    "copier_events_delivered_total",
    "Events returned to polling slaves",
    ["group"],
)

ACKS_TOTAL = Counter(
    "copier_acks_total",
    "Slave acknowledgments",
    ["group", "status"],
)

ACKS_GONE = Counter(
    "copier_acks_gone_total",
    "Acknowledgments for events already collected",
    ["group"],
)

# =============================================================================
# Retention Metrics
# =============================================================================

EVENTS_REMOVED = Counter(
    "copier_events_removed_total",
    "Events removed from the log",
    ["group", "cause"],  # acked, cascade, size, age
)

EVENTS_STORED = Gauge(
    "copier_events_stored",
    "Events currently held in the log",
    ["group"],
)

KNOWN_SLAVES = Gauge(
    "copier_known_slaves",
    "Slaves currently known per group",
    ["group"],
)

# =============================================================================
# System Metrics
# =============================================================================

RELAY_INFO = Info(
    "copier_relay",
    "Relay information",
)

UPTIME_SECONDS = Gauge(
    "copier_uptime_seconds",
    "Relay uptime in seconds",
)


class MetricsCollector:
    """
    Collects and exposes Prometheus metrics.

    Usage:
        collector = MetricsCollector()
        collector.start_server(port=9090)

        collector.record_push("G1", "OPEN", duplicated=False)
        collector.record_ack("G1", "DONE", gone=False)
    """

    def __init__(self):
        self._start_time = time.time()

    def start_server(self, port: int = 9090) -> None:
        """Start the Prometheus metrics HTTP server."""
        try:
            start_http_server(port)
            logger.info("Metrics server started", port=port)
        except OSError as e:
            logger.error("Failed to start metrics server", error=str(e))

    def record_push(self, group: str, event_type: str, duplicated: bool, reason: str = "") -> None:
        if duplicated:
            PUSHES_DUPLICATED.labels(group=group, reason=reason).inc()
        else:
            PUSHES_ACCEPTED.labels(group=group, type=event_type).inc()

    def record_poll(self, group: str, delivered: int) -> None:
        POLLS_TOTAL.labels(group=group).inc()
        if delivered:
            EVENTS_DELIVERED.labels(group=group).inc(delivered)

    def record_ack(self, group: str, status: str, gone: bool) -> None:
        ACKS_TOTAL.labels(group=group, status=status).inc()
        if gone:
            ACKS_GONE.labels(group=group).inc()

    def record_removal(self, group: str, cause: str, count: int) -> None:
        if count:
            EVENTS_REMOVED.labels(group=group, cause=cause).inc(count)

    def update_sizes(self, group: str, events: int, slaves: int) -> None:
        """Update log and registry gauges for a group."""
        EVENTS_STORED.labels(group=group).set(events)
        KNOWN_SLAVES.labels(group=group).set(slaves)
        UPTIME_SECONDS.set(time.time() - self._start_time)

    def set_relay_info(self, version: str, environment: str, backend: str) -> None:
        RELAY_INFO.info({
            "version": version,
            "environment": environment,
            "backend": backend,
        })


# Pre-instantiated collector
metrics = MetricsCollector()
