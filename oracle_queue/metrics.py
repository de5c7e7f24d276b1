"""Prometheus metrics and a tiny HTTP server to expose them.

Call `start_metrics_server(port)` once in a process to expose /metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server


PUBLISHED_TOTAL = Counter(
    "oracle_queue_published_total", "Total messages published", ["queue"]
)
DISPOSITION_TOTAL = Counter(
    "oracle_queue_disposition_total", "Dispositions taken by handlers", ["queue", "disposition"]
)
RETRY_SCHEDULED_TOTAL = Counter(
    "oracle_queue_retry_scheduled_total", "Retries scheduled into delay queues", ["queue", "delay_ms"]
)
RESEND_SCHEDULED_TOTAL = Counter(
    "oracle_queue_resend_scheduled_total", "Transaction status rechecks scheduled", ["queue"]
)
HANDLER_FAILED_TOTAL = Counter(
    "oracle_queue_handler_failed_total", "Handler invocations that raised", ["queue"]
)
HANDLER_LATENCY_SECONDS = Histogram(
    "oracle_queue_handler_latency_seconds",
    "Time spent in a message handler",
    ["queue"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 15),
)
CONNECTION_EVENTS_TOTAL = Counter(
    "oracle_queue_connection_events_total", "Broker connection lifecycle events", ["event"]
)


def start_metrics_server(port: int = 9000) -> None:
    start_http_server(port)
