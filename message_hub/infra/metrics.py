"""Prometheus metrics export."""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Ingestion metrics
messages_ingested_total = Counter(
    "messages_ingested_total",
    "Total messages submitted to the ingestion pipeline",
    ["direction", "status"],  # status: queued | completed | failed
)

message_ingestion_duration = Histogram(
    "message_ingestion_duration_seconds",
    "Ingestion pipeline duration in seconds",
    ["direction"],
)

message_validation_failures_total = Counter(
    "message_validation_failures_total",
    "Total messages rejected by validation",
)

message_duplicates_total = Counter(
    "message_duplicates_total",
    "Total duplicate messages suppressed",
)

message_status_updates_total = Counter(
    "message_status_updates_total",
    "Total message status transitions applied",
    ["status"],
)

# Queue metrics
queue_messages_published_total = Counter(
    "queue_messages_published_total",
    "Total messages published to the broker",
    ["queue"],
)

queue_deliveries_total = Counter(
    "queue_deliveries_total",
    "Total deliveries handled by consumers",
    ["queue", "outcome"],  # outcome: ack | retry | dead_letter
)

queue_dead_lettered_total = Counter(
    "queue_dead_lettered_total",
    "Total messages moved to the dead-letter queue",
    ["queue"],
)

queue_handler_duration = Histogram(
    "queue_handler_duration_seconds",
    "Consumer handler duration in seconds",
    ["queue"],
)

# Broker connection
broker_connection_state = Gauge(
    "broker_connection_state",
    "Broker connection state (0=disconnected, 1=connecting, 2=connected)",
)

broker_reconnect_attempts_total = Counter(
    "broker_reconnect_attempts_total",
    "Total broker reconnect attempts",
)

# Cache
cache_errors_total = Counter(
    "cache_errors_total",
    "Total cache operations that failed and were absorbed",
    ["operation"],
)


def get_metrics_response() -> Response:
    """Get Prometheus metrics as HTTP response."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
