"""
Prometheus metrics for relay and indexer monitoring.

Focused on essential metrics:
- Record production and consumption counts
- Indexing outcomes and cycle commits
- Error rates
- Connection health
"""

from prometheus_client import Counter, Gauge, Histogram

# Record counts
messages_produced_counter = Counter(
    "streamindex_messages_produced_total",
    "Total number of records produced to topics",
    labelnames=["topic"],
)

producer_errors_counter = Counter(
    "streamindex_producer_errors_total",
    "Total producer errors by error type",
    labelnames=["topic", "error_type"],
)

messages_consumed_counter = Counter(
    "streamindex_messages_consumed_total",
    "Total number of records consumed from topics",
    labelnames=["topic", "consumer_group"],
)

# Feed
feed_events_counter = Counter(
    "streamindex_feed_events_total",
    "Total events received from the change feed",
    labelnames=["outcome"],
)

feed_reconnects_counter = Counter(
    "streamindex_feed_reconnects_total",
    "Total change feed reconnect attempts",
)

# Indexing
documents_indexed_counter = Counter(
    "streamindex_documents_indexed_total",
    "Total documents upserted into the search index",
    labelnames=["index"],
)

records_skipped_counter = Counter(
    "streamindex_records_skipped_total",
    "Total records skipped because no document id could be derived",
    labelnames=["index", "reason"],
)

index_errors_counter = Counter(
    "streamindex_index_errors_total",
    "Total failed upserts by error category",
    labelnames=["index", "error_category"],
)

cycles_counter = Counter(
    "streamindex_indexer_cycles_total",
    "Indexer cycles by outcome (committed, failed, empty)",
    labelnames=["consumer_group", "outcome"],
)

commit_duration_seconds = Histogram(
    "streamindex_commit_duration_seconds",
    "Time spent committing offsets",
    labelnames=["consumer_group"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)

upsert_duration_seconds = Histogram(
    "streamindex_upsert_duration_seconds",
    "Time spent on a single document upsert",
    labelnames=["index"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)

# Connection health
connection_status_gauge = Gauge(
    "streamindex_connection_status",
    "Connection status (1=connected, 0=disconnected)",
    labelnames=["component"],
)

consumer_assigned_partitions_gauge = Gauge(
    "streamindex_consumer_assigned_partitions",
    "Number of partitions assigned to consumer",
    labelnames=["consumer_group"],
)


def record_message_produced(topic: str, success: bool = True, error_type: str = "send_failed") -> None:
    messages_produced_counter.labels(topic=topic).inc()
    if not success:
        producer_errors_counter.labels(topic=topic, error_type=error_type).inc()


def record_messages_consumed(topic: str, consumer_group: str, count: int) -> None:
    messages_consumed_counter.labels(topic=topic, consumer_group=consumer_group).inc(count)


def record_cycle(consumer_group: str, outcome: str) -> None:
    cycles_counter.labels(consumer_group=consumer_group, outcome=outcome).inc()


def update_connection_status(component: str, connected: bool) -> None:
    connection_status_gauge.labels(component=component).set(1 if connected else 0)


def update_assigned_partitions(consumer_group: str, count: int) -> None:
    consumer_assigned_partitions_gauge.labels(consumer_group=consumer_group).set(count)


__all__ = [
    "messages_produced_counter",
    "producer_errors_counter",
    "messages_consumed_counter",
    "feed_events_counter",
    "feed_reconnects_counter",
    "documents_indexed_counter",
    "records_skipped_counter",
    "index_errors_counter",
    "cycles_counter",
    "commit_duration_seconds",
    "upsert_duration_seconds",
    "connection_status_gauge",
    "consumer_assigned_partitions_gauge",
    "record_message_produced",
    "record_messages_consumed",
    "record_cycle",
    "update_connection_status",
    "update_assigned_partitions",
]
