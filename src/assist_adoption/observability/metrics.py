"""Prometheus metrics for Assist Adoption.

Cardinality rule: encrypted identifiers are NOT labels (unbounded).
Table names, timeframes and outcomes are labels (bounded).
"""

import logging

import prometheus_client

logger = logging.getLogger(__name__)

# --- Metric singletons (created on first access) ---

_metrics = {}


def _metric(name, metric_type, description, labelnames=()):
    """Get or create a Prometheus metric."""
    if name in _metrics:
        return _metrics[name]
    cls = getattr(prometheus_client, metric_type)
    m = cls(name, description, labelnames=labelnames)
    _metrics[name] = m
    return m


def aggregate_updates_total():
    return _metric(
        "assist_adoption_aggregate_updates_total",
        "Counter",
        "Timeframe aggregate writes",
        labelnames=["timeframe", "outcome"],
    )


def conflict_retries_total():
    return _metric(
        "assist_adoption_conflict_retries_total",
        "Counter",
        "Optimistic concurrency conflicts that were re-fetched and retried",
        labelnames=["table"],
    )


def snapshots_processed_total():
    return _metric(
        "assist_adoption_snapshots_processed_total",
        "Counter",
        "Daily usage snapshots handled by the aggregation engine",
        labelnames=["status"],
    )


def unhandled_app_hosts_total():
    return _metric(
        "assist_adoption_unhandled_app_hosts_total",
        "Counter",
        "Interaction records with a host application tag missing from the dispatch table",
    )


def rotation_rows_total():
    return _metric(
        "assist_adoption_rotation_rows_total",
        "Counter",
        "Rows handled by key rotation",
        labelnames=["table", "outcome"],
    )


def queue_messages_total():
    return _metric(
        "assist_adoption_queue_messages_total",
        "Counter",
        "User aggregation queue messages",
        labelnames=["event"],
    )


# --- Helper functions for recording metrics ---

def record_aggregate_update(timeframe: str, outcome: str):
    aggregate_updates_total().labels(timeframe=timeframe, outcome=outcome).inc()


def record_conflict_retry(table: str):
    conflict_retries_total().labels(table=table).inc()


def record_snapshot(status: str):
    snapshots_processed_total().labels(status=status).inc()


def record_unhandled_app_host(count: int = 1):
    unhandled_app_hosts_total().inc(count)


def record_rotation_rows(table: str, outcome: str, count: int = 1):
    if count:
        rotation_rows_total().labels(table=table, outcome=outcome).inc(count)


def record_queue_message(event: str, count: int = 1):
    if count:
        queue_messages_total().labels(event=event).inc(count)


def generate_metrics_text() -> str:
    """Generate Prometheus metrics text output."""
    return prometheus_client.generate_latest().decode("utf-8")
