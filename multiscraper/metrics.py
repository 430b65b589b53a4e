"""Prometheus metrics for the search scheduler."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("multiscraper", "MultiScraper application info")
app_info.info({"version": "1.0.0", "name": "multiscraper"})

# Fetch metrics
searches_total = Counter(
    "searches_total",
    "Total number of retailer search attempts",
    ["retailer", "status"],
)

search_errors_total = Counter(
    "search_errors_total",
    "Total number of failed retailer searches",
    ["retailer", "error_type"],
)

search_duration_seconds = Histogram(
    "search_duration_seconds",
    "Time spent in one adapter search, all pages included",
    ["retailer"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

# Reconciliation metrics
listings_reconciled_total = Counter(
    "listings_reconciled_total",
    "Listings classified by the reconciler",
    ["retailer", "classification"],
)

# Notification metrics
notifications_created_total = Counter(
    "notifications_created_total",
    "Notifications persisted",
    ["notification_type"],
)

deliveries_total = Counter(
    "deliveries_total",
    "Push delivery outcomes",
    ["outcome"],
)

# Scheduler metrics
query_runs_total = Counter(
    "query_runs_total",
    "Total number of query executions",
    ["trigger", "status"],
)

query_runs_skipped_total = Counter(
    "query_runs_skipped_total",
    "Executions skipped because the same query was still running",
    ["trigger"],
)

scheduled_queries = Gauge(
    "scheduled_queries",
    "Number of queries with an armed timer",
)

query_last_run_timestamp = Gauge(
    "query_last_run_timestamp",
    "Timestamp of the last finished query execution",
)


def record_search_success(retailer: str, duration: float):
    """Record a successful adapter search."""
    searches_total.labels(retailer=retailer, status="success").inc()
    search_duration_seconds.labels(retailer=retailer).observe(duration)


def record_search_error(retailer: str, error_type: str, duration: float):
    """Record a failed adapter search."""
    searches_total.labels(retailer=retailer, status="error").inc()
    search_errors_total.labels(retailer=retailer, error_type=error_type).inc()
    search_duration_seconds.labels(retailer=retailer).observe(duration)


def record_reconciled(retailer: str, classification: str, count: int = 1):
    if count:
        listings_reconciled_total.labels(retailer=retailer, classification=classification).inc(count)


def record_notification_created(notification_type: str):
    notifications_created_total.labels(notification_type=notification_type).inc()


def record_delivery(outcome: str):
    deliveries_total.labels(outcome=outcome).inc()


def record_query_run(trigger: str, status: str):
    """Record a finished query execution."""
    query_runs_total.labels(trigger=trigger, status=status).inc()
    query_last_run_timestamp.set(time.time())


def record_query_run_skipped(trigger: str):
    query_runs_skipped_total.labels(trigger=trigger).inc()


def update_scheduled_queries(count: int):
    scheduled_queries.set(count)
