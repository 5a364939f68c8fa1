"""
Operational Metrics for CostLens

Prometheus metrics for the ingestion pipeline and the analytics read path.
"""

from prometheus_client import Counter, Histogram

# --- Ingestion Metrics ---
INGESTION_ROWS_TOTAL = Counter(
    "costlens_ingestion_rows_total",
    "Billing rows processed by the fact writer",
    ["outcome"]  # 'inserted', 'duplicate'
)

INGESTION_BATCHES_TOTAL = Counter(
    "costlens_ingestion_batches_total",
    "Fact batches flushed to the store",
    ["status"]  # 'success', 'failed'
)

DIMENSION_RESOLUTION_FAILURES = Counter(
    "costlens_dimension_resolution_failures_total",
    "Dimension lookups that degraded to a null reference",
    ["family"]
)

# --- Analytics Metrics ---
ANALYTICS_DURATION_SECONDS = Histogram(
    "costlens_analytics_duration_seconds",
    "End-to-end latency of a cost analytics request",
    ["granularity"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10)
)

ANALYTICS_ROWS_SCANNED = Histogram(
    "costlens_analytics_rows_scanned",
    "Fact rows read from the store per analytics request",
    buckets=(0, 100, 1_000, 10_000, 100_000, 1_000_000)
)
