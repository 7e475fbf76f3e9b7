"""
Prometheus-based metrics for production monitoring.
Exposed by whatever process hosts the service (see prometheus_client.start_http_server).
"""
from prometheus_client import Counter, Histogram, Gauge


# Counters
ocr_provider_requests_total = Counter(
    "ocr_provider_requests_total",
    "OCR provider attempts",
    ["provider", "status"],  # accepted, below_threshold, unavailable, error
)

auto_match_total = Counter(
    "auto_match_total",
    "Auto-matching evaluations",
    ["outcome"],  # matched, unmatched, already_matched, error
)

payment_events_total = Counter(
    "payment_events_total",
    "Payment request lifecycle events",
    ["event"],  # initiated, deep_link_clicked, tx_submitted, receipt_processed, approved, rejected, cancelled
)

library_grant_failures_total = Counter(
    "library_grant_failures_total",
    "Library grants that failed after an admin approval",
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
ocr_pipeline_duration_seconds = Histogram(
    "ocr_pipeline_duration_seconds",
    "Total OCR pipeline duration",
    ["provider"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60],
)
