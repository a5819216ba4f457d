"""
Prometheus Metrics for Observability

Tracks the job lifecycle, processor calls, quota decisions and realtime
delivery. Exposes /api/v1/metrics for Prometheus scraping.
"""

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Job outcomes per kind (submit, poll)
jobs_total = Counter(
    "erazor_jobs_total",
    "Total number of queue jobs handled",
    labelnames=["kind", "outcome"]
)

# Attempt number at which a task reached a terminal poll outcome
poll_attempts = Histogram(
    "erazor_poll_attempts",
    "Poll attempts used before a task finished polling",
    labelnames=["outcome"],
    buckets=[1, 2, 3, 5, 8, 12, 16, 20, 30]
)

# External processor calls
processor_api_calls_total = Counter(
    "processor_api_calls_total",
    "Total number of background-removal processor calls",
    labelnames=["operation", "status"]
)

processor_api_latency_seconds = Histogram(
    "processor_api_latency_seconds",
    "Latency of background-removal processor calls",
    labelnames=["operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

# Quota enforcement
quota_decisions_total = Counter(
    "quota_decisions_total",
    "Quota policy decisions per tier",
    labelnames=["tier", "decision"]
)

# Billing usage events
billing_usage_events_total = Counter(
    "billing_usage_events_total",
    "Usage events sent to the billing API",
    labelnames=["status"]
)

# Realtime fanout
realtime_events_total = Counter(
    "realtime_events_total",
    "Realtime events published, by whether any subscriber received them",
    labelnames=["delivered"]
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Cache Metrics
cache_hits_total = Counter(
    "cache_hits_total",
    "Total cache hits",
    labelnames=["cache_type"]
)

cache_misses_total = Counter(
    "cache_misses_total",
    "Total cache misses",
    labelnames=["cache_type"]
)

# Application Info
app_info = Info(
    "erazor_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


def record_job(kind: str, outcome: str):
    """Record a handled queue job."""
    jobs_total.labels(kind=kind, outcome=outcome).inc()


def record_poll_finished(outcome: str, attempt: int):
    """Record the attempt count at which polling stopped."""
    poll_attempts.labels(outcome=outcome).observe(attempt)


def record_processor_call(operation: str, status: str, latency_seconds: float):
    """Record a processor API call."""
    processor_api_calls_total.labels(operation=operation, status=status).inc()
    processor_api_latency_seconds.labels(operation=operation).observe(latency_seconds)


def record_quota_decision(tier: str, allowed: bool):
    """Record a quota decision."""
    quota_decisions_total.labels(tier=tier, decision="allow" if allowed else "deny").inc()


def record_usage_event(status: str):
    """Record a billing usage event outcome."""
    billing_usage_events_total.labels(status=status).inc()


def record_realtime_event(delivered: int):
    """Record a realtime publish and whether anyone was listening."""
    realtime_events_total.labels(delivered="yes" if delivered else "no").inc()


def record_cache_lookup(cache_type: str, hit: bool):
    """Record a cache hit or miss."""
    if hit:
        cache_hits_total.labels(cache_type=cache_type).inc()
    else:
        cache_misses_total.labels(cache_type=cache_type).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
