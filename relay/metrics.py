"""
Prometheus metrics for the relay.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook acknowledgement counter (result)
- Background pipeline counters (event result, per-stage status)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: accepted, invalid_json, invalid_signature
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook acknowledgements by outcome",
    labelnames=["result"]
)

# result: no_message, ignored, generation_failed, replied, error
pipeline_events_total = Counter(
    "pipeline_events_total",
    "Background webhook events by final result",
    labelnames=["result"]
)

pipeline_stage_total = Counter(
    "pipeline_stage_total",
    "Background pipeline stage outcomes",
    labelnames=["stage", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_pipeline_event(result: str) -> None:
    pipeline_events_total.labels(result=result).inc()


def record_stage_outcome(stage: str, status: str) -> None:
    pipeline_stage_total.labels(stage=stage, status=status).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
