"""
Prometheus Metrics for Observability

Tracks order outcomes, per-stage latency and matting API calls.
Exposes /api/v1/metrics endpoint for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "cutout_stage_latency_seconds",
    "Time spent in each fulfillment stage",
    labelnames=["stage", "status"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

# Total Pipeline Duration
pipeline_total_duration = Histogram(
    "cutout_fulfillment_duration_seconds",
    "Total time to bring an order to a terminal state",
    labelnames=["status"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

# Matting API Calls
matting_api_calls_total = Counter(
    "cutout_matting_api_calls_total",
    "Total number of background removal API calls",
    labelnames=["status", "http_status"]
)

# Orders Counter
orders_total = Counter(
    "cutout_orders_total",
    "Total number of orders brought to a terminal state",
    labelnames=["status", "failure_stage"]
)

# Active Orders
active_orders_gauge = Gauge(
    "cutout_active_orders",
    "Number of orders currently in the pipeline"
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

# Application Info
app_info = Info(
    "cutout_app",
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


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("matting"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_matting_call(status: str, http_status: int = 200):
    """Record a background removal API call."""
    matting_api_calls_total.labels(
        status=status,
        http_status=str(http_status)
    ).inc()


def record_order_completion(status: str, failure_stage: str = "none", duration: float = 0.0):
    """Record an order reaching a terminal state."""
    orders_total.labels(status=status, failure_stage=failure_stage).inc()
    pipeline_total_duration.labels(status=status).observe(duration)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
