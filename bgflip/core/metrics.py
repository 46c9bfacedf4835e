"""
Prometheus Metrics for Observability

Tracks pipeline phase latency, job outcomes, provider calls and HTTP traffic.
Exposes /api/v1/metrics for Prometheus scraping.
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

# Pipeline Latency - Per Phase
pipeline_phase_latency_seconds = Histogram(
    "pipeline_phase_latency_seconds",
    "Time spent in each pipeline phase",
    labelnames=["phase", "status"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

# Total Pipeline Duration
pipeline_total_duration = Histogram(
    "pipeline_total_duration_seconds",
    "Total time for complete pipeline execution",
    labelnames=["status"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

# Background Removal Provider Calls
background_removal_calls_total = Counter(
    "background_removal_calls_total",
    "Total number of background removal provider calls",
    labelnames=["provider", "outcome"]
)

# Jobs Counter
jobs_total = Counter(
    "bgflip_jobs_total",
    "Total number of image jobs that reached a terminal state",
    labelnames=["status", "failure_phase"]
)

# Active Jobs
active_jobs_gauge = Gauge(
    "bgflip_active_jobs",
    "Number of currently processing jobs"
)

# Upload rejections (validation / configuration)
uploads_rejected_total = Counter(
    "uploads_rejected_total",
    "Uploads rejected before any job was created",
    labelnames=["reason"]
)

# Retention sweeps
expired_images_cleaned_total = Counter(
    "expired_images_cleaned_total",
    "Expired jobs removed by the cleanup process"
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
    "bgflip_app",
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
def track_phase_latency(phase: str):
    """
    Context manager to track pipeline phase latency.

    Usage:
        with track_phase_latency("resize"):
            # do work
    """
    start = time.perf_counter()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        pipeline_phase_latency_seconds.labels(phase=phase, status=status).observe(
            time.perf_counter() - start
        )


def record_background_removal_call(provider: str, outcome: str):
    """Record a provider call: success, rejected, timeout, network_error, fallback."""
    background_removal_calls_total.labels(provider=provider, outcome=outcome).inc()


def record_job_started():
    active_jobs_gauge.inc()


def record_job_completion(status: str, duration_seconds: float, failure_phase: str = "none"):
    """Record a job reaching a terminal state."""
    jobs_total.labels(status=status, failure_phase=failure_phase).inc()
    pipeline_total_duration.labels(status=status).observe(duration_seconds)
    active_jobs_gauge.dec()


def record_upload_rejected(reason: str):
    uploads_rejected_total.labels(reason=reason).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
