"""
Prometheus Metrics for Observability

Tracks per-stage latency, best-effort fallbacks, upstream calls and
pipeline outcomes. Exposed on /api/v1/metrics for Prometheus scraping.
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
pipeline_stage_latency_seconds = Histogram(
    "pipeline_stage_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

# Total Pipeline Duration
pipeline_total_duration = Histogram(
    "pipeline_total_duration_seconds",
    "Total time for complete pipeline execution",
    labelnames=["state"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Best-effort stages that fell back to their input image
pipeline_stage_fallbacks_total = Counter(
    "pipeline_stage_fallbacks_total",
    "Best-effort stage failures recovered by passing the input through",
    labelnames=["stage"]
)

# Outbound calls to inference services
upstream_calls_total = Counter(
    "upstream_calls_total",
    "Total number of calls to external inference services",
    labelnames=["service", "status"]
)

# Edit requests served by the secondary provider
edit_provider_fallbacks_total = Counter(
    "edit_provider_fallbacks_total",
    "Edit stage attempts that switched to the secondary provider",
    labelnames=["outcome"]
)

upscale_poll_attempts = Histogram(
    "upscale_poll_attempts",
    "Number of status polls needed to resolve an upscale job",
    buckets=[1, 2, 5, 10, 15, 20, 25, 30]
)

pipeline_runs_total = Counter(
    "pipeline_runs_total",
    "Total number of pipeline runs by terminal state",
    labelnames=["state", "failed_stage"]
)

active_pipelines_gauge = Gauge(
    "active_pipelines",
    "Number of pipeline runs currently in flight"
)

# HTTP Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

# Application Info
app_info = Info(
    "garment_studio",
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
        with track_stage_latency("cutout"):
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
        pipeline_stage_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_upstream_call(service: str, status: str):
    """Record a call to an external inference service."""
    upstream_calls_total.labels(service=service, status=status).inc()


def record_stage_fallback(stage: str):
    """Record a best-effort stage passing its input through."""
    pipeline_stage_fallbacks_total.labels(stage=stage).inc()


def record_edit_provider_fallback(outcome: str):
    """Record a secondary edit provider attempt ("success" or "error")."""
    edit_provider_fallbacks_total.labels(outcome=outcome).inc()


def record_poll_attempts(attempts: int):
    upscale_poll_attempts.observe(attempts)


def record_pipeline_run(state: str, duration_seconds: float, failed_stage: str = "none"):
    """Record a finished pipeline run."""
    pipeline_runs_total.labels(state=state, failed_stage=failed_stage).inc()
    pipeline_total_duration.labels(state=state).observe(duration_seconds)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


# Initialize app info on module load
set_app_info(version="1.0.0", environment="development")
