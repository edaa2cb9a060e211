"""
Prometheus Metrics for Observability

Tracks pipeline stage latency, per-tile throughput and job outcomes.
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
    "upscaler_stage_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

# Total Job Duration
pipeline_total_duration = Histogram(
    "upscaler_job_duration_seconds",
    "Total time for a complete upscale job",
    labelnames=["status"],
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Per-tile latency
tile_latency_seconds = Histogram(
    "upscaler_tile_latency_seconds",
    "Time spent upscaling and filtering a single tile",
    labelnames=["scale_factor"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

tiles_processed_total = Counter(
    "upscaler_tiles_processed_total",
    "Total number of tiles processed",
    labelnames=["status"]
)

# Jobs Counter
jobs_total = Counter(
    "upscaler_jobs_total",
    "Total number of upscale jobs by final status",
    labelnames=["status"]
)

# Active Jobs
active_jobs_gauge = Gauge(
    "upscaler_active_jobs",
    "Number of currently processing jobs"
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
    "upscaler_app",
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
        with track_stage_latency("stitching"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_tile(scale_factor: int, duration_seconds: float, status: str = "success"):
    """Record a single tile outcome."""
    tiles_processed_total.labels(status=status).inc()
    if status == "success":
        tile_latency_seconds.labels(scale_factor=str(scale_factor)).observe(duration_seconds)


def record_job_started():
    """Record a job entering the pipeline."""
    active_jobs_gauge.inc()


def record_job_completion(status: str, duration_seconds: float):
    """Record job completion with its terminal status."""
    jobs_total.labels(status=status).inc()
    pipeline_total_duration.labels(status=status).observe(duration_seconds)
    active_jobs_gauge.dec()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
