"""
Prometheus Metrics for Observability

Tracks edit-session operations, pixel engine latency and generative API calls.
Exposes /api/v1/metrics endpoint for Prometheus scraping.
"""

import time
import inspect
import functools
from typing import Callable
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

# Edit Session Operations - end to end, including the generative round-trip
session_operation_latency_seconds = Histogram(
    "session_operation_latency_seconds",
    "Time spent in each top-level edit session operation",
    labelnames=["operation", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

session_operations_total = Counter(
    "session_operations_total",
    "Edit session operations by outcome",
    labelnames=["operation", "outcome"]  # success, failed, rejected
)

# Pixel Engine
pixel_operation_latency_seconds = Histogram(
    "pixel_operation_latency_seconds",
    "Time spent decoding, processing and re-encoding pixels",
    labelnames=["operation", "status"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

# Generative API Calls
generation_api_calls_total = Counter(
    "generation_api_calls_total",
    "Total number of generative model API calls",
    labelnames=["model", "status", "http_status"]
)

# Active Sessions
active_sessions_gauge = Gauge(
    "threadgenie_active_sessions",
    "Number of edit sessions held in memory"
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
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 60.0]
)

# Application Info
app_info = Info(
    "threadgenie_app",
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
def track_operation_latency(operation: str):
    """
    Context manager to track a session operation's latency.

    Usage:
        with track_operation_latency("upscale"):
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
        session_operation_latency_seconds.labels(
            operation=operation, status=status
        ).observe(time.time() - start)


def track_latency(operation: str):
    """
    Decorator to track pixel engine latency.

    Usage:
        @track_latency("normalize")
        def normalize(data: bytes) -> EncodedImage:
            ...
    """
    def observe(start: float, status: str):
        pixel_operation_latency_seconds.labels(
            operation=operation, status=status
        ).observe(time.time() - start)

    def decorator(func: Callable):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start = time.time()
            try:
                result = await func(*args, **kwargs)
            except Exception:
                observe(start, "error")
                raise
            observe(start, "success")
            return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            start = time.time()
            try:
                result = func(*args, **kwargs)
            except Exception:
                observe(start, "error")
                raise
            observe(start, "success")
            return result

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def record_session_operation(operation: str, outcome: str):
    """Record the outcome of a session operation."""
    session_operations_total.labels(operation=operation, outcome=outcome).inc()


def record_generation_call(model: str, status: str, http_status: int = 200):
    """Record a generative model API call."""
    generation_api_calls_total.labels(
        model=model,
        status=status,
        http_status=str(http_status)
    ).inc()


def set_active_sessions(count: int):
    """Update the in-memory session gauge."""
    active_sessions_gauge.set(count)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
