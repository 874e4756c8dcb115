"""
tokenusage - Observability Module

Observability stack for the usage pipeline:
- Prometheus metrics (Counter, Histogram, Gauge)
- OpenTelemetry tracing around message handling and aggregation
- Structured JSON logging with context injection

Usage:
    from tokenusage.observability import (
        setup_observability,
        get_metrics,
        get_tracer,
        get_logger,
    )

    # Initialize at startup
    setup_observability(service_name="tokenusage")

    # Use throughout code
    logger = get_logger(__name__)
    metrics = get_metrics()
"""

from typing import Union

from .metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
    metrics_endpoint,
)
from .tracing import (
    TracingManager,
    get_tracer,
    setup_tracing,
    trace_pipeline_step,
)
from .logging import (
    StructuredLogger,
    get_logger,
    setup_logging,
    log_context,
    LogContext,
    TimedOperation,
)


def setup_observability(
    service_name: str = "tokenusage",
    log_level: Union[str, int] = "INFO",
    json_logs: bool = True,
) -> MetricsCollector:
    """Configure logging, tracing and metrics in one call."""
    setup_logging(level=log_level, json_output=json_logs)
    setup_tracing(service_name=service_name)
    return setup_metrics()


__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "setup_metrics",
    "metrics_endpoint",
    # Tracing
    "TracingManager",
    "get_tracer",
    "setup_tracing",
    "trace_pipeline_step",
    # Logging
    "StructuredLogger",
    "get_logger",
    "setup_logging",
    "log_context",
    "LogContext",
    "TimedOperation",
    # Combined
    "setup_observability",
]
