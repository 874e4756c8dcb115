"""
tokenusage - Prometheus Metrics

Pipeline metrics with the Prometheus client library.

Metrics exposed:
- tokenusage_extractions_total: Counter of usage extraction attempts by result
- tokenusage_collections_total: Counter of collect calls by mode and result
- tokenusage_messages_total: Counter of handled messages by outcome
- tokenusage_tokens_total: Counter of recorded tokens by kind
- tokenusage_message_duration_seconds: Histogram of handler latency
- tokenusage_queue_depth: Gauge of messages waiting in the channel
- tokenusage_statistics_rows_total: Counter of statistics rows written by operation

Usage:
    from tokenusage.observability.metrics import get_metrics, setup_metrics, metrics_endpoint

    # Setup at startup
    setup_metrics()

    # Record metrics
    metrics = get_metrics()
    metrics.record_message(outcome="committed", duration_seconds=0.012)

    # Expose /metrics endpoint
    @app.get("/metrics")
    async def metrics():
        return metrics_endpoint()
"""

from typing import Optional

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)
from fastapi import Response


class MetricsCollector:
    """
    Central metrics collector using Prometheus client.

    One set of metric objects per registry. Tests pass a fresh
    CollectorRegistry to stay isolated from the process-wide one.
    """

    _instance: Optional["MetricsCollector"] = None
    _initialized_registries: set = set()

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        """Initialize metrics collectors."""
        self.registry = registry

        registry_id = id(registry)
        if registry_id in MetricsCollector._initialized_registries:
            if MetricsCollector._instance is not None and MetricsCollector._instance.registry is registry:
                self._copy_from(MetricsCollector._instance)
                return

        MetricsCollector._initialized_registries.add(registry_id)

        self.info = Info(
            "tokenusage",
            "tokenusage pipeline information",
            registry=registry,
        )
        self.info.info({
            "version": "1.0.0",
            "service": "tokenusage-pipeline",
        })

        self.extractions_total = Counter(
            "tokenusage_extractions_total",
            "Usage extraction attempts",
            labelnames=["result"],  # found / empty / missing
            registry=registry,
        )

        self.collections_total = Counter(
            "tokenusage_collections_total",
            "Usage collect calls",
            labelnames=["mode", "result"],  # mode = async/sync/fallback
            registry=registry,
        )

        self.messages_total = Counter(
            "tokenusage_messages_total",
            "Usage collection messages handled",
            labelnames=["outcome"],  # committed / duplicate / no_op / failed / dead_lettered
            registry=registry,
        )

        self.tokens_total = Counter(
            "tokenusage_tokens_total",
            "Tokens recorded by the pipeline",
            labelnames=["kind"],  # input / output / cache_creation / cache_read
            registry=registry,
        )

        # Handler calls are a single DB transaction, so buckets stay small
        self.message_duration = Histogram(
            "tokenusage_message_duration_seconds",
            "Time spent handling one usage message",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, float("inf")),
            registry=registry,
        )

        self.queue_depth = Gauge(
            "tokenusage_queue_depth",
            "Messages waiting in the usage channel",
            registry=registry,
        )

        self.statistics_rows_total = Counter(
            "tokenusage_statistics_rows_total",
            "Statistics rows written",
            labelnames=["operation"],  # increment / rebuild / cleanup
            registry=registry,
        )

    @classmethod
    def get_instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls):
        """Reset singleton (for testing)."""
        cls._instance = None
        cls._initialized_registries.clear()

    def _copy_from(self, other: "MetricsCollector"):
        """Copy metrics references from another collector."""
        self.info = other.info
        self.extractions_total = other.extractions_total
        self.collections_total = other.collections_total
        self.messages_total = other.messages_total
        self.tokens_total = other.tokens_total
        self.message_duration = other.message_duration
        self.queue_depth = other.queue_depth
        self.statistics_rows_total = other.statistics_rows_total

    def record_extraction(self, result: str):
        self.extractions_total.labels(result=result).inc()

    def record_collection(self, mode: str, success: bool):
        self.collections_total.labels(
            mode=mode,
            result="success" if success else "failure",
        ).inc()

    def record_message(self, outcome: str, duration_seconds: Optional[float] = None):
        """Record one handled message and, when known, how long it took."""
        self.messages_total.labels(outcome=outcome).inc()
        if duration_seconds is not None:
            self.message_duration.observe(duration_seconds)

    def record_tokens(
        self,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
    ):
        if input_tokens > 0:
            self.tokens_total.labels(kind="input").inc(input_tokens)
        if output_tokens > 0:
            self.tokens_total.labels(kind="output").inc(output_tokens)
        if cache_creation_tokens > 0:
            self.tokens_total.labels(kind="cache_creation").inc(cache_creation_tokens)
        if cache_read_tokens > 0:
            self.tokens_total.labels(kind="cache_read").inc(cache_read_tokens)

    def set_queue_depth(self, depth: int):
        self.queue_depth.set(depth)

    def record_statistics_rows(self, operation: str, count: int):
        if count > 0:
            self.statistics_rows_total.labels(operation=operation).inc(count)


# Module-level functions for convenience
_metrics_instance: Optional[MetricsCollector] = None


def setup_metrics(registry: CollectorRegistry = REGISTRY) -> MetricsCollector:
    """
    Setup metrics collection.

    Call once at application startup.
    Safe to call multiple times - returns existing instance.
    """
    global _metrics_instance

    if _metrics_instance is not None and _metrics_instance.registry is registry:
        return _metrics_instance

    _metrics_instance = MetricsCollector(registry)
    MetricsCollector._instance = _metrics_instance
    return _metrics_instance


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance.

    Initializes against the default registry on first use.
    """
    global _metrics_instance
    if _metrics_instance is None:
        _metrics_instance = MetricsCollector.get_instance()
    return _metrics_instance


def metrics_endpoint(registry: Optional[CollectorRegistry] = None) -> Response:
    """
    Generate Prometheus metrics endpoint response.

    Usage:
        @app.get("/metrics")
        async def metrics():
            return metrics_endpoint()
    """
    if registry is None:
        registry = _metrics_instance.registry if _metrics_instance is not None else REGISTRY
    content = generate_latest(registry)
    return Response(
        content=content,
        media_type=CONTENT_TYPE_LATEST,
    )
