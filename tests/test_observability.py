"""
tokenusage - Observability Tests

Tests for the observability stack:
- Prometheus metrics
- OpenTelemetry tracing
- Structured logging
"""

import json
import logging
import time

import pytest
from prometheus_client import CollectorRegistry
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from tokenusage.observability.metrics import MetricsCollector, metrics_endpoint
from tokenusage.observability.tracing import (
    TracingManager,
    get_tracer,
    setup_tracing,
    trace_pipeline_step,
)
from tokenusage.observability.logging import (
    JSONFormatter,
    LogContext,
    TimedOperation,
    get_logger,
    log_context,
    setup_logging,
)


def _record(msg="Test message", **fields) -> logging.LogRecord:
    record = logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in fields.items():
        setattr(record, key, value)
    return record


# ============================================================
# Metrics Tests
# ============================================================

class TestMetricsCollector:
    """Tests for MetricsCollector."""

    @pytest.fixture
    def fresh_registry(self):
        """Create a fresh registry for each test."""
        return CollectorRegistry()

    @pytest.fixture
    def metrics(self, fresh_registry):
        return MetricsCollector(registry=fresh_registry)

    def test_record_message(self, metrics, fresh_registry):
        """Outcome counter and latency histogram."""
        metrics.record_message("committed", duration_seconds=0.004)
        metrics.record_message("duplicate")

        assert fresh_registry.get_sample_value(
            "tokenusage_messages_total", {"outcome": "committed"}
        ) == 1.0
        assert fresh_registry.get_sample_value(
            "tokenusage_messages_total", {"outcome": "duplicate"}
        ) == 1.0
        assert fresh_registry.get_sample_value("tokenusage_message_duration_seconds_count") == 1.0

    def test_record_tokens_skips_zero(self, metrics, fresh_registry):
        metrics.record_tokens(input_tokens=100, output_tokens=50)

        assert fresh_registry.get_sample_value("tokenusage_tokens_total", {"kind": "input"}) == 100.0
        assert fresh_registry.get_sample_value("tokenusage_tokens_total", {"kind": "output"}) == 50.0
        assert fresh_registry.get_sample_value("tokenusage_tokens_total", {"kind": "cache_read"}) is None

    def test_collection_and_extraction(self, metrics, fresh_registry):
        metrics.record_collection("async", success=False)
        metrics.record_extraction("found")

        assert fresh_registry.get_sample_value(
            "tokenusage_collections_total", {"mode": "async", "result": "failure"}
        ) == 1.0
        assert fresh_registry.get_sample_value(
            "tokenusage_extractions_total", {"result": "found"}
        ) == 1.0

    def test_queue_depth_and_statistics_rows(self, metrics, fresh_registry):
        metrics.set_queue_depth(7)
        metrics.record_statistics_rows("rebuild", 3)
        metrics.record_statistics_rows("cleanup", 0)

        assert fresh_registry.get_sample_value("tokenusage_queue_depth") == 7.0
        assert fresh_registry.get_sample_value(
            "tokenusage_statistics_rows_total", {"operation": "rebuild"}
        ) == 3.0
        assert fresh_registry.get_sample_value(
            "tokenusage_statistics_rows_total", {"operation": "cleanup"}
        ) is None

    def test_metrics_endpoint(self, metrics, fresh_registry):
        metrics.record_message("no_op")

        response = metrics_endpoint(fresh_registry)

        assert response.media_type.startswith("text/plain")
        assert b'tokenusage_messages_total{outcome="no_op"} 1.0' in response.body
        assert b"tokenusage_info" in response.body


# ============================================================
# Tracing Tests
# ============================================================

class TestTracing:
    """Tests for spans around pipeline steps."""

    @pytest.fixture
    def exporter(self):
        exporter = InMemorySpanExporter()
        manager = setup_tracing(service_name="tokenusage-test", exporter=exporter)
        yield exporter
        manager.shutdown()
        TracingManager.reset_instance()

    def test_span_attributes(self, exporter):
        with trace_pipeline_step("usage.handle", {"usage.message_id": "m-1", "usage.user_id": None}):
            pass

        (span,) = exporter.get_finished_spans()
        assert span.name == "usage.handle"
        assert span.attributes["usage.message_id"] == "m-1"
        assert "usage.user_id" not in span.attributes
        assert span.resource.attributes["service.name"] == "tokenusage-test"

    def test_error_status(self, exporter):
        with pytest.raises(RuntimeError):
            with trace_pipeline_step("usage.aggregate.incremental"):
                raise RuntimeError("store down")

        (span,) = exporter.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR
        assert "store down" in span.status.description

    def test_default_tracer_without_setup(self):
        """Before setup, spans are non-recording and nothing breaks."""
        TracingManager.reset_instance()

        with get_tracer().start_as_current_span("noop") as span:
            assert span is not None


# ============================================================
# Logging Tests
# ============================================================

class TestStructuredLogging:
    """Tests for structured logging."""

    @pytest.fixture(autouse=True)
    def setup_logging_fixture(self):
        """Setup logging for tests."""
        setup_logging(level="DEBUG", json_output=True)
        yield
        LogContext.clear()

    def test_json_formatter(self):
        data = json.loads(JSONFormatter().format(_record(saved_entities=2)))

        assert data["level"] == "INFO"
        assert data["message"] == "Test message"
        assert data["saved_entities"] == 2
        assert "timestamp" in data

    def test_context_is_injected(self):
        LogContext.set_current(LogContext(message_id="m-1", access_key_id="ak-1"))

        data = json.loads(JSONFormatter().format(_record()))

        assert data["message_id"] == "m-1"
        assert data["access_key_id"] == "ak-1"
        assert "user_id" not in data

    def test_sensitive_field_redaction(self):
        formatter = JSONFormatter(redact_sensitive=True)

        data = json.loads(formatter.format(_record(password="secret123", api_key="key123")))

        assert data["password"] == "[REDACTED]"
        assert data["api_key"] == "[REDACTED]"

    def test_log_context_restores_previous(self):
        LogContext.set_current(LogContext(message_id="outer"))

        @log_context(message_id="inner", batch_id="b-1")
        def work():
            return LogContext.get_current().to_dict()

        assert work() == {"message_id": "inner", "batch_id": "b-1"}
        assert LogContext.get_current().to_dict() == {"message_id": "outer"}

    @pytest.mark.asyncio
    async def test_log_context_async(self):
        @log_context(user_id="user-1", rule="r-7")
        async def work():
            return LogContext.get_current().to_dict()

        assert await work() == {"user_id": "user-1", "rule": "r-7"}
        assert LogContext.get_current() is None

    def test_structured_fields_reach_record(self, caplog):
        logger = get_logger("tokenusage.test")

        with caplog.at_level(logging.INFO, logger="tokenusage.test"):
            logger.info("Usage message committed", message_id="m-9", saved_entities=2)

        record = caplog.records[-1]
        assert record.message_id == "m-9"
        assert record.saved_entities == 2

    def test_timed_operation(self):
        logger = get_logger("test")

        with TimedOperation("test_op", logger) as timer:
            time.sleep(0.02)  # 20ms to avoid flaky timing issues

        assert timer.duration_ms is not None
        assert timer.duration_ms >= 15

    def test_timed_operation_logs_failure(self, caplog):
        logger = get_logger("tokenusage.timed")

        with caplog.at_level(logging.DEBUG, logger="tokenusage.timed"):
            with pytest.raises(ValueError):
                with TimedOperation("rebuild", logger):
                    raise ValueError("bad window")

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.getMessage() == "rebuild failed"
        assert record.error == "bad window"
