"""
tokenusage - Pytest Configuration

Configures:
- Integration test markers (skip by default)
- In-memory store, identity finders and isolated metrics for unit tests
- Sample provider response bodies (JSON and SSE)
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

import pytest
from prometheus_client import CollectorRegistry

from tokenusage.db.identity import InMemoryIdentityFinder
from tokenusage.db.memory import InMemoryUsageStore
from tokenusage.db.models import DimensionType
from tokenusage.observability.metrics import MetricsCollector
from tokenusage.usage.handler import UsageCollectionHandler


# ============================================================
# Environment Configuration
# ============================================================

def _is_truthy(value: Optional[str]) -> bool:
    """Check if environment variable is truthy."""
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "on")


RUN_INTEGRATION = _is_truthy(os.getenv("RUN_INTEGRATION"))


# ============================================================
# Pytest Markers
# ============================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires RUN_INTEGRATION=1)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless RUN_INTEGRATION=1."""
    skip_integration = pytest.mark.skip(
        reason="Integration test - set RUN_INTEGRATION=1 to run"
    )
    for item in items:
        if "integration" in item.keywords and not RUN_INTEGRATION:
            item.add_marker(skip_integration)


# ============================================================
# Pipeline Fixtures
# ============================================================

@pytest.fixture
def metrics():
    """Metrics collector bound to a fresh registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def store():
    return InMemoryUsageStore()


@pytest.fixture
def access_keys():
    """Finder that knows ak-1 (owned by user-1) and ak-2."""
    finder = InMemoryIdentityFinder(DimensionType.ACCESS_KEY)
    finder.add("ak-1", owner_id="user-1", name="Primary key")
    finder.add("ak-2", name="Batch key")
    return finder


@pytest.fixture
def users():
    finder = InMemoryIdentityFinder(DimensionType.USER)
    finder.add("user-1", name="Alice")
    return finder


@pytest.fixture
def handler(store, access_keys, users, metrics):
    return UsageCollectionHandler(
        store=store,
        access_key_finder=access_keys,
        user_finder=users,
        metrics=metrics,
    )


@pytest.fixture
def fixed_time():
    return datetime(2024, 3, 15, 10, 30, tzinfo=timezone.utc)


# ============================================================
# Provider Response Bodies
# ============================================================

@pytest.fixture
def json_response_body():
    """Non-streaming messages response."""
    return json.dumps({
        "id": "msg_01ABC",
        "type": "message",
        "role": "assistant",
        "model": "claude-3-5-sonnet-20241022",
        "content": [{"type": "text", "text": "Hello!"}],
        "stop_reason": "end_turn",
        "usage": {
            "input_tokens": 12,
            "cache_creation_input_tokens": 3,
            "cache_read_input_tokens": 4,
            "output_tokens": 9,
        },
    })


@pytest.fixture
def sse_response_body():
    """Streaming messages response: message_start then a final message_delta."""
    events = [
        ("message_start", {
            "type": "message_start",
            "message": {
                "id": "msg_01STREAM",
                "model": "claude-3-5-sonnet-20241022",
                "usage": {"input_tokens": 25, "output_tokens": 1},
            },
        }),
        ("content_block_delta", {
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": "Hi"},
        }),
        ("message_delta", {
            "type": "message_delta",
            "delta": {"stop_reason": "end_turn"},
            "usage": {"input_tokens": 25, "output_tokens": 15},
        }),
        ("message_stop", {"type": "message_stop"}),
    ]
    return "".join(f"event: {name}\ndata: {json.dumps(data)}\n\n" for name, data in events)


# ============================================================
# Logging Configuration
# ============================================================

@pytest.fixture(autouse=True)
def configure_test_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    yield
