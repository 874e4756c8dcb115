"""
tokenusage - Forward Listener Tests

Tests for capturing usage from forwarded provider exchanges.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from tokenusage.db.models import DimensionType
from tokenusage.usage.collector import UsageCollector
from tokenusage.usage.listener import (
    FEATURE_HTTP_FORWARD,
    ForwardExchange,
    HttpForwardListener,
)


def _exchange(body, path="/v1/messages", status_code=200, **kwargs) -> ForwardExchange:
    return ForwardExchange(
        path=path,
        method="POST",
        status_code=status_code,
        body=body,
        access_key_id=kwargs.pop("access_key_id", "ak-1"),
        user_id=kwargs.pop("user_id", "user-1"),
        **kwargs,
    )


def _mock_collector(metrics, **kwargs) -> MagicMock:
    collector = MagicMock(spec=UsageCollector)
    collector.metrics = metrics
    collector.collect_usage = AsyncMock(**kwargs)
    return collector


@pytest.fixture
def listener(handler, metrics):
    return HttpForwardListener(UsageCollector(handler, metrics=metrics))


# ============================================================
# Capture Rules
# ============================================================

class TestCaptureRules:

    @pytest.mark.parametrize("path,status,expected", [
        ("/v1/messages", 200, True),
        ("/api/v1/messages", 201, True),
        ("/proxy/anthropic/v1/complete", 200, True),
        ("/claude/chat", 204, True),
        ("/v1/messages", 400, False),
        ("/v1/messages", 500, False),
        ("/v1/messages", 302, False),
        ("/v1/models", 200, False),
        ("/health", 200, False),
    ])
    def test_should_capture(self, listener, path, status, expected):
        assert listener.should_capture(path, status) is expected

    def test_custom_provider_paths(self, handler, metrics):
        listener = HttpForwardListener(
            UsageCollector(handler, metrics=metrics),
            provider_paths=["/llm/"],
        )
        assert listener.is_provider_call("/llm/complete")
        assert not listener.is_provider_call("/v1/messages")


# ============================================================
# Forwarded Exchanges
# ============================================================

class TestOnAfterForward:

    @pytest.mark.asyncio
    async def test_json_response_is_collected(self, listener, store, json_response_body):
        exchange = _exchange(json_response_body, rule_id="rule-7", rule_name="default")

        assert await listener.on_after_forward(exchange)

        rows = store.log_entries(DimensionType.ACCESS_KEY)
        assert len(rows) == 1
        row = rows[0]
        assert row.input_tokens == 12
        assert row.cache_creation_input_tokens == 3
        assert row.cache_read_input_tokens == 4
        assert row.output_tokens == 9
        assert row.model == "claude-3-5-sonnet-20241022"
        assert row.request_id == "msg_01ABC"
        assert row.endpoint == "/v1/messages"
        assert row.feature == FEATURE_HTTP_FORWARD
        assert len(store.log_entries(DimensionType.USER)) == 1

    @pytest.mark.asyncio
    async def test_access_key_only_response_writes_one_row(self, listener, store):
        body = json.dumps({
            "usage": {
                "input_tokens": 100,
                "cache_creation_input_tokens": 50,
                "cache_read_input_tokens": 25,
                "output_tokens": 75,
            },
            "model": "claude-3-opus",
            "id": "msg_123456",
        })

        assert await listener.on_after_forward(_exchange(body, user_id=None))

        (row,) = store.log_entries(DimensionType.ACCESS_KEY)
        assert row.total_tokens == 250
        assert row.model == "claude-3-opus"
        assert row.request_id == "msg_123456"
        assert row.access_key_id == "ak-1"
        assert store.log_entries(DimensionType.USER) == []

    @pytest.mark.asyncio
    async def test_stream_response_is_collected(self, listener, store, sse_response_body):
        assert await listener.on_after_forward(_exchange(sse_response_body.encode("utf-8")))

        row = store.log_entries(DimensionType.ACCESS_KEY)[0]
        assert row.input_tokens == 25
        assert row.output_tokens == 15
        assert row.request_id == "msg_01STREAM"

    @pytest.mark.asyncio
    async def test_error_status_is_ignored(self, listener, store, json_response_body):
        assert not await listener.on_after_forward(_exchange(json_response_body, status_code=529))
        assert store.log_entries(DimensionType.ACCESS_KEY) == []

    @pytest.mark.asyncio
    async def test_non_provider_path_is_ignored(self, listener, store, json_response_body):
        assert not await listener.on_after_forward(_exchange(json_response_body, path="/v1/models"))
        assert store.log_entries(DimensionType.ACCESS_KEY) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [None, b"", "not json at all", json.dumps({"usage": {}})])
    async def test_no_usable_usage(self, listener, store, body):
        assert not await listener.on_after_forward(_exchange(body))
        assert store.log_entries(DimensionType.ACCESS_KEY) == []

    @pytest.mark.asyncio
    async def test_collector_errors_never_escape(self, metrics, json_response_body):
        collector = _mock_collector(metrics, side_effect=RuntimeError("collector exploded"))
        listener = HttpForwardListener(collector)

        assert await listener.on_after_forward(_exchange(json_response_body)) is False
        collector.collect_usage.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path,status", [("/v1/messages", 500), ("/v1/models", 200)])
    async def test_collector_never_sees_ignored_exchanges(self, metrics, json_response_body, path, status):
        collector = _mock_collector(metrics, return_value=True)
        listener = HttpForwardListener(collector)

        await listener.on_after_forward(_exchange(json_response_body, path=path, status_code=status))

        collector.collect_usage.assert_not_called()

    @pytest.mark.asyncio
    async def test_collector_receives_counters_and_identity(self, metrics, json_response_body):
        collector = _mock_collector(metrics, return_value=True)
        listener = HttpForwardListener(collector)

        assert await listener.on_after_forward(_exchange(json_response_body, user_id=None))

        args, kwargs = collector.collect_usage.await_args
        assert args[0].total_tokens == 12 + 3 + 4 + 9
        assert kwargs["access_key_id"] == "ak-1"
        assert kwargs["user_id"] is None
        assert kwargs["metadata"].request_id == "msg_01ABC"

    @pytest.mark.asyncio
    async def test_unknown_access_key_reports_failure(self, listener, store, json_response_body):
        exchange = _exchange(json_response_body, access_key_id="nope")

        assert not await listener.on_after_forward(exchange)
        assert store.log_entries(DimensionType.ACCESS_KEY) == []


class TestBuildMetadata:

    def test_extra_carries_method_and_rule(self, listener, json_response_body, fixed_time):
        exchange = _exchange(json_response_body, rule_id="rule-7", rule_name="default")

        metadata = listener.build_metadata(exchange, occur_time=fixed_time)

        assert metadata.occur_time == fixed_time
        assert metadata.endpoint == "/v1/messages"
        assert metadata.extra == {"method": "POST", "rule_id": "rule-7", "rule_name": "default"}

    def test_rule_fields_omitted_when_absent(self, listener, json_response_body):
        metadata = listener.build_metadata(_exchange(json_response_body))
        assert metadata.extra == {"method": "POST"}
        assert metadata.occur_time is not None
