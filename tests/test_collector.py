"""
tokenusage - Usage Collector Tests

Tests for sync and async collection, fallback when the channel is
unavailable, and batch collection.
"""

from datetime import datetime, timezone

import pytest

from tokenusage.db.models import DimensionType
from tokenusage.usage.channel import InMemoryMessageChannel
from tokenusage.usage.collector import (
    BatchProcessResult,
    UsageCollectionBatch,
    UsageCollector,
)
from tokenusage.usage.counters import UsageCounters


USAGE = UsageCounters(input_tokens=30, output_tokens=12)


def _collections(metrics, mode: str, result: str) -> float:
    value = metrics.registry.get_sample_value(
        "tokenusage_collections_total", {"mode": mode, "result": result}
    )
    return value or 0.0


# ============================================================
# Single Collection Tests
# ============================================================

class TestCollectUsage:

    @pytest.mark.asyncio
    async def test_sync_without_channel(self, handler, store, metrics):
        collector = UsageCollector(handler, metrics=metrics)

        assert await collector.collect_usage(USAGE, "ak-1", "user-1", {"model": "m"})

        rows = store.log_entries(DimensionType.ACCESS_KEY)
        assert len(rows) == 1
        assert rows[0].model == "m"
        assert _collections(metrics, "sync", "success") == 1.0

    @pytest.mark.asyncio
    async def test_sync_failure_returns_false(self, handler, store, metrics):
        collector = UsageCollector(handler, metrics=metrics)

        assert not await collector.collect_usage_sync(USAGE, "unknown-key")

        assert store.log_entries(DimensionType.ACCESS_KEY) == []
        assert _collections(metrics, "sync", "failure") == 1.0

    @pytest.mark.asyncio
    async def test_async_publishes_to_channel(self, handler, store, metrics):
        channel = InMemoryMessageChannel(handler, workers=1, metrics=metrics)
        collector = UsageCollector(handler, channel=channel, metrics=metrics)
        await channel.start()

        assert await collector.collect_usage(USAGE, "ak-1", "user-1")
        assert store.log_entries(DimensionType.ACCESS_KEY) == []  # not yet handled

        await channel.join()
        await channel.stop()
        assert len(store.log_entries(DimensionType.ACCESS_KEY)) == 1
        assert _collections(metrics, "async", "success") == 1.0

    @pytest.mark.asyncio
    async def test_falls_back_to_inline_when_channel_unavailable(self, handler, store, metrics):
        channel = InMemoryMessageChannel(handler, metrics=metrics)  # never started
        collector = UsageCollector(handler, channel=channel, metrics=metrics)

        assert await collector.collect_usage(USAGE, "ak-1")

        assert len(store.log_entries(DimensionType.ACCESS_KEY)) == 1
        assert _collections(metrics, "async", "failure") == 1.0
        assert _collections(metrics, "fallback", "success") == 1.0

    @pytest.mark.asyncio
    async def test_fallback_failure_returns_false(self, handler, metrics):
        channel = InMemoryMessageChannel(handler, metrics=metrics)
        collector = UsageCollector(handler, channel=channel, metrics=metrics)

        assert not await collector.collect_usage(USAGE, "unknown-key")
        assert _collections(metrics, "fallback", "failure") == 1.0


class TestRepeatedIdenticalCalls:
    """Separate calls with equal inputs are separate usage events."""

    @pytest.mark.asyncio
    async def test_sync_calls_each_write_a_row(self, handler, store, metrics):
        collector = UsageCollector(handler, metrics=metrics)
        usage = UsageCounters(input_tokens=10, output_tokens=5)

        assert await collector.collect_usage_sync(usage, "ak-2")
        assert await collector.collect_usage_sync(usage, "ak-2")

        rows = store.log_entries(DimensionType.ACCESS_KEY)
        assert len(rows) == 2
        assert rows[0].message_id != rows[1].message_id

    @pytest.mark.asyncio
    async def test_channel_calls_each_write_a_row(self, handler, store, metrics):
        channel = InMemoryMessageChannel(handler, workers=1, metrics=metrics)
        collector = UsageCollector(handler, channel=channel, metrics=metrics)
        usage = UsageCounters(input_tokens=10, output_tokens=5)
        await channel.start()

        assert await collector.collect_usage(usage, "ak-2", metadata={"model": "m"})
        assert await collector.collect_usage(usage, "ak-2", metadata={"model": "m"})

        await channel.join()
        await channel.stop()
        rows = store.log_entries(DimensionType.ACCESS_KEY)
        assert len(rows) == 2
        assert {row.model for row in rows} == {"m"}

    @pytest.mark.asyncio
    async def test_explicit_occur_time_is_kept(self, handler, store, metrics):
        collector = UsageCollector(handler, metrics=metrics)
        occurred = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)

        assert await collector.collect_usage_sync(USAGE, "ak-1", metadata={"occur_time": occurred})
        assert await collector.collect_usage_sync(USAGE, "ak-1", metadata={"occur_time": occurred})

        rows = store.log_entries(DimensionType.ACCESS_KEY)
        assert len(rows) == 1
        assert rows[0].occur_time == occurred


# ============================================================
# Batch Tests
# ============================================================

class TestUsageCollectionBatch:

    def test_add_item_returns_new_batch(self):
        empty = UsageCollectionBatch()
        one = empty.add_item(USAGE, "ak-1")
        two = one.add_item(USAGE, "ak-2", metadata={"model": "m"})

        assert empty.is_empty()
        assert one.size == 1
        assert two.size == 2
        assert two.items[1].metadata.model == "m"
        assert two.total_tokens == 2 * USAGE.total_tokens


class TestBatchProcessResult:

    @pytest.mark.parametrize("success,failure,full,partial,failed", [
        (3, 0, True, False, False),
        (2, 1, False, True, False),
        (0, 3, False, False, True),
    ])
    def test_flags(self, success, failure, full, partial, failed):
        result = BatchProcessResult(total_items=3, success_count=success, failure_count=failure)
        assert result.is_fully_successful is full
        assert result.is_partially_successful is partial
        assert result.is_completely_failed is failed
        assert result.success_rate == pytest.approx(success / 3)

    def test_empty_rate(self):
        assert BatchProcessResult(0, 0, 0).success_rate == 0.0


class TestCollectBatchUsage:

    @pytest.mark.asyncio
    async def test_mixed_batch(self, handler, store, metrics):
        collector = UsageCollector(handler, metrics=metrics)
        batch = (
            UsageCollectionBatch()
            .add_item(USAGE, "ak-1", "user-1")
            .add_item(USAGE, "unknown-key")
            .add_item(USAGE, "ak-2")
        )

        result = await collector.collect_batch_usage(batch)

        assert result.total_items == 3
        assert result.success_count == 2
        assert result.failure_count == 1
        assert result.errors == ["Item 1: Failed to collect usage data"]
        assert result.batch_id.startswith("batch_")
        assert result.is_partially_successful

    @pytest.mark.asyncio
    async def test_identical_items_are_distinct_events(self, handler, store, metrics):
        collector = UsageCollector(handler, metrics=metrics)
        batch = UsageCollectionBatch().add_item(USAGE, "ak-1").add_item(USAGE, "ak-1")

        result = await collector.collect_batch_usage(batch)

        assert result.is_fully_successful
        rows = store.log_entries(DimensionType.ACCESS_KEY)
        assert len(rows) == 2
        assert rows[0].message_id != rows[1].message_id

    @pytest.mark.asyncio
    async def test_empty_batch(self, handler, metrics):
        collector = UsageCollector(handler, metrics=metrics)

        result = await collector.collect_batch_usage(UsageCollectionBatch())

        assert result.total_items == 0
        assert result.batch_id is None
