"""
tokenusage - PostgreSQL Store Tests

Schema, pool configuration and commit error handling run everywhere
against a stubbed connection. The store tests need a live database: set
RUN_INTEGRATION=1 and DATABASE_URL.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from tokenusage.core.config import PipelineSettings
from tokenusage.core.errors import PersistenceError
from tokenusage.db.connection import DatabasePool
from tokenusage.db.models import DimensionType, PeriodType, UsageLogEntry, UsageStatistics
from tokenusage.db.postgres import PostgresUsageStore, PostgresUsageTransaction, _affected_rows
from tokenusage.db.schema import LOG_TABLES, STATISTICS_TABLE, schema_statements

UTC = timezone.utc


def _log(message_id, hour, owner="ak-1", dimension_type=DimensionType.ACCESS_KEY):
    return UsageLogEntry(
        dimension_type=dimension_type,
        occur_time=datetime(2024, 3, 1, hour, tzinfo=UTC),
        message_id=message_id,
        access_key_id=owner,
        user_id="user-1",
        input_tokens=10,
        output_tokens=5,
        model="claude-3-5-sonnet",
        feature="http_forward",
    )


def _stub_pool(fetchrow: AsyncMock) -> MagicMock:
    """Pool whose transaction() yields a connection with the given fetchrow."""
    connection = MagicMock()
    connection.fetchrow = fetchrow

    @asynccontextmanager
    async def transaction():
        yield connection

    pool = MagicMock(spec=DatabasePool)
    pool.transaction = transaction
    return pool


class TestSchema:

    def test_all_tables_are_created(self):
        ddl = schema_statements()

        for table in (*LOG_TABLES.values(), STATISTICS_TABLE):
            assert f"CREATE TABLE IF NOT EXISTS {table}" in ddl
        assert "UNIQUE (message_id)" in ddl
        assert "UNIQUE (dimension_type, dimension_id, period_type, period_start)" in ddl

    @pytest.mark.parametrize("status,expected", [
        ("DELETE 3", 3),
        ("DELETE 0", 0),
        ("", 0),
        (None, 0),
    ])
    def test_affected_rows(self, status, expected):
        assert _affected_rows(status) == expected


class TestDatabasePool:

    def test_from_settings(self):
        settings = PipelineSettings(
            database_url="postgresql://db/usage", db_pool_min_size=2, db_pool_max_size=4
        )

        pool = DatabasePool.from_settings(settings)

        assert (pool.dsn, pool.min_size, pool.max_size) == ("postgresql://db/usage", 2, 4)
        assert not pool.is_connected

    def test_rejects_inverted_bounds(self):
        with pytest.raises(ValueError, match="min_size"):
            DatabasePool(min_size=5, max_size=2)

    @pytest.mark.asyncio
    async def test_acquire_before_connect(self):
        pool = DatabasePool()

        with pytest.raises(RuntimeError, match="not connected"):
            async with pool.acquire():
                pass

    @pytest.mark.asyncio
    async def test_close_without_connect_is_noop(self):
        pool = DatabasePool()
        await pool.close()
        assert not pool.is_connected


class TestPostgresUsageTransaction:

    @pytest.mark.asyncio
    async def test_ids_are_assigned_after_commit(self):
        created = datetime(2024, 3, 1, 12, tzinfo=UTC)
        fetchrow = AsyncMock(side_effect=[{"id": 7, "created_at": created}, None])
        transaction = PostgresUsageTransaction(_stub_pool(fetchrow))
        fresh, duplicate = _log("m-1", 9), _log("m-1", 9, dimension_type=DimensionType.USER)
        transaction.stage(fresh)
        transaction.stage(duplicate)

        assert await transaction.commit() == 1

        assert (fresh.id, fresh.created_at) == (7, created)
        assert duplicate.id is None
        assert not transaction.is_active

    @pytest.mark.asyncio
    async def test_driver_error_becomes_persistence_error(self):
        fetchrow = AsyncMock(side_effect=[
            {"id": 1, "created_at": datetime(2024, 3, 1, tzinfo=UTC)},
            ConnectionResetError("connection lost"),
        ])
        transaction = PostgresUsageTransaction(_stub_pool(fetchrow))
        first, second = _log("m-2", 9), _log("m-2", 9, dimension_type=DimensionType.USER)
        transaction.stage(first)
        transaction.stage(second)

        with pytest.raises(PersistenceError) as excinfo:
            await transaction.commit()

        assert excinfo.value.error.message_id == "m-2"
        assert excinfo.value.error.details["cause"] == "connection lost"
        assert excinfo.value.retryable
        assert first.id is None
        assert first.created_at is None
        assert not transaction.is_active


@pytest.fixture
def pg_store():
    """Builder for a store on a freshly truncated schema. Callers close the pool."""
    async def build() -> PostgresUsageStore:
        settings = PipelineSettings.from_env()
        pool = DatabasePool(settings.database_url, min_size=1, max_size=2)
        await pool.connect()
        store = PostgresUsageStore(pool)
        await store.create_schema()
        tables = ", ".join([*LOG_TABLES.values(), STATISTICS_TABLE])
        await pool.execute(f"TRUNCATE {tables} RESTART IDENTITY")
        return store

    return build


async def _close(store: PostgresUsageStore) -> None:
    await store.db.close()


@pytest.mark.integration
class TestPostgresUsageStore:

    @pytest.mark.asyncio
    async def test_duplicate_message_id_is_skipped(self, pg_store):
        store = await pg_store()
        try:
            message_id = uuid.uuid4().hex
            first = store.begin()
            first.stage(_log(message_id, 9))
            second = store.begin()
            second.stage(_log(message_id, 9))
            second.stage(_log(uuid.uuid4().hex, 10))

            assert await first.commit() == 1
            assert await second.commit() == 1
            assert await store.count_log_entries(DimensionType.ACCESS_KEY) == 2
        finally:
            await _close(store)

    @pytest.mark.asyncio
    async def test_range_scan_order_and_filters(self, pg_store):
        store = await pg_store()
        try:
            transaction = store.begin()
            for message_id, hour, owner in (("c", 11, "ak-1"), ("a", 9, "ak-1"), ("b", 10, "ak-2")):
                transaction.stage(_log(message_id, hour, owner))
            await transaction.commit()

            rows = await store.fetch_log_entries(
                DimensionType.ACCESS_KEY,
                start=datetime(2024, 3, 1, 9, tzinfo=UTC),
                end=datetime(2024, 3, 1, 11, tzinfo=UTC),
            )
            newest = await store.fetch_log_entries(
                DimensionType.ACCESS_KEY, dimension_id="ak-1", descending=True, limit=1
            )

            assert [r.message_id for r in rows] == ["a", "b"]
            assert rows[0].id is not None
            assert [r.message_id for r in newest] == ["c"]
        finally:
            await _close(store)

    @pytest.mark.asyncio
    async def test_statistics_upsert_add_and_replace(self, pg_store):
        store = await pg_store()
        try:
            def row(requests, updated_hour):
                return UsageStatistics(
                    dimension_type=DimensionType.ACCESS_KEY,
                    dimension_id="ak-1",
                    period_type=PeriodType.DAY,
                    period_start=datetime(2024, 3, 1, tzinfo=UTC),
                    total_requests=requests,
                    total_input_tokens=requests * 10,
                    last_update_time=datetime(2024, 3, 1, updated_hour, tzinfo=UTC),
                )

            await store.increment_statistics([row(2, 12)])
            await store.increment_statistics([row(3, 8)])

            (stored,) = await store.find_statistics(DimensionType.ACCESS_KEY, PeriodType.DAY)
            assert stored.total_requests == 5
            assert stored.total_input_tokens == 50
            assert stored.last_update_time == datetime(2024, 3, 1, 12, tzinfo=UTC)

            deleted, inserted = await store.replace_statistics(
                DimensionType.ACCESS_KEY,
                "ak-1",
                datetime(2024, 3, 1, tzinfo=UTC),
                datetime(2024, 3, 2, tzinfo=UTC),
                [row(1, 9)],
            )
            assert (deleted, inserted) == (1, 1)

            assert await store.delete_statistics_before(datetime(2024, 3, 5, tzinfo=UTC)) == 1
        finally:
            await _close(store)
