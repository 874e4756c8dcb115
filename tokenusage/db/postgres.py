"""
tokenusage - PostgreSQL Usage Store

asyncpg-backed UsageStore. Log appends rely on the per-table unique
message_id constraint; statistics increments are a single upsert-add
statement per row inside one transaction.
"""

from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple

from tokenusage.core.errors import PersistenceError
from tokenusage.db.connection import DatabasePool
from tokenusage.db.models import (
    DimensionType,
    PeriodType,
    UsageLogEntry,
    UsageStatistics,
    ensure_utc,
)
from tokenusage.db.schema import LOG_TABLES, STATISTICS_TABLE, create_schema
from tokenusage.db.store import UsageStore, UsageTransaction


_INSERT_LOG = """
    INSERT INTO {table} (
        access_key_id, user_id,
        input_tokens, cache_creation_input_tokens,
        cache_read_input_tokens, output_tokens,
        request_id, model, stop_reason, endpoint, feature,
        occur_time, message_id
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
    ON CONFLICT (message_id) DO NOTHING
    RETURNING id, created_at
"""

_UPSERT_ADD_STATISTICS = f"""
    INSERT INTO {STATISTICS_TABLE} (
        dimension_type, dimension_id, period_type, period_start, period_end,
        total_requests, total_input_tokens, total_cache_creation_input_tokens,
        total_cache_read_input_tokens, total_output_tokens, last_update_time
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
    ON CONFLICT (dimension_type, dimension_id, period_type, period_start)
    DO UPDATE SET
        total_requests = {STATISTICS_TABLE}.total_requests + EXCLUDED.total_requests,
        total_input_tokens = {STATISTICS_TABLE}.total_input_tokens + EXCLUDED.total_input_tokens,
        total_cache_creation_input_tokens =
            {STATISTICS_TABLE}.total_cache_creation_input_tokens + EXCLUDED.total_cache_creation_input_tokens,
        total_cache_read_input_tokens =
            {STATISTICS_TABLE}.total_cache_read_input_tokens + EXCLUDED.total_cache_read_input_tokens,
        total_output_tokens = {STATISTICS_TABLE}.total_output_tokens + EXCLUDED.total_output_tokens,
        last_update_time = GREATEST({STATISTICS_TABLE}.last_update_time, EXCLUDED.last_update_time)
"""

_INSERT_STATISTICS = f"""
    INSERT INTO {STATISTICS_TABLE} (
        dimension_type, dimension_id, period_type, period_start, period_end,
        total_requests, total_input_tokens, total_cache_creation_input_tokens,
        total_cache_read_input_tokens, total_output_tokens, last_update_time
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
"""


def _statistics_args(row: UsageStatistics) -> Tuple[Any, ...]:
    return (
        row.dimension_type.value,
        row.dimension_id,
        row.period_type.value,
        row.period_start,
        row.period_end,
        row.total_requests,
        row.total_input_tokens,
        row.total_cache_creation_input_tokens,
        row.total_cache_read_input_tokens,
        row.total_output_tokens,
        row.last_update_time or row.period_start,
    )


def _log_filters(
    dimension_type: DimensionType,
    start: Optional[datetime],
    end: Optional[datetime],
    dimension_id: Optional[str],
    models: Optional[Sequence[str]],
    features: Optional[Sequence[str]],
) -> Tuple[str, List[Any]]:
    owner_column = "access_key_id" if dimension_type is DimensionType.ACCESS_KEY else "user_id"
    conditions = [f"{owner_column} IS NOT NULL"]
    args: List[Any] = []

    if start is not None:
        args.append(ensure_utc(start))
        conditions.append(f"occur_time >= ${len(args)}")
    if end is not None:
        args.append(ensure_utc(end))
        conditions.append(f"occur_time < ${len(args)}")
    if dimension_id is not None:
        args.append(dimension_id)
        conditions.append(f"{owner_column} = ${len(args)}")
    if models:
        args.append(list(models))
        conditions.append(f"model = ANY(${len(args)})")
    if features:
        args.append(list(features))
        conditions.append(f"feature = ANY(${len(args)})")

    return " AND ".join(conditions), args


class PostgresUsageTransaction(UsageTransaction):
    """Writes the staged entries in one database transaction on commit."""

    def __init__(self, db: DatabasePool):
        super().__init__()
        self.db = db

    async def commit(self) -> int:
        if not self.is_active:
            raise RuntimeError("Transaction is no longer active")
        inserted = []
        try:
            async with self.db.transaction() as conn:
                for entry in self.staged:
                    record = await conn.fetchrow(
                        _INSERT_LOG.format(table=LOG_TABLES[entry.dimension_type]),
                        entry.access_key_id,
                        entry.user_id,
                        entry.input_tokens,
                        entry.cache_creation_input_tokens,
                        entry.cache_read_input_tokens,
                        entry.output_tokens,
                        entry.request_id,
                        entry.model,
                        entry.stop_reason,
                        entry.endpoint,
                        entry.feature,
                        entry.occur_time,
                        entry.message_id,
                    )
                    if record is not None:
                        inserted.append((entry, record))
        except Exception as e:
            message_id = self.staged[0].message_id if self.staged else None
            raise PersistenceError(
                "Failed to write usage log entries", message_id=message_id, cause=str(e)
            ) from e
        finally:
            self.is_active = False

        # Rows get ids only once the database transaction has committed
        for entry, record in inserted:
            entry.id = record["id"]
            entry.created_at = record["created_at"]
        return len(inserted)

    async def rollback(self) -> None:
        self.staged = []
        self.is_active = False


class PostgresUsageStore(UsageStore):
    """
    UsageStore over an asyncpg pool.

    Usage:
        db = DatabasePool.from_settings(settings)
        await db.connect()
        store = PostgresUsageStore(db)
        await store.create_schema()
    """

    def __init__(self, db: DatabasePool):
        self.db = db

    async def create_schema(self) -> None:
        async with self.db.acquire() as conn:
            await create_schema(conn)

    def begin(self) -> PostgresUsageTransaction:
        return PostgresUsageTransaction(self.db)

    async def fetch_log_entries(
        self,
        dimension_type: DimensionType,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        dimension_id: Optional[str] = None,
        models: Optional[Sequence[str]] = None,
        features: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        descending: bool = False,
    ) -> List[UsageLogEntry]:
        dimension_type = DimensionType.parse(dimension_type)
        order = "occur_time DESC, id DESC" if descending else "occur_time, id"
        where, args = _log_filters(dimension_type, start, end, dimension_id, models, features)
        query = f"""
            SELECT * FROM {LOG_TABLES[dimension_type]}
            WHERE {where}
            ORDER BY {order}
        """
        if limit is not None:
            args.append(limit)
            query += f" LIMIT ${len(args)}"
        if offset:
            args.append(offset)
            query += f" OFFSET ${len(args)}"

        records = await self.db.fetch(query, *args)
        return [UsageLogEntry.from_record(dimension_type, r) for r in records]

    async def count_log_entries(
        self,
        dimension_type: DimensionType,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        dimension_id: Optional[str] = None,
        models: Optional[Sequence[str]] = None,
        features: Optional[Sequence[str]] = None,
    ) -> int:
        dimension_type = DimensionType.parse(dimension_type)
        where, args = _log_filters(dimension_type, start, end, dimension_id, models, features)
        query = f"SELECT COUNT(*) FROM {LOG_TABLES[dimension_type]} WHERE {where}"
        return await self.db.fetchval(query, *args) or 0

    async def increment_statistics(self, rows: Sequence[UsageStatistics]) -> int:
        if not rows:
            return 0
        try:
            async with self.db.transaction() as conn:
                await conn.executemany(
                    _UPSERT_ADD_STATISTICS,
                    [_statistics_args(row) for row in rows],
                )
        except Exception as e:
            raise PersistenceError("Failed to increment usage statistics", cause=str(e)) from e
        return len(rows)

    async def replace_statistics(
        self,
        dimension_type: DimensionType,
        dimension_id: str,
        start: datetime,
        end: datetime,
        rows: Sequence[UsageStatistics],
    ) -> Tuple[int, int]:
        dimension_type = DimensionType.parse(dimension_type)
        delete_query = f"""
            DELETE FROM {STATISTICS_TABLE}
            WHERE dimension_type = $1
              AND dimension_id = $2
              AND period_start >= $3
              AND period_end <= $4
        """
        try:
            async with self.db.transaction() as conn:
                status = await conn.execute(
                    delete_query,
                    dimension_type.value,
                    dimension_id,
                    ensure_utc(start),
                    ensure_utc(end),
                )
                if rows:
                    await conn.executemany(
                        _INSERT_STATISTICS,
                        [_statistics_args(row) for row in rows],
                    )
        except Exception as e:
            raise PersistenceError("Failed to rebuild usage statistics", cause=str(e)) from e
        return _affected_rows(status), len(rows)

    async def find_statistics(
        self,
        dimension_type: DimensionType,
        period_type: PeriodType,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        dimension_id: Optional[str] = None,
    ) -> List[UsageStatistics]:
        dimension_type = DimensionType.parse(dimension_type)
        period_type = PeriodType.parse(period_type)
        conditions = ["dimension_type = $1", "period_type = $2"]
        args: List[Any] = [dimension_type.value, period_type.value]

        if start is not None:
            args.append(ensure_utc(start))
            conditions.append(f"period_start >= ${len(args)}")
        if end is not None:
            args.append(ensure_utc(end))
            conditions.append(f"period_start < ${len(args)}")
        if dimension_id is not None:
            args.append(dimension_id)
            conditions.append(f"dimension_id = ${len(args)}")

        query = f"""
            SELECT * FROM {STATISTICS_TABLE}
            WHERE {" AND ".join(conditions)}
            ORDER BY period_start, dimension_id
        """
        records = await self.db.fetch(query, *args)
        return [UsageStatistics.from_record(r) for r in records]

    async def delete_statistics_before(self, before: datetime) -> int:
        status = await self.db.execute(
            f"DELETE FROM {STATISTICS_TABLE} WHERE period_end < $1",
            ensure_utc(before),
        )
        return _affected_rows(status)


def _affected_rows(status: str) -> int:
    """Parse asyncpg's command status, e.g. 'DELETE 3'."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0
