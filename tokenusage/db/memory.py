"""
tokenusage - In-Memory Usage Store

Store used by tests and local mode. Mirrors the PostgreSQL store's
constraints: unique message_id per log table and a unique statistics key.
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Set, Tuple

from tokenusage.db.models import (
    DimensionType,
    PeriodType,
    UsageLogEntry,
    UsageStatistics,
    ensure_utc,
    utc_now,
)
from tokenusage.db.store import UsageStore, UsageTransaction


class InMemoryUsageTransaction(UsageTransaction):

    def __init__(self, store: "InMemoryUsageStore"):
        super().__init__()
        self._store = store

    async def commit(self) -> int:
        if not self.is_active:
            raise RuntimeError("Transaction is no longer active")
        try:
            return await self._store._append(self.staged)
        finally:
            self.is_active = False

    async def rollback(self) -> None:
        self.staged = []
        self.is_active = False


def _matches(
    entry: UsageLogEntry,
    start: Optional[datetime],
    end: Optional[datetime],
    dimension_id: Optional[str],
    models: Optional[Sequence[str]],
    features: Optional[Sequence[str]],
) -> bool:
    if start is not None and entry.occur_time < ensure_utc(start):
        return False
    if end is not None and entry.occur_time >= ensure_utc(end):
        return False
    if dimension_id is not None and entry.dimension_id != dimension_id:
        return False
    if models and entry.model not in models:
        return False
    if features and entry.feature not in features:
        return False
    return True


class InMemoryUsageStore(UsageStore):
    """Dict-and-list storage guarded by an asyncio.Lock."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._logs: Dict[DimensionType, List[UsageLogEntry]] = {d: [] for d in DimensionType}
        self._message_ids: Dict[DimensionType, Set[str]] = {d: set() for d in DimensionType}
        self._statistics: Dict[Tuple, UsageStatistics] = {}
        self._next_log_id = 1
        self._next_stat_id = 1

    def begin(self) -> InMemoryUsageTransaction:
        return InMemoryUsageTransaction(self)

    async def _append(self, entries: Sequence[UsageLogEntry]) -> int:
        async with self._lock:
            seen = {d: set(ids) for d, ids in self._message_ids.items()}
            fresh: List[UsageLogEntry] = []
            for entry in entries:
                if entry.message_id in seen[entry.dimension_type]:
                    continue
                seen[entry.dimension_type].add(entry.message_id)
                fresh.append(entry)

            now = utc_now()
            for entry in fresh:
                entry.id = self._next_log_id
                entry.created_at = entry.created_at or now
                self._next_log_id += 1
                self._logs[entry.dimension_type].append(entry)
                self._message_ids[entry.dimension_type].add(entry.message_id)
            return len(fresh)

    def log_entries(self, dimension_type: DimensionType) -> List[UsageLogEntry]:
        """Snapshot of every stored row for a dimension."""
        return list(self._logs[DimensionType.parse(dimension_type)])

    def statistics_rows(self) -> List[UsageStatistics]:
        """Snapshot of every stored statistics row."""
        return [row.copy() for row in self._statistics.values()]

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
        rows = [
            e for e in self._logs[dimension_type]
            if _matches(e, start, end, dimension_id, models, features)
        ]
        rows.sort(key=lambda e: (e.occur_time, e.id), reverse=descending)
        rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return rows

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
        return sum(
            1 for e in self._logs[dimension_type]
            if _matches(e, start, end, dimension_id, models, features)
        )

    async def increment_statistics(self, rows: Sequence[UsageStatistics]) -> int:
        async with self._lock:
            updated = dict(self._statistics)
            next_id = self._next_stat_id
            for row in rows:
                current = updated.get(row.key)
                if current is None:
                    current = row.copy()
                    current.id = next_id
                    next_id += 1
                else:
                    current = current.copy()
                    current.merge(row)
                updated[row.key] = current
            self._statistics = updated
            self._next_stat_id = next_id
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
        start, end = ensure_utc(start), ensure_utc(end)
        async with self._lock:
            kept = {
                key: row for key, row in self._statistics.items()
                if not (
                    row.dimension_type is dimension_type
                    and row.dimension_id == dimension_id
                    and row.period_start >= start
                    and row.period_end <= end
                )
            }
            deleted = len(self._statistics) - len(kept)
            for row in rows:
                if row.key in kept:
                    raise ValueError(f"Statistics row already exists for {row.key}")
                stored = row.copy()
                stored.id = self._next_stat_id
                self._next_stat_id += 1
                kept[row.key] = stored
            self._statistics = kept
            return deleted, len(rows)

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
        result = []
        for row in self._statistics.values():
            if row.dimension_type is not dimension_type or row.period_type is not period_type:
                continue
            if dimension_id is not None and row.dimension_id != dimension_id:
                continue
            if start is not None and row.period_start < ensure_utc(start):
                continue
            if end is not None and row.period_start >= ensure_utc(end):
                continue
            result.append(row.copy())
        result.sort(key=lambda r: (r.period_start, r.dimension_id))
        return result

    async def delete_statistics_before(self, before: datetime) -> int:
        before = ensure_utc(before)
        async with self._lock:
            kept = {k: r for k, r in self._statistics.items() if not r.period_end < before}
            deleted = len(self._statistics) - len(kept)
            self._statistics = kept
            return deleted
