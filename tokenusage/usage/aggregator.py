"""
tokenusage - Usage Aggregation

Folds usage log rows into hour/day/month statistics rows per dimension.

Three operations:
- incremental aggregation over a time window, additive and atomic
- rebuild of one dimension's buckets from the raw logs, idempotent
- cleanup of statistics rows whose period has ended before a cutoff

Log rows stay the source of truth; statistics can always be rebuilt.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from tokenusage.core.errors import InvalidDimensionError
from tokenusage.db.models import (
    DimensionType,
    PeriodType,
    UsageLogEntry,
    UsageStatistics,
    ensure_utc,
    utc_now,
)
from tokenusage.db.store import UsageStore
from tokenusage.observability.logging import TimedOperation, get_logger
from tokenusage.observability.metrics import MetricsCollector, get_metrics
from tokenusage.observability.tracing import trace_pipeline_step

logger = get_logger(__name__)


@dataclass
class AggregationResult:
    """Outcome of an incremental aggregation run."""
    success: bool
    processed_records: int
    updated_statistics: int
    errors: List[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "processed_records": self.processed_records,
            "updated_statistics": self.updated_statistics,
            "errors": list(self.errors),
        }


@dataclass
class RebuildResult:
    """Outcome of rebuilding one dimension's statistics."""
    success: bool
    rebuilt_records: int
    deleted_records: int
    dimension_type: str
    dimension_id: str
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "rebuilt_records": self.rebuilt_records,
            "deleted_records": self.deleted_records,
            "dimension_type": self.dimension_type,
            "dimension_id": self.dimension_id,
            "errors": list(self.errors),
        }


def bucket_entries(
    entries: Iterable[UsageLogEntry],
    period_types: Iterable[PeriodType] = tuple(PeriodType),
    window: Optional[Tuple[datetime, datetime]] = None,
) -> Dict[Tuple, UsageStatistics]:
    """
    Sum entries into statistics rows keyed by bucket.

    Each row is stamped with its newest contributing occur_time. With a
    window, only buckets lying entirely inside [start, end) are kept.
    Entries without a dimension id must be filtered out by the caller.
    """
    period_types = tuple(period_types)
    buckets: Dict[Tuple, UsageStatistics] = {}
    for entry in entries:
        for period_type in period_types:
            start, end = period_type.bounds(entry.occur_time)
            if window is not None and (start < window[0] or end > window[1]):
                continue
            key = (entry.dimension_type.value, entry.dimension_id, period_type.value, start)
            row = buckets.get(key)
            if row is None:
                row = UsageStatistics(
                    dimension_type=entry.dimension_type,
                    dimension_id=entry.dimension_id,
                    period_type=period_type,
                    period_start=start,
                    period_end=end,
                )
                buckets[key] = row
            newest = entry.occur_time
            if row.last_update_time is not None and row.last_update_time > newest:
                newest = row.last_update_time
            row.add_entry(entry, update_time=newest)
    return buckets


class UsageAggregateService:
    """Maintains the usage_statistics rows from the usage logs."""

    def __init__(
        self,
        store: UsageStore,
        metrics: Optional[MetricsCollector] = None,
        retention_days: int = 400,
    ):
        self.store = store
        self.metrics = metrics or get_metrics()
        self.retention_days = retention_days

    async def perform_incremental_aggregation(
        self,
        from_time: datetime,
        to_time: datetime,
    ) -> AggregationResult:
        """
        Add log rows with occur_time in [from_time, to_time) to statistics.

        Windows must not overlap between runs, or rows are counted twice.
        """
        from_time, to_time = ensure_utc(from_time), ensure_utc(to_time)
        logger.info(
            "Starting incremental aggregation",
            from_time=from_time.isoformat(),
            to_time=to_time.isoformat(),
        )
        if from_time >= to_time:
            return AggregationResult(
                success=False,
                processed_records=0,
                updated_statistics=0,
                errors=["from_time must be earlier than to_time"],
            )

        errors: List[str] = []
        processed = 0
        with trace_pipeline_step(
            "usage.aggregate.incremental",
            {"usage.from_time": from_time.isoformat(), "usage.to_time": to_time.isoformat()},
        ) as span:
            try:
                async with TimedOperation("incremental_aggregation", logger):
                    usable: List[UsageLogEntry] = []
                    for dimension_type in DimensionType:
                        entries = await self.store.fetch_log_entries(dimension_type, from_time, to_time)
                        for entry in entries:
                            if not entry.dimension_id:
                                message = f"Skipped {dimension_type.value} usage row {entry.id}: empty dimension id"
                                logger.warning(message, usage_row_id=entry.id)
                                errors.append(message)
                                continue
                            usable.append(entry)
                    processed = len(usable)

                    rows = list(bucket_entries(usable).values())
                    updated = await self.store.increment_statistics(rows)
            except Exception as e:
                message = f"Incremental aggregation failed: {e}"
                logger.error(message, error_type=type(e).__name__)
                errors.append(message)
                return AggregationResult(
                    success=False,
                    processed_records=processed,
                    updated_statistics=0,
                    errors=errors,
                )

            span.set_attribute("usage.processed_records", processed)
            span.set_attribute("usage.updated_statistics", updated)

        self.metrics.record_statistics_rows("increment", updated)
        logger.info(
            "Incremental aggregation completed",
            processed_records=processed,
            updated_statistics=updated,
            skipped_records=len(errors),
        )
        return AggregationResult(
            success=True,
            processed_records=processed,
            updated_statistics=updated,
            errors=errors,
        )

    async def rebuild_aggregate_data(
        self,
        dimension_type: str,
        dimension_id: str,
        start_date: datetime,
        end_date: datetime,
    ) -> RebuildResult:
        """
        Recompute one dimension's buckets lying inside [start_date, end_date).

        Existing rows for those buckets are deleted and replaced in one
        atomic step. Running it twice yields identical rows.
        """
        try:
            dimension = DimensionType.parse(dimension_type)
        except InvalidDimensionError as e:
            logger.error(str(e), dimension_type=str(dimension_type), dimension_id=dimension_id)
            return RebuildResult(
                success=False,
                rebuilt_records=0,
                deleted_records=0,
                dimension_type=str(dimension_type),
                dimension_id=dimension_id,
                errors=[str(e)],
            )

        start_date, end_date = ensure_utc(start_date), ensure_utc(end_date)
        if not dimension_id or start_date >= end_date:
            message = "dimension_id is required" if not dimension_id else "start_date must be earlier than end_date"
            return RebuildResult(
                success=False,
                rebuilt_records=0,
                deleted_records=0,
                dimension_type=dimension.value,
                dimension_id=dimension_id,
                errors=[message],
            )

        logger.info(
            "Starting aggregate data rebuild",
            dimension_type=dimension.value,
            dimension_id=dimension_id,
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )

        with trace_pipeline_step(
            "usage.aggregate.rebuild",
            {"usage.dimension_type": dimension.value, "usage.dimension_id": dimension_id},
        ):
            try:
                async with TimedOperation("aggregate_rebuild", logger):
                    entries = await self.store.fetch_log_entries(
                        dimension, start_date, end_date, dimension_id=dimension_id
                    )
                    buckets = bucket_entries(entries, window=(start_date, end_date))
                    rows = sorted(buckets.values(), key=lambda r: (r.period_type.value, r.period_start))
                    deleted, rebuilt = await self.store.replace_statistics(
                        dimension, dimension_id, start_date, end_date, rows
                    )
            except Exception as e:
                message = f"Aggregate data rebuild failed: {e}"
                logger.error(message, dimension_type=dimension.value, dimension_id=dimension_id)
                return RebuildResult(
                    success=False,
                    rebuilt_records=0,
                    deleted_records=0,
                    dimension_type=dimension.value,
                    dimension_id=dimension_id,
                    errors=[message],
                )

        self.metrics.record_statistics_rows("rebuild", rebuilt)
        logger.info(
            "Aggregate data rebuild completed",
            dimension_type=dimension.value,
            dimension_id=dimension_id,
            rebuilt_records=rebuilt,
            deleted_records=deleted,
        )
        return RebuildResult(
            success=True,
            rebuilt_records=rebuilt,
            deleted_records=deleted,
            dimension_type=dimension.value,
            dimension_id=dimension_id,
        )

    async def cleanup_expired_data(self, before: Optional[datetime] = None) -> int:
        """
        Delete statistics rows with period_end < before.

        Defaults to the retention cutoff. Raw usage logs are never touched.
        """
        if before is None:
            before = utc_now() - timedelta(days=self.retention_days)
        before = ensure_utc(before)
        logger.info("Starting expired data cleanup", before=before.isoformat())

        try:
            deleted = await self.store.delete_statistics_before(before)
        except Exception as e:
            logger.error("Failed to cleanup expired data", before=before.isoformat(), error=str(e))
            raise

        self.metrics.record_statistics_rows("cleanup", deleted)
        logger.info("Expired data cleanup completed", deleted_count=deleted, before=before.isoformat())
        return deleted
