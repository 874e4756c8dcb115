"""
tokenusage - Usage Query Service

Read side for dashboards and billing: totals, trends, top consumers and
paginated log details.

Totals and trends prefer the pre-aggregated statistics rows. Model or
feature filters are not part of the statistics key, so filtered queries
are computed from the raw logs instead.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from tokenusage.db.identity import IdentityFinder
from tokenusage.db.models import DimensionType, PeriodType, UsageLogEntry, UsageStatistics
from tokenusage.db.store import UsageStore
from tokenusage.observability.logging import get_logger
from tokenusage.usage.aggregator import bucket_entries

logger = get_logger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class _TokenTotals:
    """Derived values shared by every result type carrying the four sums."""

    total_input_tokens: int
    total_cache_creation_input_tokens: int
    total_cache_read_input_tokens: int
    total_output_tokens: int
    total_requests: int

    @property
    def total_tokens(self) -> int:
        return (
            self.total_input_tokens
            + self.total_cache_creation_input_tokens
            + self.total_cache_read_input_tokens
            + self.total_output_tokens
        )

    @property
    def avg_tokens_per_request(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_tokens / self.total_requests

    @property
    def cache_usage_ratio(self) -> float:
        """Share of prompt-side tokens served by cache creation or cache reads."""
        cache = self.total_cache_creation_input_tokens + self.total_cache_read_input_tokens
        prompt = self.total_input_tokens + cache
        return cache / prompt if prompt else 0.0

    def _totals_dict(self) -> Dict[str, Any]:
        return {
            "total_input_tokens": self.total_input_tokens,
            "total_cache_creation_input_tokens": self.total_cache_creation_input_tokens,
            "total_cache_read_input_tokens": self.total_cache_read_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_tokens": self.total_tokens,
            "total_requests": self.total_requests,
            "avg_tokens_per_request": round(self.avg_tokens_per_request, 2),
        }


# ============================================================
# Query objects
# ============================================================

@dataclass(frozen=True)
class UsageQueryFilter:
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    models: Optional[Sequence[str]] = None
    features: Optional[Sequence[str]] = None
    aggregation_period: PeriodType = PeriodType.DAY

    @property
    def has_model_filter(self) -> bool:
        return bool(self.models)

    @property
    def has_feature_filter(self) -> bool:
        return bool(self.features)

    @property
    def uses_pre_aggregated_data(self) -> bool:
        return not (self.has_model_filter or self.has_feature_filter)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "models": list(self.models) if self.models else None,
            "features": list(self.features) if self.features else None,
            "aggregation_period": PeriodType.parse(self.aggregation_period).value,
        }


@dataclass(frozen=True)
class UsageTrendQuery:
    start_date: datetime
    end_date: datetime
    dimension_type: DimensionType = DimensionType.ACCESS_KEY
    dimension_id: Optional[str] = None  # None sums every identity of the dimension
    period_type: PeriodType = PeriodType.DAY
    models: Optional[Sequence[str]] = None
    features: Optional[Sequence[str]] = None
    limit: int = 100

    @classmethod
    def for_access_key(cls, access_key_id: str, start_date: datetime, end_date: datetime,
                       period_type: PeriodType = PeriodType.DAY) -> "UsageTrendQuery":
        return cls(start_date, end_date, DimensionType.ACCESS_KEY, access_key_id, period_type)

    @classmethod
    def for_user(cls, user_id: str, start_date: datetime, end_date: datetime,
                 period_type: PeriodType = PeriodType.DAY) -> "UsageTrendQuery":
        return cls(start_date, end_date, DimensionType.USER, user_id, period_type)


@dataclass(frozen=True)
class UsageDetailQuery:
    dimension_type: DimensionType = DimensionType.ACCESS_KEY
    dimension_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    models: Optional[Sequence[str]] = None
    features: Optional[Sequence[str]] = None
    page: int = 1
    limit: int = 20
    newest_first: bool = True

    def __post_init__(self):
        if self.page < 1:
            raise ValueError("page must be >= 1")
        if not 1 <= self.limit <= 1000:
            raise ValueError("limit must be between 1 and 1000")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


# ============================================================
# Results
# ============================================================

@dataclass
class UsageStatisticsPeriod(_TokenTotals):
    period_start: datetime
    period_end: datetime
    total_input_tokens: int = 0
    total_cache_creation_input_tokens: int = 0
    total_cache_read_input_tokens: int = 0
    total_output_tokens: int = 0
    total_requests: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period_start": _iso(self.period_start),
            "period_end": _iso(self.period_end),
            **self._totals_dict(),
        }


# Trend points carry the same fields as a statistics period
UsageTrendDataPoint = UsageStatisticsPeriod


@dataclass
class UsageStatisticsResult(_TokenTotals):
    total_input_tokens: int = 0
    total_cache_creation_input_tokens: int = 0
    total_cache_read_input_tokens: int = 0
    total_output_tokens: int = 0
    total_requests: int = 0
    periods: List[UsageStatisticsPeriod] = field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self._totals_dict(),
            "periods": [p.to_dict() for p in self.periods],
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "metadata": dict(self.metadata),
        }


@dataclass
class UsageTrendResult:
    """Trend points for a window plus a summary; the summary is empty without points."""

    data_points: List[UsageTrendDataPoint]
    start_date: datetime
    end_date: datetime
    period_type: PeriodType

    @property
    def summary(self) -> Dict[str, Any]:
        if not self.data_points:
            return {}
        total_tokens = sum(p.total_tokens for p in self.data_points)
        # First point wins ties
        peak = max(self.data_points, key=lambda p: p.total_tokens)
        return {
            "total_tokens": total_tokens,
            "total_requests": sum(p.total_requests for p in self.data_points),
            "average_tokens_per_period": total_tokens / len(self.data_points),
            "peak_usage": peak.to_dict(),
            "data_point_count": len(self.data_points),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": [p.to_dict() for p in self.data_points],
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "period_type": PeriodType.parse(self.period_type).value,
            "summary": self.summary,
        }


@dataclass
class TopConsumerItem(_TokenTotals):
    dimension_id: str
    display_name: str
    total_input_tokens: int = 0
    total_cache_creation_input_tokens: int = 0
    total_cache_read_input_tokens: int = 0
    total_output_tokens: int = 0
    total_requests: int = 0
    first_usage_time: Optional[datetime] = None
    last_usage_time: Optional[datetime] = None

    def add(self, entry: UsageLogEntry) -> None:
        self.total_input_tokens += entry.input_tokens
        self.total_cache_creation_input_tokens += entry.cache_creation_input_tokens
        self.total_cache_read_input_tokens += entry.cache_read_input_tokens
        self.total_output_tokens += entry.output_tokens
        self.total_requests += 1
        if self.first_usage_time is None or entry.occur_time < self.first_usage_time:
            self.first_usage_time = entry.occur_time
        if self.last_usage_time is None or entry.occur_time > self.last_usage_time:
            self.last_usage_time = entry.occur_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dimension_id": self.dimension_id,
            "display_name": self.display_name,
            **self._totals_dict(),
            "first_usage_time": _iso(self.first_usage_time),
            "last_usage_time": _iso(self.last_usage_time),
            "cache_usage_ratio": round(self.cache_usage_ratio, 4),
        }


@dataclass
class PaginatedUsageDetailResult:
    items: List[UsageLogEntry]
    total_count: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.limit) if self.limit else 0

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "total_count": self.total_count,
            "page": self.page,
            "limit": self.limit,
            "total_pages": self.total_pages,
            "has_next_page": self.has_next_page,
        }


def _period_from_row(row: UsageStatistics) -> UsageStatisticsPeriod:
    return UsageStatisticsPeriod(
        period_start=row.period_start,
        period_end=row.period_end,
        total_input_tokens=row.total_input_tokens,
        total_cache_creation_input_tokens=row.total_cache_creation_input_tokens,
        total_cache_read_input_tokens=row.total_cache_read_input_tokens,
        total_output_tokens=row.total_output_tokens,
        total_requests=row.total_requests,
    )


def _sum_by_period(rows: Sequence[UsageStatistics]) -> List[UsageStatisticsPeriod]:
    """Collapse rows of several identities into one point per period."""
    by_start: Dict[datetime, UsageStatisticsPeriod] = {}
    for row in rows:
        point = by_start.get(row.period_start)
        if point is None:
            by_start[row.period_start] = _period_from_row(row)
            continue
        point.total_input_tokens += row.total_input_tokens
        point.total_cache_creation_input_tokens += row.total_cache_creation_input_tokens
        point.total_cache_read_input_tokens += row.total_cache_read_input_tokens
        point.total_output_tokens += row.total_output_tokens
        point.total_requests += row.total_requests
    return [by_start[start] for start in sorted(by_start)]


class UsageQueryService:
    """Answers usage questions from the statistics rows and the raw logs."""

    def __init__(
        self,
        store: UsageStore,
        identity_finders: Optional[Mapping[DimensionType, IdentityFinder]] = None,
    ):
        self.store = store
        self.identity_finders = dict(identity_finders or {})

    async def get_usage_statistics(
        self,
        dimension_type: DimensionType,
        dimension_id: str,
        filter: Optional[UsageQueryFilter] = None,
    ) -> UsageStatisticsResult:
        dimension_type = DimensionType.parse(dimension_type)
        filter = filter or UsageQueryFilter()
        logger.debug(
            "Querying usage statistics",
            dimension_type=dimension_type.value,
            dimension_id=dimension_id,
            filter=filter.to_dict(),
        )

        if filter.uses_pre_aggregated_data:
            rows = await self.store.find_statistics(
                dimension_type,
                PeriodType.parse(filter.aggregation_period),
                start=filter.start_date,
                end=filter.end_date,
                dimension_id=dimension_id,
            )
            periods = [_period_from_row(row) for row in rows]
            method = "pre_aggregated"
        else:
            entries = await self.store.fetch_log_entries(
                dimension_type,
                filter.start_date,
                filter.end_date,
                dimension_id=dimension_id,
                models=filter.models,
                features=filter.features,
            )
            periods = []
            method = "real_time"

        result = UsageStatisticsResult(
            periods=periods,
            start_date=filter.start_date,
            end_date=filter.end_date,
            metadata={
                "dimension_type": dimension_type.value,
                "dimension_id": dimension_id,
                "calculation_method": method,
                "filters": filter.to_dict(),
            },
        )
        if method == "pre_aggregated":
            for period in periods:
                result.total_input_tokens += period.total_input_tokens
                result.total_cache_creation_input_tokens += period.total_cache_creation_input_tokens
                result.total_cache_read_input_tokens += period.total_cache_read_input_tokens
                result.total_output_tokens += period.total_output_tokens
                result.total_requests += period.total_requests
        else:
            for entry in entries:
                result.total_input_tokens += entry.input_tokens
                result.total_cache_creation_input_tokens += entry.cache_creation_input_tokens
                result.total_cache_read_input_tokens += entry.cache_read_input_tokens
                result.total_output_tokens += entry.output_tokens
                result.total_requests += 1
        return result

    async def get_usage_trends(self, query: UsageTrendQuery) -> UsageTrendResult:
        dimension_type = DimensionType.parse(query.dimension_type)
        period_type = PeriodType.parse(query.period_type)
        logger.debug(
            "Querying usage trends",
            dimension_type=dimension_type.value,
            dimension_id=query.dimension_id,
            period_type=period_type.value,
        )

        if query.models or query.features:
            entries = await self.store.fetch_log_entries(
                dimension_type,
                query.start_date,
                query.end_date,
                dimension_id=query.dimension_id,
                models=query.models,
                features=query.features,
            )
            rows = list(bucket_entries(
                (e for e in entries if e.dimension_id),
                period_types=(period_type,),
            ).values())
        else:
            rows = await self.store.find_statistics(
                dimension_type,
                period_type,
                start=query.start_date,
                end=query.end_date,
                dimension_id=query.dimension_id,
            )

        return UsageTrendResult(
            data_points=_sum_by_period(rows)[: query.limit],
            start_date=query.start_date,
            end_date=query.end_date,
            period_type=period_type,
        )

    async def get_top_consumers(
        self,
        dimension_type: DimensionType,
        start_date: datetime,
        end_date: datetime,
        limit: int = 10,
    ) -> List[TopConsumerItem]:
        """Identities ordered by total tokens used in [start_date, end_date)."""
        dimension_type = DimensionType.parse(dimension_type)
        entries = await self.store.fetch_log_entries(dimension_type, start_date, end_date)

        consumers: Dict[str, TopConsumerItem] = {}
        for entry in entries:
            if not entry.dimension_id:
                continue
            item = consumers.get(entry.dimension_id)
            if item is None:
                item = TopConsumerItem(dimension_id=entry.dimension_id, display_name=entry.dimension_id)
                consumers[entry.dimension_id] = item
            item.add(entry)

        ranked = sorted(consumers.values(), key=lambda c: (-c.total_tokens, c.dimension_id))[:limit]

        finder = self.identity_finders.get(dimension_type)
        if finder is not None:
            for item in ranked:
                identity = await finder.find_by_id(item.dimension_id)
                if identity is not None and identity.name:
                    item.display_name = identity.name
        return ranked

    async def get_usage_details(self, query: UsageDetailQuery) -> PaginatedUsageDetailResult:
        dimension_type = DimensionType.parse(query.dimension_type)
        items = await self.store.fetch_log_entries(
            dimension_type,
            query.start_date,
            query.end_date,
            dimension_id=query.dimension_id,
            models=query.models,
            features=query.features,
            limit=query.limit,
            offset=query.offset,
            descending=query.newest_first,
        )
        total = await self.store.count_log_entries(
            dimension_type,
            query.start_date,
            query.end_date,
            dimension_id=query.dimension_id,
            models=query.models,
            features=query.features,
        )
        return PaginatedUsageDetailResult(items=items, total_count=total, page=query.page, limit=query.limit)
