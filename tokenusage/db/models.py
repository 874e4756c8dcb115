"""
tokenusage - Database Models

Dataclass models for usage log rows and statistics rows.
"""

from calendar import monthrange
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from tokenusage.core.errors import InvalidDimensionError, InvalidPeriodError


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DimensionType(str, Enum):
    """Identity dimension a log row or statistics row belongs to."""
    ACCESS_KEY = "access_key"
    USER = "user"

    @classmethod
    def parse(cls, value) -> "DimensionType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise InvalidDimensionError(str(value)) from None


class PeriodType(str, Enum):
    """Statistics bucket granularity."""
    HOUR = "hour"
    DAY = "day"
    MONTH = "month"

    @classmethod
    def parse(cls, value) -> "PeriodType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise InvalidPeriodError(str(value)) from None

    def period_start(self, moment: datetime) -> datetime:
        """Start of the bucket containing moment (UTC)."""
        moment = ensure_utc(moment)
        if self is PeriodType.HOUR:
            return moment.replace(minute=0, second=0, microsecond=0)
        if self is PeriodType.DAY:
            return moment.replace(hour=0, minute=0, second=0, microsecond=0)
        return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    def period_end(self, start: datetime) -> datetime:
        """Exclusive end of the bucket starting at start."""
        start = ensure_utc(start)
        if self is PeriodType.HOUR:
            return start + timedelta(hours=1)
        if self is PeriodType.DAY:
            return start + timedelta(days=1)
        days_in_month = monthrange(start.year, start.month)[1]
        return start + timedelta(days=days_in_month)

    def bounds(self, moment: datetime) -> Tuple[datetime, datetime]:
        start = self.period_start(moment)
        return start, self.period_end(start)


@dataclass
class UsageLogEntry:
    """
    One persisted usage event for one dimension.

    The id matching dimension_type is the owner; the other one is an
    optional cross-reference. Rows are append-only.
    """

    dimension_type: DimensionType
    occur_time: datetime
    message_id: str
    access_key_id: Optional[str] = None
    user_id: Optional[str] = None
    input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    output_tokens: int = 0
    request_id: Optional[str] = None
    model: Optional[str] = None
    stop_reason: Optional[str] = None
    endpoint: Optional[str] = None
    feature: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.dimension_type = DimensionType.parse(self.dimension_type)
        self.occur_time = ensure_utc(self.occur_time)

    @property
    def dimension_id(self) -> Optional[str]:
        if self.dimension_type is DimensionType.ACCESS_KEY:
            return self.access_key_id
        return self.user_id

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.cache_creation_input_tokens
            + self.cache_read_input_tokens
            + self.output_tokens
        )

    @classmethod
    def from_record(cls, dimension_type: DimensionType, record) -> "UsageLogEntry":
        """Create UsageLogEntry from database record."""
        return cls(
            dimension_type=dimension_type,
            occur_time=record["occur_time"],
            message_id=record["message_id"],
            access_key_id=record["access_key_id"],
            user_id=record["user_id"],
            input_tokens=record["input_tokens"],
            cache_creation_input_tokens=record["cache_creation_input_tokens"],
            cache_read_input_tokens=record["cache_read_input_tokens"],
            output_tokens=record["output_tokens"],
            request_id=record["request_id"],
            model=record["model"],
            stop_reason=record["stop_reason"],
            endpoint=record["endpoint"],
            feature=record["feature"],
            id=record["id"],
            created_at=record["created_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "dimension_type": self.dimension_type.value,
            "access_key_id": self.access_key_id,
            "user_id": self.user_id,
            "input_tokens": self.input_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "request_id": self.request_id,
            "model": self.model,
            "stop_reason": self.stop_reason,
            "endpoint": self.endpoint,
            "feature": self.feature,
            "occur_time": self.occur_time.isoformat(),
            "message_id": self.message_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class UsageStatistics:
    """
    Rolled-up usage for one (dimension, period) bucket.

    period_end is exclusive: it is the start of the following bucket.
    """

    dimension_type: DimensionType
    dimension_id: str
    period_type: PeriodType
    period_start: datetime
    period_end: Optional[datetime] = None
    total_requests: int = 0
    total_input_tokens: int = 0
    total_cache_creation_input_tokens: int = 0
    total_cache_read_input_tokens: int = 0
    total_output_tokens: int = 0
    last_update_time: Optional[datetime] = None
    id: Optional[int] = field(default=None, compare=False)

    def __post_init__(self):
        self.dimension_type = DimensionType.parse(self.dimension_type)
        self.period_type = PeriodType.parse(self.period_type)
        self.period_start = ensure_utc(self.period_start)
        if self.period_end is None:
            self.period_end = self.period_type.period_end(self.period_start)
        else:
            self.period_end = ensure_utc(self.period_end)
        if self.last_update_time is not None:
            self.last_update_time = ensure_utc(self.last_update_time)

    @classmethod
    def for_bucket(
        cls,
        dimension_type: DimensionType,
        dimension_id: str,
        period_type: PeriodType,
        moment: datetime,
    ) -> "UsageStatistics":
        """Empty statistics row for the bucket containing moment."""
        period_type = PeriodType.parse(period_type)
        start, end = period_type.bounds(moment)
        return cls(
            dimension_type=dimension_type,
            dimension_id=dimension_id,
            period_type=period_type,
            period_start=start,
            period_end=end,
        )

    @property
    def key(self) -> Tuple[str, str, str, datetime]:
        return (
            self.dimension_type.value,
            self.dimension_id,
            self.period_type.value,
            self.period_start,
        )

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

    def add_usage_data(
        self,
        requests: int = 0,
        input_tokens: int = 0,
        cache_creation_input_tokens: int = 0,
        cache_read_input_tokens: int = 0,
        output_tokens: int = 0,
        update_time: Optional[datetime] = None,
    ) -> None:
        """Add usage to this bucket. Increments must be non-negative."""
        increments = {
            "requests": requests,
            "input_tokens": input_tokens,
            "cache_creation_input_tokens": cache_creation_input_tokens,
            "cache_read_input_tokens": cache_read_input_tokens,
            "output_tokens": output_tokens,
        }
        for name, value in increments.items():
            if value < 0:
                raise ValueError(f"{name} increment must be non-negative, got {value}")

        self.total_requests += requests
        self.total_input_tokens += input_tokens
        self.total_cache_creation_input_tokens += cache_creation_input_tokens
        self.total_cache_read_input_tokens += cache_read_input_tokens
        self.total_output_tokens += output_tokens
        self.last_update_time = ensure_utc(update_time) if update_time else utc_now()

    def add_entry(self, entry: UsageLogEntry, update_time: Optional[datetime] = None) -> None:
        self.add_usage_data(
            requests=1,
            input_tokens=entry.input_tokens,
            cache_creation_input_tokens=entry.cache_creation_input_tokens,
            cache_read_input_tokens=entry.cache_read_input_tokens,
            output_tokens=entry.output_tokens,
            update_time=update_time,
        )

    def merge(self, other: "UsageStatistics") -> None:
        """Fold another row for the same key into this one."""
        if other.key != self.key:
            raise ValueError("Cannot merge statistics rows with different keys")
        newest = other.last_update_time
        if newest is None or (self.last_update_time is not None and self.last_update_time > newest):
            newest = self.last_update_time
        self.add_usage_data(
            requests=other.total_requests,
            input_tokens=other.total_input_tokens,
            cache_creation_input_tokens=other.total_cache_creation_input_tokens,
            cache_read_input_tokens=other.total_cache_read_input_tokens,
            output_tokens=other.total_output_tokens,
            update_time=newest,
        )

    def copy(self) -> "UsageStatistics":
        return UsageStatistics(
            dimension_type=self.dimension_type,
            dimension_id=self.dimension_id,
            period_type=self.period_type,
            period_start=self.period_start,
            period_end=self.period_end,
            total_requests=self.total_requests,
            total_input_tokens=self.total_input_tokens,
            total_cache_creation_input_tokens=self.total_cache_creation_input_tokens,
            total_cache_read_input_tokens=self.total_cache_read_input_tokens,
            total_output_tokens=self.total_output_tokens,
            last_update_time=self.last_update_time,
            id=self.id,
        )

    @classmethod
    def from_record(cls, record) -> "UsageStatistics":
        """Create UsageStatistics from database record."""
        return cls(
            dimension_type=record["dimension_type"],
            dimension_id=record["dimension_id"],
            period_type=record["period_type"],
            period_start=record["period_start"],
            period_end=record["period_end"],
            total_requests=record["total_requests"],
            total_input_tokens=record["total_input_tokens"],
            total_cache_creation_input_tokens=record["total_cache_creation_input_tokens"],
            total_cache_read_input_tokens=record["total_cache_read_input_tokens"],
            total_output_tokens=record["total_output_tokens"],
            last_update_time=record["last_update_time"],
            id=record["id"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dimension_type": self.dimension_type.value,
            "dimension_id": self.dimension_id,
            "period_type": self.period_type.value,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "total_requests": self.total_requests,
            "total_input_tokens": self.total_input_tokens,
            "total_cache_creation_input_tokens": self.total_cache_creation_input_tokens,
            "total_cache_read_input_tokens": self.total_cache_read_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_tokens": self.total_tokens,
            "avg_tokens_per_request": round(self.avg_tokens_per_request, 2),
            "last_update_time": self.last_update_time.isoformat() if self.last_update_time else None,
        }
