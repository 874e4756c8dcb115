"""
tokenusage - Storage Interfaces

Everything the pipeline needs from a storage engine: transactional log
appends with per-table message_id uniqueness, ordered range scans, and
atomic add-or-create on statistics rows.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from tokenusage.db.models import DimensionType, PeriodType, UsageLogEntry, UsageStatistics


class UsageTransaction(ABC):
    """
    A unit of work over the usage log tables.

    Entries are staged first and written together on commit. An entry
    whose message_id already exists in its table is skipped, so commit()
    may write fewer rows than were staged.
    """

    is_active: bool = True

    def __init__(self):
        self.is_active = True
        self.staged: List[UsageLogEntry] = []

    def stage(self, entry: UsageLogEntry) -> None:
        if not self.is_active:
            raise RuntimeError("Transaction is no longer active")
        self.staged.append(entry)

    @property
    def staged_count(self) -> int:
        return len(self.staged)

    @abstractmethod
    async def commit(self) -> int:
        """Write all staged entries atomically. Returns rows written."""

    @abstractmethod
    async def rollback(self) -> None:
        """Discard staged entries."""


class UsageStore(ABC):
    """Storage for usage log rows and statistics rows."""

    @abstractmethod
    def begin(self) -> UsageTransaction:
        """Start a log transaction."""

    @abstractmethod
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
        """
        Log rows with start <= occur_time < end, ordered by (occur_time, id),
        newest first when descending.

        Open bounds are unbounded; models/features filter when non-empty.
        """

    @abstractmethod
    async def count_log_entries(
        self,
        dimension_type: DimensionType,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        dimension_id: Optional[str] = None,
        models: Optional[Sequence[str]] = None,
        features: Optional[Sequence[str]] = None,
    ) -> int:
        """Number of rows fetch_log_entries would return without paging."""

    @abstractmethod
    async def increment_statistics(self, rows: Sequence[UsageStatistics]) -> int:
        """
        Add each row's sums to the stored row with the same key, creating
        it if absent. All rows apply or none do. Returns rows touched.
        """

    @abstractmethod
    async def replace_statistics(
        self,
        dimension_type: DimensionType,
        dimension_id: str,
        start: datetime,
        end: datetime,
        rows: Sequence[UsageStatistics],
    ) -> Tuple[int, int]:
        """
        Atomically delete the dimension's rows whose bucket lies inside
        [start, end) and insert rows. Returns (deleted, inserted).
        """

    @abstractmethod
    async def find_statistics(
        self,
        dimension_type: DimensionType,
        period_type: PeriodType,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        dimension_id: Optional[str] = None,
    ) -> List[UsageStatistics]:
        """Rows with period_start in [start, end), ordered by period_start."""

    @abstractmethod
    async def delete_statistics_before(self, before: datetime) -> int:
        """Delete statistics rows with period_end < before."""
