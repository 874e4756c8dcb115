"""
tokenusage - Database Layer

Usage log and statistics models, identity lookup, and storage backends.
"""

from .connection import DatabasePool
from .identity import Identity, IdentityFinder, InMemoryIdentityFinder
from .memory import InMemoryUsageStore
from .models import DimensionType, PeriodType, UsageLogEntry, UsageStatistics
from .postgres import PostgresUsageStore
from .store import UsageStore, UsageTransaction

__all__ = [
    "DatabasePool",
    "Identity",
    "IdentityFinder",
    "InMemoryIdentityFinder",
    "InMemoryUsageStore",
    "PostgresUsageStore",
    "DimensionType",
    "PeriodType",
    "UsageLogEntry",
    "UsageStatistics",
    "UsageStore",
    "UsageTransaction",
]
