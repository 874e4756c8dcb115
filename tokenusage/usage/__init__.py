"""
tokenusage - Usage Pipeline

Extraction, message identity, collection, persistence handling,
aggregation and queries for token usage of forwarded provider calls.
"""

from .counters import UsageCounters, coerce_token_count
from .extractor import (
    UsageExtractor,
    extract_usage,
    extract_model,
    extract_message_id,
    is_event_stream,
)
from .message import (
    UsageMetadata,
    UsageCollectionMessage,
    PRIORITY_IDENTIFIED,
    PRIORITY_ORPHAN,
)
from .handler import HandleOutcome, UsageCollectionHandler
from .channel import DeadLetter, MessageChannel, InMemoryMessageChannel
from .collector import (
    UsageCollectionItem,
    UsageCollectionBatch,
    BatchProcessResult,
    UsageCollector,
)
from .aggregator import (
    AggregationResult,
    RebuildResult,
    UsageAggregateService,
    bucket_entries,
)
from .listener import ForwardExchange, HttpForwardListener, FEATURE_HTTP_FORWARD
from .query import (
    UsageQueryFilter,
    UsageTrendQuery,
    UsageDetailQuery,
    UsageStatisticsPeriod,
    UsageTrendDataPoint,
    UsageTrendResult,
    UsageStatisticsResult,
    TopConsumerItem,
    PaginatedUsageDetailResult,
    UsageQueryService,
)


__all__ = [
    # Extraction
    "UsageCounters",
    "coerce_token_count",
    "UsageExtractor",
    "extract_usage",
    "extract_model",
    "extract_message_id",
    "is_event_stream",
    # Messages
    "UsageMetadata",
    "UsageCollectionMessage",
    "PRIORITY_IDENTIFIED",
    "PRIORITY_ORPHAN",
    # Collection
    "HandleOutcome",
    "UsageCollectionHandler",
    "DeadLetter",
    "MessageChannel",
    "InMemoryMessageChannel",
    "UsageCollectionItem",
    "UsageCollectionBatch",
    "BatchProcessResult",
    "UsageCollector",
    "ForwardExchange",
    "HttpForwardListener",
    "FEATURE_HTTP_FORWARD",
    # Aggregation
    "AggregationResult",
    "RebuildResult",
    "UsageAggregateService",
    "bucket_entries",
    # Queries
    "UsageQueryFilter",
    "UsageTrendQuery",
    "UsageDetailQuery",
    "UsageStatisticsPeriod",
    "UsageTrendDataPoint",
    "UsageTrendResult",
    "UsageStatisticsResult",
    "TopConsumerItem",
    "PaginatedUsageDetailResult",
    "UsageQueryService",
]
