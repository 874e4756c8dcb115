"""
tokenusage - Usage Collector

Entry point for recording usage: wraps counters into a message and hands
it to the channel, or persists it inline when running synchronously.
"""

import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from tokenusage.db.models import utc_now
from tokenusage.observability.logging import get_logger
from tokenusage.observability.metrics import MetricsCollector, get_metrics
from tokenusage.usage.channel import MessageChannel
from tokenusage.usage.counters import UsageCounters
from tokenusage.usage.handler import UsageCollectionHandler
from tokenusage.usage.message import UsageCollectionMessage, UsageMetadata

logger = get_logger(__name__)

MetadataInput = Union[UsageMetadata, Mapping[str, Any], None]


@dataclass(frozen=True)
class UsageCollectionItem:
    """One entry of a batch."""
    usage: UsageCounters
    access_key_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: UsageMetadata = field(default_factory=UsageMetadata)


@dataclass(frozen=True)
class UsageCollectionBatch:
    """Immutable list of items; add_item returns a new batch."""
    items: Tuple[UsageCollectionItem, ...] = ()

    def add_item(
        self,
        usage: UsageCounters,
        access_key_id: Optional[str] = None,
        user_id: Optional[str] = None,
        metadata: MetadataInput = None,
    ) -> "UsageCollectionBatch":
        item = UsageCollectionItem(
            usage=usage,
            access_key_id=access_key_id,
            user_id=user_id,
            metadata=UsageMetadata.coerce(metadata),
        )
        return UsageCollectionBatch(items=self.items + (item,))

    @property
    def size(self) -> int:
        return len(self.items)

    def is_empty(self) -> bool:
        return not self.items

    @property
    def total_tokens(self) -> int:
        return sum(item.usage.total_tokens for item in self.items)


@dataclass
class BatchProcessResult:
    """Per-batch tally of collect outcomes."""
    total_items: int
    success_count: int
    failure_count: int
    errors: List[str] = field(default_factory=list)
    batch_id: Optional[str] = None

    @property
    def success_rate(self) -> float:
        if self.total_items == 0:
            return 0.0
        return self.success_count / self.total_items

    @property
    def is_fully_successful(self) -> bool:
        return self.failure_count == 0 and self.success_count == self.total_items

    @property
    def is_partially_successful(self) -> bool:
        return self.success_count > 0 and self.failure_count > 0

    @property
    def is_completely_failed(self) -> bool:
        return self.success_count == 0 and self.failure_count == self.total_items

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_items": self.total_items,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "success_rate": self.success_rate,
            "errors": list(self.errors),
            "batch_id": self.batch_id,
            "is_fully_successful": self.is_fully_successful,
            "is_partially_successful": self.is_partially_successful,
        }


def _build_message(
    usage: UsageCounters,
    access_key_id: Optional[str],
    user_id: Optional[str],
    metadata: MetadataInput,
) -> UsageCollectionMessage:
    # Stamp the submission time so identical calls get distinct message ids.
    coerced = UsageMetadata.coerce(metadata)
    if coerced.occur_time is None:
        coerced = replace(coerced, occur_time=utc_now())
    return UsageCollectionMessage(
        usage=usage,
        access_key_id=access_key_id,
        user_id=user_id,
        metadata=coerced,
    )


class UsageCollector:
    """
    Records usage events.

    With a channel, collect_usage publishes and falls back to inline
    persistence if publishing fails. Without one, it always persists inline.
    """

    def __init__(
        self,
        handler: UsageCollectionHandler,
        channel: Optional[MessageChannel] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.handler = handler
        self.channel = channel
        self.metrics = metrics or get_metrics()

    async def collect_usage(
        self,
        usage: UsageCounters,
        access_key_id: Optional[str] = None,
        user_id: Optional[str] = None,
        metadata: MetadataInput = None,
    ) -> bool:
        """Submit usage for persistence. Returns whether submission succeeded."""
        if self.channel is None:
            return await self.collect_usage_sync(usage, access_key_id, user_id, metadata)

        message = _build_message(usage, access_key_id, user_id, metadata)
        try:
            await self.channel.publish(message)
        except Exception as e:
            logger.error(
                "Failed to dispatch usage collection message",
                message_id=message.message_id,
                access_key_id=access_key_id,
                user_id=user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            self.metrics.record_collection("async", success=False)
            success = await self._handle_inline(message)
            self.metrics.record_collection("fallback", success=success)
            return success

        logger.info(
            "Usage collection message dispatched",
            message_id=message.message_id,
            access_key_id=access_key_id,
            user_id=user_id,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
        )
        self.metrics.record_collection("async", success=True)
        return True

    async def collect_usage_sync(
        self,
        usage: UsageCounters,
        access_key_id: Optional[str] = None,
        user_id: Optional[str] = None,
        metadata: MetadataInput = None,
    ) -> bool:
        """Persist usage inline. Returns True iff persistence succeeded."""
        message = _build_message(usage, access_key_id, user_id, metadata)
        success = await self._handle_inline(message)
        self.metrics.record_collection("sync", success=success)
        return success

    async def _handle_inline(self, message: UsageCollectionMessage) -> bool:
        try:
            await self.handler.handle(message)
        except Exception as e:
            logger.error(
                "Synchronous usage collection failed",
                message_id=message.message_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
        return True

    async def collect_batch_usage(self, batch: UsageCollectionBatch) -> BatchProcessResult:
        """Collect every item; failures are reported per item."""
        if batch.is_empty():
            return BatchProcessResult(total_items=0, success_count=0, failure_count=0)

        batch_id = f"batch_{uuid.uuid4().hex}"
        success_count = 0
        errors: List[str] = []

        logger.info(
            "Starting batch usage collection",
            batch_id=batch_id,
            total_items=batch.size,
            total_tokens=batch.total_tokens,
        )

        for index, item in enumerate(batch.items):
            metadata = item.metadata.with_extra(batch_id=batch_id, batch_index=index)
            try:
                success = await self.collect_usage(item.usage, item.access_key_id, item.user_id, metadata)
            except Exception as e:
                errors.append(f"Item {index}: {e}")
                logger.error(
                    "Batch item processing failed",
                    batch_id=batch_id,
                    item_index=index,
                    error=str(e),
                )
                continue

            if success:
                success_count += 1
            else:
                errors.append(f"Item {index}: Failed to collect usage data")

        result = BatchProcessResult(
            total_items=batch.size,
            success_count=success_count,
            failure_count=batch.size - success_count,
            errors=errors,
            batch_id=batch_id,
        )
        logger.info(
            "Batch usage collection completed",
            batch_id=batch_id,
            success_count=result.success_count,
            failure_count=result.failure_count,
            success_rate=result.success_rate,
        )
        return result
