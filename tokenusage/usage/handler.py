"""
tokenusage - Usage Collection Handler

Persists one UsageCollectionMessage as per-dimension usage log rows.

Flow per message:
    resolve access key (required when referenced)
    resolve user (optional, absent tolerated)
    stage one log entry per resolved identity
    commit, or roll back when nothing was staged

Every failure is rolled back and re-raised so the delivery layer can
redeliver or dead-letter the message.
"""

import time
from datetime import datetime
from enum import Enum
from typing import List, Optional

from tokenusage.db.identity import Identity, IdentityFinder
from tokenusage.db.models import DimensionType, UsageLogEntry, ensure_utc, utc_now
from tokenusage.db.store import UsageStore, UsageTransaction
from tokenusage.observability.logging import LogContext, get_logger, log_context
from tokenusage.observability.metrics import MetricsCollector, get_metrics
from tokenusage.observability.tracing import trace_pipeline_step
from tokenusage.usage.message import UsageCollectionMessage

logger = get_logger(__name__)


class HandleOutcome(str, Enum):
    """Result of handling one message."""
    COMMITTED = "committed"
    DUPLICATE = "duplicate"  # every staged row already existed
    NO_OP = "no_op"          # no identity resolved, nothing written


class UsageCollectionHandler:
    """Turns usage messages into usage log rows inside one transaction."""

    def __init__(
        self,
        store: UsageStore,
        access_key_finder: IdentityFinder,
        user_finder: Optional[IdentityFinder] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.access_key_finder = access_key_finder
        self.user_finder = user_finder
        self.metrics = metrics or get_metrics()

    async def __call__(self, message: UsageCollectionMessage) -> HandleOutcome:
        return await self.handle(message)

    @log_context()
    async def handle(self, message: UsageCollectionMessage) -> HandleOutcome:
        message_id = message.message_id
        LogContext.get_current().update(
            message_id=message_id,
            access_key_id=message.access_key_id,
            user_id=message.user_id,
        )
        logger.info(
            "Processing usage collection message",
            total_tokens=message.usage.total_tokens,
        )

        started = time.perf_counter()
        transaction: Optional[UsageTransaction] = None
        with trace_pipeline_step(
            "usage.handle_message",
            {
                "usage.message_id": message_id,
                "usage.access_key_id": message.access_key_id,
                "usage.user_id": message.user_id,
            },
        ) as span:
            try:
                access_key = await self._resolve_access_key(message)
                user = await self._resolve_user(message)
                occur_time = self._occur_time(message)

                transaction = self.store.begin()
                for entry in self._build_entries(message, access_key, user, occur_time):
                    transaction.stage(entry)

                if transaction.staged_count == 0:
                    await transaction.rollback()
                    logger.warning("No entities to save for usage collection message")
                    outcome = HandleOutcome.NO_OP
                else:
                    staged = transaction.staged_count
                    written = await transaction.commit()
                    outcome = HandleOutcome.COMMITTED if written > 0 else HandleOutcome.DUPLICATE
                    if written > 0:
                        self._record_tokens(message)
                    logger.info(
                        "Usage collection message processed",
                        saved_entities=written,
                        staged_entities=staged,
                        outcome=outcome.value,
                    )
            except Exception as e:
                if transaction is not None and transaction.is_active:
                    await transaction.rollback()
                self.metrics.record_message("failed", time.perf_counter() - started)
                logger.error(
                    "Failed to process usage collection message",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            span.set_attribute("usage.outcome", outcome.value)

        self.metrics.record_message(outcome.value, time.perf_counter() - started)
        return outcome

    async def _resolve_access_key(self, message: UsageCollectionMessage) -> Optional[Identity]:
        if not message.has_access_key:
            return None
        return await self.access_key_finder.find_required_by_id(message.access_key_id)

    async def _resolve_user(self, message: UsageCollectionMessage) -> Optional[Identity]:
        if not message.has_user:
            return None
        if self.user_finder is None:
            logger.debug("User context available but no user finder configured")
            return None
        user = await self.user_finder.find_by_id(message.user_id)
        if user is None:
            logger.debug("User not found, skipping user usage")
        return user

    @staticmethod
    def _occur_time(message: UsageCollectionMessage) -> datetime:
        if message.metadata.occur_time is not None:
            return ensure_utc(message.metadata.occur_time)
        return utc_now()

    def _build_entries(
        self,
        message: UsageCollectionMessage,
        access_key: Optional[Identity],
        user: Optional[Identity],
        occur_time: datetime,
    ) -> List[UsageLogEntry]:
        entries = []
        access_key_id = access_key.id if access_key else None
        user_id = user.id if user else None

        if access_key is not None:
            entries.append(self._entry(DimensionType.ACCESS_KEY, message, access_key_id, user_id, occur_time))
        if user is not None:
            entries.append(self._entry(DimensionType.USER, message, access_key_id, user_id, occur_time))
        return entries

    @staticmethod
    def _entry(
        dimension_type: DimensionType,
        message: UsageCollectionMessage,
        access_key_id: Optional[str],
        user_id: Optional[str],
        occur_time: datetime,
    ) -> UsageLogEntry:
        usage = message.usage
        metadata = message.metadata
        return UsageLogEntry(
            dimension_type=dimension_type,
            occur_time=occur_time,
            message_id=message.message_id,
            access_key_id=access_key_id,
            user_id=user_id,
            input_tokens=usage.input_tokens,
            cache_creation_input_tokens=usage.cache_creation_input_tokens,
            cache_read_input_tokens=usage.cache_read_input_tokens,
            output_tokens=usage.output_tokens,
            request_id=metadata.request_id,
            model=metadata.model,
            stop_reason=metadata.stop_reason,
            endpoint=metadata.endpoint,
            feature=metadata.feature,
        )

    def _record_tokens(self, message: UsageCollectionMessage) -> None:
        usage = message.usage
        self.metrics.record_tokens(
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_creation_tokens=usage.cache_creation_input_tokens,
            cache_read_tokens=usage.cache_read_input_tokens,
        )
