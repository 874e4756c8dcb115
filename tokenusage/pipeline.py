"""
tokenusage - Pipeline Assembly

Wires handler, channel, collector, listener, aggregator and query service
from PipelineSettings. Components take their collaborators explicitly;
this module is the only place that chooses them.

Usage:
    settings = PipelineSettings.from_env()
    pipeline = build_pipeline(settings, store, access_key_finder, user_finder)
    await pipeline.start()
    ...
    await pipeline.stop()
"""

from dataclasses import dataclass
from typing import Optional

from tokenusage.core.config import PipelineSettings
from tokenusage.db.identity import IdentityFinder
from tokenusage.db.models import DimensionType
from tokenusage.db.store import UsageStore
from tokenusage.observability.logging import get_logger
from tokenusage.observability.metrics import MetricsCollector, get_metrics
from tokenusage.usage.aggregator import UsageAggregateService
from tokenusage.usage.channel import InMemoryMessageChannel
from tokenusage.usage.collector import UsageCollector
from tokenusage.usage.extractor import UsageExtractor
from tokenusage.usage.handler import UsageCollectionHandler
from tokenusage.usage.listener import HttpForwardListener
from tokenusage.usage.query import UsageQueryService

logger = get_logger(__name__)


@dataclass
class UsagePipeline:
    settings: PipelineSettings
    store: UsageStore
    handler: UsageCollectionHandler
    channel: Optional[InMemoryMessageChannel]
    collector: UsageCollector
    listener: HttpForwardListener
    aggregator: UsageAggregateService
    query: UsageQueryService

    async def start(self) -> None:
        if self.channel is not None:
            await self.channel.start()
        logger.info("Usage pipeline started", mode=self.settings.mode.value)

    async def stop(self) -> None:
        if self.channel is not None:
            await self.channel.stop(drain=True)
        logger.info("Usage pipeline stopped")

    async def drain(self) -> None:
        """Wait until every queued message has been handled."""
        if self.channel is not None:
            await self.channel.join()


def build_pipeline(
    settings: PipelineSettings,
    store: UsageStore,
    access_key_finder: IdentityFinder,
    user_finder: Optional[IdentityFinder] = None,
    metrics: Optional[MetricsCollector] = None,
) -> UsagePipeline:
    metrics = metrics or get_metrics()

    handler = UsageCollectionHandler(
        store=store,
        access_key_finder=access_key_finder,
        user_finder=user_finder,
        metrics=metrics,
    )

    channel = None
    if settings.is_async:
        channel = InMemoryMessageChannel(
            handler.handle,
            workers=settings.workers,
            maxsize=settings.queue_maxsize,
            max_redeliveries=settings.max_redeliveries,
            metrics=metrics,
        )

    collector = UsageCollector(handler=handler, channel=channel, metrics=metrics)
    listener = HttpForwardListener(
        collector=collector,
        extractor=UsageExtractor(metrics=metrics),
        provider_paths=settings.provider_paths,
    )

    finders = {DimensionType.ACCESS_KEY: access_key_finder}
    if user_finder is not None:
        finders[DimensionType.USER] = user_finder

    return UsagePipeline(
        settings=settings,
        store=store,
        handler=handler,
        channel=channel,
        collector=collector,
        listener=listener,
        aggregator=UsageAggregateService(
            store,
            metrics=metrics,
            retention_days=settings.statistics_retention_days,
        ),
        query=UsageQueryService(store, identity_finders=finders),
    )
