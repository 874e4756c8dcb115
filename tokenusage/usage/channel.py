"""
tokenusage - Message Channel

Asynchronous delivery of usage messages to the ingestion handler.

InMemoryMessageChannel is an asyncio priority queue drained by a pool of
worker tasks. Higher-priority messages go first, FIFO within a priority.
Delivery is at-least-once: a handler failure puts the message back on the
queue until max_redeliveries is exhausted, then it is dead-lettered.
"""

import asyncio
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

from tokenusage.core.errors import ChannelUnavailableError
from tokenusage.observability.logging import get_logger
from tokenusage.observability.metrics import MetricsCollector, get_metrics
from tokenusage.usage.message import UsageCollectionMessage

logger = get_logger(__name__)

MessageHandler = Callable[[UsageCollectionMessage], Awaitable[Any]]


class MessageChannel(ABC):
    """Where the collector sends messages in asynchronous mode."""

    @abstractmethod
    async def publish(self, message: UsageCollectionMessage) -> None:
        """Enqueue a message. Raises ChannelUnavailableError when it cannot."""


@dataclass
class DeadLetter:
    """A message that failed on every delivery attempt."""
    message: UsageCollectionMessage
    attempts: int
    error: str
    error_type: str


class InMemoryMessageChannel(MessageChannel):
    """
    Priority queue plus worker pool.

    Usage:
        channel = InMemoryMessageChannel(handler, workers=2)
        await channel.start()
        await channel.publish(message)
        ...
        await channel.stop()  # drains the queue first
    """

    def __init__(
        self,
        handler: MessageHandler,
        workers: int = 2,
        maxsize: int = 10000,
        max_redeliveries: int = 3,
        metrics: Optional[MetricsCollector] = None,
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if max_redeliveries < 0:
            raise ValueError("max_redeliveries must be >= 0")
        self.handler = handler
        self.workers = workers
        self.maxsize = maxsize
        self.max_redeliveries = max_redeliveries
        self.metrics = metrics or get_metrics()
        self.dead_letters: List[DeadLetter] = []

        self._queue: Optional[asyncio.PriorityQueue] = None
        self._tasks: List[asyncio.Task] = []
        self._sequence = itertools.count()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def depth(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def start(self) -> None:
        if self._running:
            return
        self._queue = asyncio.PriorityQueue(maxsize=self.maxsize)
        self._running = True
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"usage-channel-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info("Usage channel started", workers=self.workers, maxsize=self.maxsize)

    async def stop(self, drain: bool = True) -> None:
        """Stop accepting messages, optionally wait for the queue to empty, cancel workers."""
        if not self._running:
            return
        self._running = False
        if drain and self._queue is not None:
            await self._queue.join()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Usage channel stopped", dead_letters=len(self.dead_letters))

    async def join(self) -> None:
        """Wait until every published message has been handled or dead-lettered."""
        if self._queue is not None:
            await self._queue.join()

    async def publish(self, message: UsageCollectionMessage) -> None:
        if not self._running or self._queue is None:
            raise ChannelUnavailableError("channel not running")
        self._enqueue(message, attempt=1)

    def _enqueue(self, message: UsageCollectionMessage, attempt: int) -> None:
        try:
            self._queue.put_nowait((-message.priority, next(self._sequence), message, attempt))
        except asyncio.QueueFull:
            raise ChannelUnavailableError("queue full") from None
        self.metrics.set_queue_depth(self._queue.qsize())

    async def _worker(self, index: int) -> None:
        while True:
            _, _, message, attempt = await self._queue.get()
            self.metrics.set_queue_depth(self._queue.qsize())
            try:
                await self.handler(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._on_failure(message, attempt, e)
            finally:
                self._queue.task_done()

    def _on_failure(self, message: UsageCollectionMessage, attempt: int, error: Exception) -> None:
        if attempt <= self.max_redeliveries:
            logger.warning(
                "Usage message failed, redelivering",
                message_id=message.message_id,
                attempt=attempt,
                error=str(error),
            )
            try:
                self._enqueue(message, attempt + 1)
                return
            except ChannelUnavailableError:
                pass  # queue full, dead-letter below

        self.dead_letters.append(
            DeadLetter(
                message=message,
                attempts=attempt,
                error=str(error),
                error_type=type(error).__name__,
            )
        )
        self.metrics.record_message("dead_lettered")
        logger.error(
            "Usage message dead-lettered",
            message_id=message.message_id,
            attempts=attempt,
            error=str(error),
            error_type=type(error).__name__,
        )
