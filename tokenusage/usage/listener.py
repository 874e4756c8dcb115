"""
tokenusage - Forwarded Response Listener

Watches forwarded HTTP exchanges and reports the usage of successful
provider calls to the collector. Nothing raised here ever reaches the
client of the forwarded request.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence, Union

from tokenusage.core.config import DEFAULT_PROVIDER_PATHS
from tokenusage.db.models import utc_now
from tokenusage.observability.logging import get_logger
from tokenusage.usage.collector import UsageCollector
from tokenusage.usage.extractor import UsageExtractor
from tokenusage.usage.message import UsageMetadata

logger = get_logger(__name__)

FEATURE_HTTP_FORWARD = "http_forward"


@dataclass(frozen=True)
class ForwardExchange:
    """A completed request/response pair from the forwarding layer."""
    path: str
    method: str
    status_code: int
    body: Union[bytes, str, None]
    access_key_id: Optional[str] = None
    user_id: Optional[str] = None
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None


class HttpForwardListener:
    """Extracts usage from provider responses and submits it."""

    def __init__(
        self,
        collector: UsageCollector,
        extractor: Optional[UsageExtractor] = None,
        provider_paths: Sequence[str] = DEFAULT_PROVIDER_PATHS,
    ):
        self.collector = collector
        self.extractor = extractor or UsageExtractor(metrics=collector.metrics)
        self.provider_paths = tuple(provider_paths)

    def is_provider_call(self, path: str) -> bool:
        return any(pattern in path for pattern in self.provider_paths)

    def should_capture(self, path: str, status_code: int) -> bool:
        """Only successful responses on provider paths carry billable usage."""
        return 200 <= status_code < 300 and self.is_provider_call(path)

    async def on_after_forward(self, exchange: ForwardExchange) -> bool:
        """
        Handle one forwarded exchange.

        Returns True when usage was submitted successfully.
        """
        if not self.should_capture(exchange.path, exchange.status_code):
            return False

        try:
            return await self._process(exchange)
        except Exception as e:
            logger.error(
                "Failed to process provider response for token usage",
                error=str(e),
                error_type=type(e).__name__,
                path=exchange.path,
                rule_id=exchange.rule_id,
            )
            return False

    async def _process(self, exchange: ForwardExchange) -> bool:
        if not exchange.body:
            logger.debug("Empty response content, skipping token usage collection", path=exchange.path)
            return False

        usage = self.extractor.extract(exchange.body)
        if usage is None or usage.is_empty():
            logger.debug(
                "No usage data found in response",
                path=exchange.path,
                response_length=len(exchange.body),
            )
            return False

        metadata = self.build_metadata(exchange, occur_time=utc_now())
        success = await self.collector.collect_usage(
            usage,
            access_key_id=exchange.access_key_id,
            user_id=exchange.user_id,
            metadata=metadata,
        )

        logger.info(
            "Provider token usage collected",
            success=success,
            access_key_id=exchange.access_key_id,
            user_id=exchange.user_id,
            total_tokens=usage.total_tokens,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            path=exchange.path,
            rule_id=exchange.rule_id,
        )
        return success

    def build_metadata(self, exchange: ForwardExchange, occur_time: Optional[datetime] = None) -> UsageMetadata:
        extra = {"method": exchange.method}
        if exchange.rule_id is not None:
            extra["rule_id"] = exchange.rule_id
        if exchange.rule_name is not None:
            extra["rule_name"] = exchange.rule_name

        return UsageMetadata(
            request_id=self.extractor.extract_message_id(exchange.body),
            model=self.extractor.extract_model(exchange.body),
            endpoint=exchange.path,
            feature=FEATURE_HTTP_FORWARD,
            occur_time=occur_time or utc_now(),
            extra=extra,
        )
