"""
tokenusage - Usage Extractor

Pulls the `usage` object out of provider response bodies.

Handles both shapes a messages endpoint returns:
- a single JSON document with a top-level `usage` object
- a Server-Sent-Events stream whose `data:` records carry `usage` either
  at the top level (message_delta) or under `message` (message_start)

Extraction never raises. Callers get None when nothing usable is found.
"""

import json
import re
from typing import Any, Dict, Iterator, Optional, Union

from tokenusage.observability.metrics import MetricsCollector, get_metrics
from tokenusage.usage.counters import UsageCounters

Body = Union[bytes, bytearray, str]

_MODEL_PATTERN = re.compile(r'"model"\s*:\s*"([^"]+)"')
_MESSAGE_ID_PATTERN = re.compile(r'"id"\s*:\s*"(msg_[^"]+)"')


def _as_text(body: Optional[Body]) -> str:
    if body is None:
        return ""
    if isinstance(body, (bytes, bytearray)):
        return bytes(body).decode("utf-8", errors="replace")
    return body


def is_event_stream(text: str) -> bool:
    """True when the body looks like an SSE stream rather than one JSON document."""
    if text.startswith(("{", "[")):
        return False
    return text.startswith(("event:", "data:")) or "\ndata:" in text


def _load_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(text)
    except (ValueError, RecursionError):
        return None
    return data if isinstance(data, dict) else None


def _iter_stream_records(text: str) -> Iterator[Dict[str, Any]]:
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if not payload or payload == "[DONE]":
            continue
        record = _load_object(payload)
        if record is not None:
            yield record


def _usage_of(record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    usage = record.get("usage")
    if isinstance(usage, dict):
        return usage
    message = record.get("message")
    if isinstance(message, dict) and isinstance(message.get("usage"), dict):
        return message["usage"]
    return None


def extract_usage(body: Optional[Body]) -> Optional[UsageCounters]:
    """
    Extract usage counters from a response body.

    For streams the last non-empty usage record wins. Returns empty
    counters when usage objects exist but carry no tokens, and None when
    there is no usage object at all.
    """
    text = _as_text(body).strip()
    if not text:
        return None

    if is_event_stream(text):
        found = False
        latest: Optional[UsageCounters] = None
        for record in _iter_stream_records(text):
            usage = _usage_of(record)
            if usage is None:
                continue
            found = True
            counters = UsageCounters.from_usage_dict(usage)
            if not counters.is_empty():
                latest = counters
        if latest is not None:
            return latest
        return UsageCounters.empty() if found else None

    data = _load_object(text)
    if data is None:
        return None
    usage = data.get("usage")
    if not isinstance(usage, dict):
        return None
    return UsageCounters.from_usage_dict(usage)


def extract_model(body: Optional[Body]) -> Optional[str]:
    """Model name from a JSON body, falling back to a regex scan for streams."""
    text = _as_text(body).strip()
    if not text:
        return None
    if not is_event_stream(text):
        data = _load_object(text)
        if data is not None and isinstance(data.get("model"), str) and data["model"]:
            return data["model"]
    match = _MODEL_PATTERN.search(text)
    return match.group(1) if match else None


def extract_message_id(body: Optional[Body]) -> Optional[str]:
    """Provider message id (msg_...), used as the request id."""
    text = _as_text(body).strip()
    if not text:
        return None
    if not is_event_stream(text):
        data = _load_object(text)
        if data is not None and isinstance(data.get("id"), str) and data["id"]:
            return data["id"]
    match = _MESSAGE_ID_PATTERN.search(text)
    return match.group(1) if match else None


class UsageExtractor:
    """Runs the three extractions and records the outcome in metrics."""

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.metrics = metrics or get_metrics()

    def extract(self, body: Optional[Body]) -> Optional[UsageCounters]:
        counters = extract_usage(body)
        if counters is None:
            self.metrics.record_extraction("missing")
        elif counters.is_empty():
            self.metrics.record_extraction("empty")
        else:
            self.metrics.record_extraction("found")
        return counters

    def extract_model(self, body: Optional[Body]) -> Optional[str]:
        return extract_model(body)

    def extract_message_id(self, body: Optional[Body]) -> Optional[str]:
        return extract_message_id(body)
