"""
tokenusage - Usage Collection Message

The unit of work carried from the collector to the ingestion handler.
"""

import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Union

from tokenusage.usage.counters import UsageCounters

Scalar = Union[str, int, float, bool]

MESSAGE_TYPE = "usage_collection"
PRIORITY_IDENTIFIED = 10
PRIORITY_ORPHAN = 5

_TYPED_KEYS = ("request_id", "model", "stop_reason", "endpoint", "feature")
_OCCUR_TIME_KEYS = ("occurTime", "occur_time")


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


@dataclass(frozen=True)
class UsageMetadata:
    """
    Request context attached to a usage event.

    Known keys are typed fields; anything else scalar rides along in extra.
    """

    request_id: Optional[str] = None
    model: Optional[str] = None
    stop_reason: Optional[str] = None
    endpoint: Optional[str] = None
    feature: Optional[str] = None
    occur_time: Optional[datetime] = None
    extra: Dict[str, Scalar] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "UsageMetadata":
        """
        Build metadata from a loosely typed mapping.

        Recognised keys are kept only when scalar (converted to str);
        occurTime/occur_time only when a datetime. Other scalar keys go to
        extra and non-scalar values are dropped.
        """
        if not data:
            return cls()

        typed: Dict[str, Any] = {}
        extra: Dict[str, Scalar] = {}
        occur_time = None

        for key, value in data.items():
            if key in _TYPED_KEYS:
                if _is_scalar(value):
                    typed[key] = str(value)
            elif key in _OCCUR_TIME_KEYS:
                if isinstance(value, datetime):
                    occur_time = value
            elif _is_scalar(value):
                extra[str(key)] = value

        return cls(occur_time=occur_time, extra=extra, **typed)

    @classmethod
    def coerce(cls, value: Union["UsageMetadata", Mapping[str, Any], None]) -> "UsageMetadata":
        if isinstance(value, UsageMetadata):
            return value
        return cls.from_mapping(value)

    def with_extra(self, **kwargs: Scalar) -> "UsageMetadata":
        """Copy with additional extra keys (non-scalars ignored)."""
        merged = dict(self.extra)
        merged.update({k: v for k, v in kwargs.items() if _is_scalar(v)})
        return replace(self, extra=merged)

    def __hash__(self) -> int:
        return hash((
            self.request_id,
            self.model,
            self.stop_reason,
            self.endpoint,
            self.feature,
            self.occur_time,
            tuple(sorted(self.extra.items())),
        ))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "model": self.model,
            "stop_reason": self.stop_reason,
            "endpoint": self.endpoint,
            "feature": self.feature,
            "occur_time": self.occur_time.isoformat() if self.occur_time else None,
            "extra": dict(self.extra),
        }


@dataclass(frozen=True)
class UsageCollectionMessage:
    """
    One usage event for zero, one, or two identities.

    message_id is derived from the content, so the same inputs always map
    to the same id. Storage uses it to drop redelivered messages.
    """

    usage: UsageCounters
    access_key_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: UsageMetadata = field(default_factory=UsageMetadata)

    @property
    def message_type(self) -> str:
        return MESSAGE_TYPE

    @property
    def has_access_key(self) -> bool:
        return bool(self.access_key_id)

    @property
    def has_user(self) -> bool:
        return bool(self.user_id)

    @property
    def priority(self) -> int:
        if self.has_access_key or self.has_user:
            return PRIORITY_IDENTIFIED
        return PRIORITY_ORPHAN

    @property
    def message_id(self) -> str:
        canonical = json.dumps(
            {
                "usage": self.usage.to_dict(),
                "access_key_id": self.access_key_id,
                "user_id": self.user_id,
                "metadata": self.metadata.to_dict(),
            },
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            default=str,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "message_type": self.message_type,
            "priority": self.priority,
            "usage": self.usage.to_dict(),
            "access_key_id": self.access_key_id,
            "user_id": self.user_id,
            "metadata": self.metadata.to_dict(),
        }
