"""
tokenusage - Usage Counters

The four token counters reported in a provider `usage` object.
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping


def coerce_token_count(value: Any) -> int:
    """
    Lenient int conversion for counter values from untrusted JSON.

    Ints pass through, numeric strings and floats are truncated, and
    anything else (None, booleans, negatives, garbage) counts as 0.
    """
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, int):
        result = value
    elif isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return 0
        result = int(value)
    elif isinstance(value, str):
        try:
            result = int(float(value.strip()))
        except (ValueError, OverflowError):
            return 0
    else:
        return 0
    return result if result > 0 else 0


@dataclass(frozen=True)
class UsageCounters:
    """Token counts for one provider call."""

    input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    output_tokens: int = 0

    def __post_init__(self):
        for name in (
            "input_tokens",
            "cache_creation_input_tokens",
            "cache_read_input_tokens",
            "output_tokens",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an int, got {type(value).__name__}")
            if value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}")

    @classmethod
    def empty(cls) -> "UsageCounters":
        return cls()

    @classmethod
    def from_usage_dict(cls, usage: Mapping[str, Any]) -> "UsageCounters":
        """Build counters from a provider `usage` object."""
        return cls(
            input_tokens=coerce_token_count(usage.get("input_tokens")),
            cache_creation_input_tokens=coerce_token_count(usage.get("cache_creation_input_tokens")),
            cache_read_input_tokens=coerce_token_count(usage.get("cache_read_input_tokens")),
            output_tokens=coerce_token_count(usage.get("output_tokens")),
        )

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.cache_creation_input_tokens
            + self.cache_read_input_tokens
            + self.output_tokens
        )

    def is_empty(self) -> bool:
        return self.total_tokens == 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
            "output_tokens": self.output_tokens,
        }
