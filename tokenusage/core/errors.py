"""
tokenusage - Error Definitions

Error taxonomy for the usage pipeline with infra vs semantic classification.

Infra errors (storage, queue) are retryable by the delivery layer.
Semantic errors (unknown identity, bad dimension) are not fixed by a retry
of the same input, but are still propagated so the delivery layer can
dead-letter the message.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(str, Enum):
    """Error classification."""
    INFRA = "infra_error"
    SEMANTIC = "semantic_error"


@dataclass
class ErrorDetails:
    """Full error information for logs and result objects."""
    code: str
    message: str
    type: ErrorType

    # Context fields
    message_id: Optional[str] = None
    dimension_type: Optional[str] = None
    dimension_id: Optional[str] = None

    # Recovery fields
    retryable: bool = False

    # Debug fields
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "code": self.code,
            "message": self.message,
            "type": self.type.value,
            "retryable": self.retryable,
        }

        if self.message_id:
            result["message_id"] = self.message_id
        if self.dimension_type:
            result["dimension_type"] = self.dimension_type
        if self.dimension_id:
            result["dimension_id"] = self.dimension_id
        if self.details:
            result["details"] = self.details

        return {"error": result}


class UsagePipelineError(Exception):
    """Base exception for all usage pipeline errors."""

    def __init__(self, error: ErrorDetails):
        self.error = error
        super().__init__(error.message)

    @property
    def code(self) -> str:
        return self.error.code

    @property
    def retryable(self) -> bool:
        return self.error.retryable


# ============================================================
# Infra Errors (Retryable)
# ============================================================

class InfraError(UsagePipelineError):
    """Base class for infrastructure errors."""
    pass


class PersistenceError(InfraError):
    """Storage rejected or failed a write."""

    def __init__(self, message: str, message_id: Optional[str] = None, cause: Optional[str] = None):
        details = {"cause": cause} if cause else {}
        super().__init__(
            ErrorDetails(
                code="persistence_failed",
                message=message,
                type=ErrorType.INFRA,
                message_id=message_id,
                retryable=True,
                details=details,
            )
        )


class ChannelUnavailableError(InfraError):
    """The message channel cannot accept messages."""

    def __init__(self, reason: str = "channel not running"):
        super().__init__(
            ErrorDetails(
                code="channel_unavailable",
                message=f"Usage message channel unavailable: {reason}",
                type=ErrorType.INFRA,
                retryable=True,
                details={"reason": reason},
            )
        )


# ============================================================
# Semantic Errors
# ============================================================

class SemanticError(UsagePipelineError):
    """Base class for errors caused by the input itself."""
    pass


class IdentityNotFoundError(SemanticError):
    """An identity that was expected to exist could not be found."""

    def __init__(self, dimension_type: str, dimension_id: str, message_id: Optional[str] = None):
        super().__init__(
            ErrorDetails(
                code="identity_not_found",
                message=f"{dimension_type} '{dimension_id}' not found",
                type=ErrorType.SEMANTIC,
                message_id=message_id,
                dimension_type=dimension_type,
                dimension_id=dimension_id,
            )
        )


class InvalidDimensionError(SemanticError):
    """Unknown statistics dimension type."""

    def __init__(self, dimension_type: str):
        super().__init__(
            ErrorDetails(
                code="invalid_dimension",
                message=f"Invalid dimension type: {dimension_type}",
                type=ErrorType.SEMANTIC,
                dimension_type=dimension_type,
            )
        )


class InvalidPeriodError(SemanticError):
    """Unknown statistics period type."""

    def __init__(self, period_type: str):
        super().__init__(
            ErrorDetails(
                code="invalid_period",
                message=f"Invalid period type: {period_type}",
                type=ErrorType.SEMANTIC,
                details={"period_type": period_type},
            )
        )
