"""
tokenusage Core Module

Error taxonomy and pipeline configuration.
"""

from .config import (
    CollectionMode,
    PipelineSettings,
    get_collection_mode,
    DEFAULT_PROVIDER_PATHS,
)
from .errors import (
    ErrorType,
    ErrorDetails,
    UsagePipelineError,
    InfraError,
    SemanticError,
    PersistenceError,
    ChannelUnavailableError,
    IdentityNotFoundError,
    InvalidDimensionError,
    InvalidPeriodError,
)

__all__ = [
    # Config
    "CollectionMode",
    "PipelineSettings",
    "get_collection_mode",
    "DEFAULT_PROVIDER_PATHS",
    # Errors
    "ErrorType",
    "ErrorDetails",
    "UsagePipelineError",
    "InfraError",
    "SemanticError",
    "PersistenceError",
    "ChannelUnavailableError",
    "IdentityNotFoundError",
    "InvalidDimensionError",
    "InvalidPeriodError",
]
