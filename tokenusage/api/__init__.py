"""
tokenusage - API Layer

Provides:
- Usage query and admin routes
- Capture middleware for forwarded provider responses
"""

from .middleware import (
    CaptureIdentity,
    UsageCaptureMiddleware,
    state_identity_resolver,
)
from .routes import (
    router as usage_router,
    get_pipeline,
    AggregateRequest,
    RebuildRequest,
    CleanupRequest,
)


__all__ = [
    # Routers
    "usage_router",
    "get_pipeline",
    # Request models
    "AggregateRequest",
    "RebuildRequest",
    "CleanupRequest",
    # Middleware
    "CaptureIdentity",
    "UsageCaptureMiddleware",
    "state_identity_resolver",
]
