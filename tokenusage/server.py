"""
tokenusage - Application Factory

Builds a FastAPI app around a UsagePipeline: usage API routes, the
capture middleware for forwarded provider calls, canonical error
responses, and health/metrics endpoints.

The channel workers start and stop with the application lifespan.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tokenusage import __version__
from tokenusage.api.middleware import IdentityResolver, UsageCaptureMiddleware, state_identity_resolver
from tokenusage.api.routes import router as usage_router
from tokenusage.core.config import PipelineSettings
from tokenusage.core.errors import InfraError, UsagePipelineError
from tokenusage.db.identity import InMemoryIdentityFinder
from tokenusage.db.memory import InMemoryUsageStore
from tokenusage.db.models import DimensionType
from tokenusage.observability import get_logger, metrics_endpoint
from tokenusage.pipeline import UsagePipeline, build_pipeline

logger = get_logger("server")


def _status_for(exc: UsagePipelineError) -> int:
    if isinstance(exc, InfraError):
        return 503
    if exc.code == "identity_not_found":
        return 404
    return 400


async def usage_exception_handler(request: Request, exc: UsagePipelineError):
    """Render pipeline errors in the canonical error shape."""
    headers = {
        "X-Error-Type": exc.error.type.value,
        "X-Error-Code": exc.error.code,
    }
    if exc.retryable:
        headers["Retry-After"] = "1"

    return JSONResponse(
        status_code=_status_for(exc),
        content=exc.error.to_dict(),
        headers=headers,
    )


async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=400,
        content={
            "error": {
                "code": "invalid_request",
                "message": str(exc),
                "type": "semantic_error",
                "retryable": False,
            }
        },
        headers={"X-Error-Type": "semantic_error", "X-Error-Code": "invalid_request"},
    )


def create_app(
    pipeline: UsagePipeline,
    identity_resolver: IdentityResolver = state_identity_resolver,
    capture: bool = True,
) -> FastAPI:
    """
    Create the application for a pipeline.

    Args:
        pipeline: Wired pipeline from build_pipeline()
        identity_resolver: Tells the capture middleware who made a call
        capture: Install UsageCaptureMiddleware
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await pipeline.start()
        logger.info(
            "tokenusage server ready",
            mode=pipeline.settings.mode.value,
            provider_paths=list(pipeline.settings.provider_paths),
        )
        yield
        await pipeline.stop()
        logger.info("tokenusage server stopped")

    app = FastAPI(
        title="tokenusage",
        description="Token usage collection and statistics for forwarded LLM provider calls",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.usage_pipeline = pipeline

    if capture:
        app.add_middleware(
            UsageCaptureMiddleware,
            listener=pipeline.listener,
            identity_resolver=identity_resolver,
        )

    app.include_router(usage_router)
    app.add_exception_handler(UsagePipelineError, usage_exception_handler)
    app.add_exception_handler(ValueError, value_error_handler)

    @app.get("/health")
    async def health_check():
        channel = pipeline.channel
        return {
            "status": "healthy" if channel is None or channel.is_running else "degraded",
            "version": __version__,
            "mode": pipeline.settings.mode.value,
            "channel": {
                "running": channel.is_running if channel else False,
                "depth": channel.depth if channel else 0,
                "dead_letters": len(channel.dead_letters) if channel else 0,
            },
        }

    @app.get("/metrics")
    async def prometheus_metrics():
        """Prometheus metrics in text exposition format."""
        return metrics_endpoint(pipeline.handler.metrics.registry)

    return app


def create_app_from_env(identity_resolver: Optional[IdentityResolver] = None) -> FastAPI:
    """
    Local-mode app: settings from the environment and in-memory storage.
    Identities are registered on the finders held by
    app.state.usage_pipeline.handler.
    """

    pipeline = build_pipeline(
        PipelineSettings.from_env(),
        InMemoryUsageStore(),
        InMemoryIdentityFinder(DimensionType.ACCESS_KEY),
        InMemoryIdentityFinder(DimensionType.USER),
    )
    return create_app(pipeline, identity_resolver or state_identity_resolver)
