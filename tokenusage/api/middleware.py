"""
tokenusage - Usage Capture Middleware

Tees the body of provider responses passing through a FastAPI/Starlette
app and hands the completed exchange to HttpForwardListener once the
last chunk has gone out. Works for streamed (SSE) and plain responses.

Usage:
    app.add_middleware(UsageCaptureMiddleware, listener=pipeline.listener)

    # In the forwarding endpoint, tell the middleware who called:
    request.state.usage_access_key_id = access_key.id
    request.state.usage_user_id = access_key.owner_id
"""

import inspect
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Union

from starlette.background import BackgroundTask, BackgroundTasks
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from tokenusage.observability.logging import get_logger
from tokenusage.usage.listener import ForwardExchange, HttpForwardListener

logger = get_logger(__name__)


@dataclass(frozen=True)
class CaptureIdentity:
    """Who made the forwarded call, and through which rule."""
    access_key_id: Optional[str] = None
    user_id: Optional[str] = None
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None


IdentityResolver = Callable[[Request], Union[CaptureIdentity, Awaitable[CaptureIdentity]]]


def state_identity_resolver(request: Request) -> CaptureIdentity:
    """Read the caller identity the endpoint stored on request.state."""
    state = request.state
    return CaptureIdentity(
        access_key_id=getattr(state, "usage_access_key_id", None),
        user_id=getattr(state, "usage_user_id", None),
        rule_id=getattr(state, "usage_rule_id", None),
        rule_name=getattr(state, "usage_rule_name", None),
    )


class UsageCaptureMiddleware(BaseHTTPMiddleware):
    """
    Capture provider responses for usage collection.

    Responses that are not 2xx or not on a provider path pass through
    untouched. The listener runs as a background task after the response
    is complete, so it never delays or breaks the client's response.
    """

    def __init__(
        self,
        app: ASGIApp,
        listener: HttpForwardListener,
        identity_resolver: IdentityResolver = state_identity_resolver,
    ):
        super().__init__(app)
        self.listener = listener
        self.identity_resolver = identity_resolver

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        response = await call_next(request)

        path = request.url.path
        if not self.listener.should_capture(path, response.status_code):
            return response

        identity = self.identity_resolver(request)
        if inspect.isawaitable(identity):
            identity = await identity

        chunks: List[bytes] = []
        response.body_iterator = self._tee(response.body_iterator, chunks)

        task = BackgroundTask(
            self._report,
            path=path,
            method=request.method,
            status_code=response.status_code,
            chunks=chunks,
            identity=identity or CaptureIdentity(),
        )
        if response.background is None:
            response.background = task
        else:
            response.background = BackgroundTasks(tasks=[response.background, task])
        return response

    @staticmethod
    async def _tee(body: AsyncIterator, chunks: List[bytes]) -> AsyncIterator[bytes]:
        async for chunk in body:
            if isinstance(chunk, str):
                chunk = chunk.encode("utf-8")
            chunks.append(chunk)
            yield chunk

    async def _report(
        self,
        path: str,
        method: str,
        status_code: int,
        chunks: List[bytes],
        identity: CaptureIdentity,
    ) -> None:
        exchange = ForwardExchange(
            path=path,
            method=method,
            status_code=status_code,
            body=b"".join(chunks),
            access_key_id=identity.access_key_id,
            user_id=identity.user_id,
            rule_id=identity.rule_id,
            rule_name=identity.rule_name,
        )
        logger.debug("Captured provider response", path=path, response_length=len(exchange.body))
        await self.listener.on_after_forward(exchange)
