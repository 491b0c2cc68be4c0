from fastapi import Request
import structlog
from starlette.middleware.base import BaseHTTPMiddleware

from approval_engine.domain import new_id


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds X-Request-ID into the structlog context for every engine log line of the call."""

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get("X-Request-ID") or new_id()

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id, path=request.url.path
        )
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()

        response.headers["X-Request-ID"] = correlation_id
        return response
