"""
Structured logging middleware
"""

import time
import logging
import uuid
from typing import Any, Dict
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
QUIET_PATHS = ("/healthz", "/readyz", "/docs", "/openapi.json", "/redoc")


def get_correlation_id(request: Request) -> str:
    """Correlation ID assigned by the middleware, or a fresh one outside it"""
    correlation_id = getattr(request.state, "correlation_id", None)
    return correlation_id or request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())


def client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.headers.get("X-Real-IP"):
        return request.headers["X-Real-IP"]
    return request.client.host if request.client else "unknown"


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one record per request and per response with a correlation ID,
    reusing the caller's ``X-Correlation-ID`` when it sends one.

    Streaming responses are logged when their headers go out, not when the
    stream ends.
    """

    def __init__(self, app, quiet_paths=QUIET_PATHS):
        super().__init__(app)
        self.quiet_paths = set(quiet_paths)

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.quiet_paths:
            return await call_next(request)

        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        started = time.perf_counter()

        logger.info("Request received", extra=self._record(
            request, correlation_id, "request", client_ip=client_ip(request),
        ))

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("Request failed", exc_info=True, extra=self._record(
                request, correlation_id, "error",
                error_type=type(e).__name__, process_time_ms=self._elapsed_ms(started),
            ))
            raise

        logger.info("Response sent", extra=self._record(
            request, correlation_id, "response",
            status_code=response.status_code, process_time_ms=self._elapsed_ms(started),
        ))
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 2)

    @staticmethod
    def _record(request: Request, correlation_id: str, event_type: str, **fields: Any) -> Dict[str, Any]:
        record = {
            "correlation_id": correlation_id,
            "method": request.method,
            "path": request.url.path,
            "event_type": event_type,
        }
        record.update(fields)
        return record
