"""
Error handling: the error envelope for pipeline errors, validation errors and anything unexpected
"""

import logging
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from lessonchat.core.config import settings
from lessonchat.deps.exceptions import ChatPipelineError, RateLimitedError
from lessonchat.middleware.logging import get_correlation_id
from lessonchat.schemas.chat import ChatError

logger = logging.getLogger(__name__)


def error_response(status_code: int, code: str, message: str, request: Request, details: dict = None,
                   retry_after: int = None) -> JSONResponse:
    body = ChatError.create(
        code=code,
        message=message,
        details=details,
        request_id=get_correlation_id(request),
        retry_after_seconds=retry_after,
    )
    headers = {"Retry-After": str(retry_after)} if retry_after is not None else None
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


async def chat_pipeline_error_handler(request: Request, exc: ChatPipelineError) -> JSONResponse:
    """Render a pipeline error; provider and persistence messages stay generic"""
    retry_after = exc.retry_after if isinstance(exc, RateLimitedError) else None

    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
        message = type(exc).default_message
        details = {}
    else:
        logger.warning(f"{exc.code} on {request.url.path}: {exc.message}")
        message = exc.message
        details = exc.details

    return error_response(exc.status_code, exc.code, message, request, details=details, retry_after=retry_after)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in error.get("loc", ())[1:]), "message": error.get("msg", "")}
        for error in exc.errors()
    ]
    logger.warning(f"Validation error on {request.url.path}: {errors}")
    return error_response(422, "VALIDATION_ERROR", "Request validation failed", request, details={"errors": errors})


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """
    Catches whatever escapes the route handlers and exception handlers:
    connection failures and timeouts become 503 SERVICE_UNAVAILABLE,
    everything else 500 INTERNAL_ERROR
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            return self._handle_unexpected_exception(e, request)

    def _handle_unexpected_exception(self, exc: Exception, request: Request) -> JSONResponse:
        logger.error(f"Unexpected exception: {type(exc).__name__} - {str(exc)}", exc_info=True)

        if isinstance(exc, (ConnectionError, TimeoutError)):
            return error_response(
                503,
                "SERVICE_UNAVAILABLE",
                "Service temporarily unavailable",
                request,
                details={"degraded": True},
            )

        details = {}
        # Include error details in development mode
        if settings.debug:
            details = {"exception_type": type(exc).__name__, "exception_message": str(exc)}

        return error_response(500, "INTERNAL_ERROR", "Internal server error", request, details=details)
