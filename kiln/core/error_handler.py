"""
Error handling and sanitization

- KilnBaseError subclasses -> JSON with their own HTTP status
- Backorder confirmation -> 409 body the storefront understands
- Anything else unhandled -> logged with traceback, generic 500 to the client
"""
import logging
import traceback
import uuid
from typing import Union

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from kiln.core.config import settings
from kiln.core.exceptions import BackorderConfirmationRequired, KilnBaseError

logger = logging.getLogger(__name__)

# Patterns that indicate internal/sensitive error information
SENSITIVE_PATTERNS = [
    "password",
    "secret",
    "token",
    "key",
    "credential",
    "redis://",
    "rediss://",
    "sk_live",
    "sk_test",
    "whsec_",
    "traceback",
    "file \"",
    "line ",
    "/kiln/",
]


def is_sensitive_error(message: str) -> bool:
    """Check if error message contains sensitive information."""
    message_lower = message.lower()
    return any(pattern in message_lower for pattern in SENSITIVE_PATTERNS)


def sanitize_error_message(error: Union[str, Exception]) -> str:
    """Sanitize an error message for safe client exposure."""
    message = error if isinstance(error, str) else str(error)

    if settings.DEBUG:
        return message

    if is_sensitive_error(message):
        return "An internal error occurred. Please try again later."

    if len(message) > 200:
        return message[:200] + "..."

    return message


async def kiln_error_handler(request: Request, exc: KilnBaseError) -> JSONResponse:
    """Render a domain error with its HTTP status."""
    if isinstance(exc, BackorderConfirmationRequired):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.message,
                "requiresBackorderConfirmation": True,
                "backorderBySlug": exc.backorder_by_slug,
            },
        )

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.to_dict()}")

    headers = {"Retry-After": "5"} if exc.status_code == 503 else None
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": sanitize_error_message(exc.message),
            "code": exc.code,
        },
        headers=headers,
    )


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """
    Last-resort handler for exceptions no route or handler caught.

    The client gets the same {error, code} shape as domain errors plus an
    error_id to quote to support; the traceback stays in the logs.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except HTTPException:
            raise
        except Exception as e:
            error_id = uuid.uuid4().hex[:12]
            logger.error(
                f"Unhandled exception [{error_id}] {request.method} {request.url.path}: "
                f"{type(e).__name__}: {e}\n{traceback.format_exc()}"
            )

            content = {
                "error": "An unexpected error occurred. Please try again later.",
                "code": "INTERNAL_ERROR",
                "error_id": error_id,
            }
            if settings.DEBUG:
                content["error"] = f"{type(e).__name__}: {e}"
            return JSONResponse(status_code=500, content=content)
