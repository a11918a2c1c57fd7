"""
Rate limiting for checkout endpoints

SlowAPI, in-memory storage, keyed by the caller's IP. Only routes decorated
with `limiter.limit` are throttled; Stripe webhook deliveries never are.
"""
import logging

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

from kiln.core.config import settings

logger = logging.getLogger(__name__)

CHECKOUT_RETRY_AFTER_SECONDS = 60


def get_client_ip(request: Request) -> str:
    """Left-most X-Forwarded-For entry behind the proxy, else the socket peer."""
    forwarded_for = request.headers.get("X-Forwarded-For", "")
    client_ip = forwarded_for.split(",")[0].strip()
    return client_ip or get_remote_address(request)


limiter = Limiter(
    key_func=get_client_ip,
    enabled=settings.RATE_LIMIT_ENABLED,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 in the same {error, code} shape as domain errors."""
    logger.warning(
        f"Checkout rate limit hit: ip={get_client_ip(request)} path={request.url.path} limit={exc.detail}"
    )
    return JSONResponse(
        status_code=429,
        content={
            "error": "Too many checkout attempts. Please wait a minute and try again.",
            "code": "RATE_LIMITED",
        },
        headers={"Retry-After": str(CHECKOUT_RETRY_AFTER_SECONDS)},
    )
