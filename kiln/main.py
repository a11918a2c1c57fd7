"""
Kiln & Clay Storefront Backend
FastAPI application entry point

- Reservation reclaim sweep with a heartbeat on /health
- Rate limiting with SlowAPI
- Error sanitization middleware and domain error handler
- Health endpoint with Redis ping
- Request size limits
- HTTP client lifecycle management
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from kiln.api.deps import close_cms
from kiln.api.routes import admin, checkout, products, webhooks
from kiln.core.config import settings
from kiln.core.error_handler import ErrorSanitizationMiddleware, kiln_error_handler
from kiln.core.exceptions import KilnBaseError
from kiln.core.rate_limit import limiter, rate_limit_exceeded_handler
from kiln.core.redis_client import close_redis, get_redis
from kiln.core.utils import utcnow

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Background reclaim sweep
_reclaim_task: Optional[asyncio.Task] = None
_reclaim_heartbeat: dict = {
    "interval_minutes": settings.STOCK_CLEANUP_INTERVAL_MINUTES,
    "last_sweep_at": None,
    "last_clean_sweep_at": None,
    "attempts_reclaimed": 0,
    "failed_sweeps": 0,
}


# ============== RESERVATION RECLAIM SWEEP ==============

async def run_reclaim_sweep():
    """One pass over expired checkout attempts; feeds the /health heartbeat."""
    from kiln.services.stock_cleanup import release_expired_reservations

    _reclaim_heartbeat["last_sweep_at"] = utcnow().isoformat()

    stats = await release_expired_reservations()
    _reclaim_heartbeat["attempts_reclaimed"] += stats.get("reservations_released", 0)
    if stats.get("errors"):
        _reclaim_heartbeat["failed_sweeps"] += 1
        return
    _reclaim_heartbeat["last_clean_sweep_at"] = utcnow().isoformat()


async def reclaim_sweep_loop():
    """Sweep every STOCK_CLEANUP_INTERVAL_MINUTES until the app shuts down."""
    interval_seconds = settings.STOCK_CLEANUP_INTERVAL_MINUTES * 60
    logger.info(f"Reclaim sweep running every {settings.STOCK_CLEANUP_INTERVAL_MINUTES} min")

    while True:
        try:
            await run_reclaim_sweep()
        except Exception as e:
            _reclaim_heartbeat["failed_sweeps"] += 1
            logger.error(f"Reclaim sweep failed: {e}", exc_info=True)
        await asyncio.sleep(interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the reclaim sweep; close Redis and the CMS client on shutdown."""
    global _reclaim_task

    if settings.STOCK_CLEANUP_ENABLED:
        _reclaim_task = asyncio.create_task(reclaim_sweep_loop())
    else:
        logger.info("Reclaim sweep disabled (STOCK_CLEANUP_ENABLED=false); relying on checkout-time reclaim")

    yield

    if _reclaim_task and not _reclaim_task.done():
        _reclaim_task.cancel()
        try:
            await _reclaim_task
        except asyncio.CancelledError:
            logger.info("Reclaim sweep stopped")

    await close_cms()
    await close_redis()
    logger.info("Redis and CMS clients closed")


app = FastAPI(
    lifespan=lifespan,
    title="Kiln & Clay API",
    description="""
## Kiln & Clay Storefront API

Stock reservation and checkout settlement for a handmade-ceramics shop.

### Features
- **Products**: CMS content with live availability from the stock ledger
- **Checkout**: Stripe PaymentIntent and hosted Checkout Session flows with
  stock held for 30 minutes; out-of-stock units become made-to-order
- **Webhooks**: exactly-once settlement of Stripe payment outcomes
- **Admin**: CMS to ledger stock sync

### Rate Limits
- Checkout: 10 requests/minute
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "Health", "description": "Health check and monitoring endpoints"},
        {"name": "products", "description": "Product content and availability"},
        {"name": "checkout", "description": "Stock reservation and payment attempts"},
        {"name": "webhooks", "description": "Stripe payment outcome events"},
        {"name": "admin", "description": "Stock sync and reservation stats"},
    ],
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_exception_handler(KilnBaseError, kiln_error_handler)


# Request size limit middleware (1MB max, carts are small)
MAX_REQUEST_SIZE = 1024 * 1024


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests that exceed the size limit."""

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > MAX_REQUEST_SIZE:
            logger.warning(
                f"Request size limit exceeded: {content_length} bytes from "
                f"{request.client.host if request.client else 'unknown'}"
            )
            return JSONResponse(
                status_code=413,
                content={
                    "error": "request_too_large",
                    "message": f"Request body exceeds maximum size of {MAX_REQUEST_SIZE // 1024}KB",
                },
            )
        return await call_next(request)


app.add_middleware(RequestSizeLimitMiddleware)

# Error sanitization (catches unhandled exceptions)
app.add_middleware(ErrorSanitizationMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(products.router, prefix="/api", tags=["products"])
app.include_router(checkout.router, prefix="/api", tags=["checkout"])
app.include_router(webhooks.router, prefix="/api", tags=["webhooks"])
app.include_router(admin.router, prefix="/api", tags=["admin"])


@app.get("/", tags=["Health"])
async def root():
    return {
        "message": "Kiln & Clay API",
        "version": "1.0.0",
        "status": "operational"
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check with a Redis ping and the cleanup heartbeat.
    Returns 503 if Redis is unreachable.
    """
    health_status = {
        "status": "healthy",
        "redis": "unknown",
        "reclaim_sweep": _reclaim_heartbeat,
        "timestamp": utcnow().isoformat(),
    }

    try:
        client = await get_redis()
        await client.ping()
        health_status["redis"] = "connected"
    except Exception as e:
        health_status["redis"] = f"error: {type(e).__name__}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status
