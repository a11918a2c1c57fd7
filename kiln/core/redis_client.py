"""
Redis client for the Kiln storefront

Redis is the single source of truth for stock counters, reservation records,
idempotency markers and the reclaim schedule. There is no local fallback:
if Redis is unreachable the caller gets StoreUnavailableError and must retry.

Key layout lives here so every module agrees on it.
"""
import logging
from typing import Optional
import redis.asyncio as redis
from redis.exceptions import RedisError

from kiln.core.config import settings
from kiln.core.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

# Global Redis client (initialized lazily)
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Get Redis client, initializing if needed.

    Raises StoreUnavailableError if REDIS_URL is not configured or the
    first ping fails.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    if not settings.REDIS_URL:
        raise StoreUnavailableError("REDIS_URL is not configured")

    client = redis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True
    )
    try:
        await client.ping()
    except RedisError as e:
        await client.aclose()
        logger.error(f"Redis connection failed: {e}")
        raise StoreUnavailableError(f"Redis connection failed: {e}") from e

    logger.info("Redis connection established")
    _redis_client = client
    return _redis_client


async def close_redis():
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


# ----- Key layout -----

STOCK_KEY_PREFIX = "stock:product:"
RESERVE_KEY_PREFIX = "reserve:product:"
PROCESSED_EVENT_PREFIX = "processed:event:"
SETTLED_ATTEMPT_PREFIX = "settled:attempt:"
RECLAIM_SCHEDULE_KEY = "reservations:expiry"
STOCK_SYNC_LOCK_KEY = "stock_sync_lock"
STOCK_LAST_SYNC_KEY = "stock_last_sync_ts"

# Reservation record prefixes, by payment attempt kind
ATTEMPT_PAYMENT_INTENT = "payment_intent"
ATTEMPT_SESSION = "session"
ATTEMPT_KINDS = (ATTEMPT_PAYMENT_INTENT, ATTEMPT_SESSION)


def stock_key(slug: str) -> str:
    return f"{STOCK_KEY_PREFIX}{slug}"


def reserve_key(slug: str) -> str:
    return f"{RESERVE_KEY_PREFIX}{slug}"


def reservation_record_key(kind: str, attempt_id: str) -> str:
    if kind not in ATTEMPT_KINDS:
        raise ValueError(f"Unknown attempt kind: {kind!r}")
    return f"reserve:{kind}:{attempt_id}"


def processed_event_key(event_id: str) -> str:
    return f"{PROCESSED_EVENT_PREFIX}{event_id}"


def settled_attempt_key(kind: str, attempt_id: str) -> str:
    return f"{SETTLED_ATTEMPT_PREFIX}{kind}:{attempt_id}"


def schedule_member(kind: str, attempt_id: str) -> str:
    return f"{kind}:{attempt_id}"


def parse_schedule_member(member: str) -> tuple[str, str]:
    """Split a schedule member back into (kind, attempt_id)."""
    kind, _, attempt_id = member.partition(":")
    return kind, attempt_id


# ----- Settlement Idempotency -----

SETTLEMENT_COMMITTED = "committed"
SETTLEMENT_RELEASED = "released"
SETTLEMENT_RECLAIMED = "reclaimed"
EVENT_PROCESSING = "processing"
EVENT_DONE = "done"


async def claim_event(client: redis.Redis, event_id: str, ttl_seconds: int) -> bool:
    """Take the single-winner gate for a webhook event.

    Returns True if this caller is the first to see the event.
    """
    try:
        won = await client.set(processed_event_key(event_id), EVENT_PROCESSING, nx=True, ex=ttl_seconds)
    except RedisError as e:
        raise StoreUnavailableError(f"Redis claim failed for event {event_id}: {e}") from e
    return bool(won)


async def mark_event_done(client: redis.Redis, event_id: str, ttl_seconds: int) -> None:
    try:
        await client.set(processed_event_key(event_id), EVENT_DONE, ex=ttl_seconds)
    except RedisError as e:
        # The gate is already held; a failed overwrite only loses the status label
        logger.warning(f"Redis mark failed for event {event_id}: {e}")


async def release_event(client: redis.Redis, event_id: str) -> None:
    """Drop the event gate so a redelivery can be processed."""
    try:
        await client.delete(processed_event_key(event_id))
    except RedisError as e:
        logger.error(f"Redis release failed for event {event_id}: {e}")


async def claim_attempt(
    client: redis.Redis,
    kind: str,
    attempt_id: str,
    outcome: str,
    ttl_seconds: int,
) -> Optional[str]:
    """Record the terminal outcome of an attempt, first writer wins.

    Returns None if this caller won, otherwise the outcome already recorded.
    """
    key = settled_attempt_key(kind, attempt_id)
    existing = None
    try:
        for _ in range(2):
            if await client.set(key, outcome, nx=True, ex=ttl_seconds):
                return None
            existing = await client.get(key)
            if existing:
                break
    except RedisError as e:
        raise StoreUnavailableError(f"Redis claim failed for attempt {kind}:{attempt_id}: {e}") from e
    if isinstance(existing, bytes):
        existing = existing.decode("utf-8")
    if not existing:
        # Marker expired between SET NX and GET twice in a row
        logger.warning(f"Attempt marker for {kind}:{attempt_id} unreadable after claim conflict")
        raise StoreUnavailableError(f"Could not determine settlement state of {kind}:{attempt_id}")
    return existing


async def release_attempt(client: redis.Redis, kind: str, attempt_id: str) -> None:
    try:
        await client.delete(settled_attempt_key(kind, attempt_id))
    except RedisError as e:
        logger.error(f"Redis release failed for attempt {kind}:{attempt_id}: {e}")
