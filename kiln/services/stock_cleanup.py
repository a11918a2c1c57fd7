"""
Stock Reservation Cleanup Service

Periodic sweep that reclaims checkout attempts past their expiry. Checkout
already reclaims opportunistically; this catches holds on products nobody is
currently buying. Run every few minutes from the API lifespan or run_cron.py.
"""
import logging
from typing import Optional

import redis.asyncio as redis

from kiln.core.redis_client import RECLAIM_SCHEDULE_KEY, get_redis
from kiln.core.utils import utcnow
from kiln.services.reclaim_scheduler import ReclaimScheduler
from kiln.services.reservation import ReservationEngine
from kiln.services.stock_ledger import StockLedger

logger = logging.getLogger(__name__)


def build_scheduler(redis_client: redis.Redis) -> ReclaimScheduler:
    return ReclaimScheduler(ReservationEngine(StockLedger(redis_client)))


async def release_expired_reservations(redis_client: Optional[redis.Redis] = None) -> dict:
    """
    Reclaim every expired attempt, batch by batch, until none are left.

    Returns:
        dict with count of released reservations and errors
    """
    stats = {
        "reservations_released": 0,
        "batches": 0,
        "errors": 0,
    }

    try:
        client = redis_client if redis_client is not None else await get_redis()
        scheduler = build_scheduler(client)
        now = utcnow()
        while True:
            reclaimed = await scheduler.reclaim_expired(now=now)
            stats["batches"] += 1
            stats["reservations_released"] += len(reclaimed)
            if not await client.zcount(RECLAIM_SCHEDULE_KEY, "-inf", now.timestamp()):
                break
    except Exception as e:
        logger.error(f"Error in stock cleanup: {e}", exc_info=True)
        stats["errors"] += 1

    if stats["reservations_released"]:
        logger.info(f"Released {stats['reservations_released']} expired reservations")
    else:
        logger.debug("No expired reservations to clean up")
    return stats


async def get_reservation_stats(redis_client: Optional[redis.Redis] = None) -> dict:
    """
    Get current reservation statistics for monitoring.
    """
    client = redis_client if redis_client is not None else await get_redis()
    return await build_scheduler(client).pending_stats()


# For running as standalone script
if __name__ == "__main__":
    import asyncio

    async def main():
        print("Running stock reservation cleanup...")
        stats = await release_expired_reservations()
        print(f"Cleanup complete: {stats}")

        print("\nCurrent reservation stats:")
        reservation_stats = await get_reservation_stats()
        print(f"  Total: {reservation_stats['total_reservations']}")
        print(f"  Active: {reservation_stats['active_reservations']}")
        print(f"  Expired: {reservation_stats['expired_reservations']}")
        print(f"  Expiring soon: {reservation_stats['expiring_within_5min']}")

    asyncio.run(main())
