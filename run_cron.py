#!/usr/bin/env python3
"""
Kiln & Clay - Standalone Reclaim Runner

Runs the expired-reservation sweep as its own process, for deployments that
disable the in-app scheduler (STOCK_CLEANUP_ENABLED=false) or run several
API replicas. Reclaim is idempotent, so running both is safe.

Requires REDIS_URL.
"""
import asyncio
import logging
import os
import signal
import sys

# Setup logging first
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)

# Validate required environment variables
REQUIRED_VARS = ["REDIS_URL"]
missing = [var for var in REQUIRED_VARS if not os.getenv(var)]
if missing:
    logger.error(f"Missing required environment variables: {missing}")
    sys.exit(1)

# Import after env validation
from kiln.core.config import settings
from kiln.core.redis_client import close_redis
from kiln.core.utils import utcnow
from kiln.services.stock_cleanup import get_reservation_stats, release_expired_reservations

# Graceful shutdown flag
_shutdown = False


def handle_shutdown(signum, frame):
    """Handle shutdown signals gracefully."""
    global _shutdown
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    _shutdown = True


async def main():
    """Main entry point for the reclaim service."""
    global _shutdown

    interval_seconds = settings.STOCK_CLEANUP_INTERVAL_MINUTES * 60

    logger.info("=" * 60)
    logger.info("Kiln & Clay Reclaim Service")
    logger.info("=" * 60)
    logger.info(f"Started at: {utcnow().isoformat()}")
    logger.info(f"Interval: {settings.STOCK_CLEANUP_INTERVAL_MINUTES} minutes")

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    try:
        while not _shutdown:
            stats = await release_expired_reservations()
            if stats["reservations_released"] or stats["errors"]:
                pending = await get_reservation_stats()
                logger.info(f"Sweep: {stats} pending: {pending}")

            # Sleep in short steps so a signal stops us promptly
            waited = 0
            while waited < interval_seconds and not _shutdown:
                await asyncio.sleep(1)
                waited += 1

    except Exception as e:
        logger.error(f"Reclaim service error: {e}")
        raise
    finally:
        await close_redis()
        logger.info("Reclaim service stopped.")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)
