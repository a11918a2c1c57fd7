"""
Reservation Lifecycle Scheduler

Keeps a Redis sorted set of outstanding checkout attempts scored by expiry
time, and reclaims the ones that never reached a terminal webhook event.

Per attempt: CREATED -> COMMITTED | RELEASED | RECLAIMED. The attempt
idempotency record (SET NX) decides which path wins, so reclaim and the
webhook path never both apply their effect to the same attempt. The release
itself, the gate rewrite and the record deletion are one Lua step, so a
failure leaves either the whole hold or none of it; while the record exists
the next sweep picks the attempt up again.

reclaim_expired() is safe to call concurrently and repeatedly; it runs at the
start of every checkout and from the periodic sweep in stock_cleanup.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from redis.exceptions import RedisError

from kiln.core.config import settings
from kiln.core.exceptions import StoreUnavailableError
from kiln.core.redis_client import (
    RECLAIM_SCHEDULE_KEY,
    SETTLEMENT_COMMITTED,
    SETTLEMENT_RECLAIMED,
    claim_attempt,
    parse_schedule_member,
    schedule_member,
)
from kiln.core.utils import utcnow
from kiln.services.reservation import ReservationEngine
from kiln.services.stock_ledger import SETTLE_RELEASE

logger = logging.getLogger(__name__)


class ReclaimScheduler:
    """Time-ordered schedule of pending attempts and the reclaim sweep."""

    def __init__(self, engine: ReservationEngine) -> None:
        self.engine = engine
        self.ledger = engine.ledger
        self.redis = engine.redis

    async def schedule(self, kind: str, attempt_id: str, expires_at: datetime) -> None:
        try:
            await self.redis.zadd(
                RECLAIM_SCHEDULE_KEY,
                {schedule_member(kind, attempt_id): expires_at.timestamp()},
            )
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to schedule reclaim for {kind}:{attempt_id}: {e}") from e

    async def cancel_schedule(self, kind: str, attempt_id: str) -> None:
        try:
            await self.redis.zrem(RECLAIM_SCHEDULE_KEY, schedule_member(kind, attempt_id))
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to cancel reclaim for {kind}:{attempt_id}: {e}") from e

    async def reclaim_expired(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[str]:
        """
        Release every scheduled attempt whose expiry is at or before `now`.

        Returns the attempt ids this call actually reclaimed. Entries already
        settled elsewhere are dropped from the schedule without effect.
        """
        now = now or utcnow()
        limit = limit or settings.RECLAIM_BATCH_SIZE
        try:
            members = await self.redis.zrangebyscore(
                RECLAIM_SCHEDULE_KEY, "-inf", now.timestamp(), start=0, num=limit
            )
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to read reclaim schedule: {e}") from e

        reclaimed: List[str] = []
        for member in members:
            if isinstance(member, bytes):
                member = member.decode("utf-8")
            kind, attempt_id = parse_schedule_member(member)
            if await self._reclaim_one(kind, attempt_id):
                reclaimed.append(attempt_id)
            try:
                await self.redis.zrem(RECLAIM_SCHEDULE_KEY, member)
            except RedisError as e:
                raise StoreUnavailableError(f"Failed to drop reclaim entry {member}: {e}") from e

        if reclaimed:
            logger.info(f"Reclaimed {len(reclaimed)} expired reservations: {reclaimed}")
        return reclaimed

    async def _reclaim_one(self, kind: str, attempt_id: str) -> bool:
        settled_by = await claim_attempt(
            self.redis, kind, attempt_id, SETTLEMENT_RECLAIMED,
            settings.processed_event_ttl_seconds,
        )
        if settled_by == SETTLEMENT_COMMITTED:
            logger.debug(f"Attempt {kind}:{attempt_id} already committed, skipping reclaim")
            return False

        # A release or reclaim that failed midway left its gate behind; the
        # stored record is still there until the hold is actually returned
        expected = settled_by or SETTLEMENT_RECLAIMED
        record = await self.engine.load_record(kind, attempt_id)
        if record is None:
            if settled_by is None:
                logger.warning(f"Expired attempt {kind}:{attempt_id} has no reservation record, nothing to release")
            else:
                logger.debug(f"Attempt {kind}:{attempt_id} already {settled_by}, skipping reclaim")
            return False
        if settled_by is not None:
            logger.warning(f"Resuming unfinished {settled_by} of {kind}:{attempt_id}")

        settled = await self.engine.settle(record, SETTLE_RELEASE, expected=expected, outcome=expected)
        if settled is None:
            logger.info(f"Attempt {kind}:{attempt_id} settled concurrently, skipping reclaim")
            return False
        logger.info(f"Reclaimed {kind}:{attempt_id} held={record.reserved_by_slug}")
        return True

    async def pending_stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Current schedule statistics for monitoring."""
        now = now or utcnow()
        soon = now + timedelta(minutes=5)
        try:
            total = await self.redis.zcard(RECLAIM_SCHEDULE_KEY)
            expired = await self.redis.zcount(RECLAIM_SCHEDULE_KEY, "-inf", now.timestamp())
            expiring = await self.redis.zcount(
                RECLAIM_SCHEDULE_KEY, f"({now.timestamp()}", soon.timestamp()
            )
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to read reclaim schedule: {e}") from e

        return {
            "total_reservations": int(total or 0),
            "active_reservations": int(total or 0) - int(expired or 0),
            "expired_reservations": int(expired or 0),
            "expiring_within_5min": int(expiring or 0),
        }
