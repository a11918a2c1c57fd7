"""
Tests for reclaiming expired checkout attempts.
"""
from datetime import timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

from kiln.core.exceptions import StoreUnavailableError
from kiln.core.redis_client import (
    RECLAIM_SCHEDULE_KEY,
    SETTLEMENT_COMMITTED,
    SETTLEMENT_RELEASED,
    claim_attempt,
)
from kiln.core.utils import utcnow
from kiln.services.reservation import ReservationRequestItem
from kiln.services.stock_cleanup import get_reservation_stats, release_expired_reservations


async def start_attempt(engine, scheduler, kind, attempt_id, slug, qty, expires_in):
    """Reserve, persist and schedule one attempt the way checkout does."""
    result = await engine.reserve([ReservationRequestItem(slug=slug, quantity=qty)])
    record = await engine.save_record(kind, attempt_id, result.reserved_by_slug,
                                      ttl_seconds=1800, record_ttl_seconds=3600)
    await scheduler.schedule(kind, attempt_id, record.created_at + expires_in)
    return result


class TestReclaimExpired:
    @pytest.mark.asyncio
    async def test_expired_attempt_is_released(self, ledger, engine, scheduler, fake_redis):
        await ledger.seed("mug-blue", 2)
        await start_attempt(engine, scheduler, "payment_intent", "pi_1", "mug-blue", 1,
                            expires_in=timedelta(minutes=30))
        assert await ledger.get_available("mug-blue") == 1

        reclaimed = await scheduler.reclaim_expired(now=utcnow() + timedelta(minutes=31))

        assert reclaimed == ["pi_1"]
        level = await ledger.get_level("mug-blue")
        assert (level.stock, level.reserve, level.available) == (2, 0, 2)
        assert await fake_redis.get("reserve:payment_intent:pi_1") is None
        assert await fake_redis.zcard(RECLAIM_SCHEDULE_KEY) == 0

    @pytest.mark.asyncio
    async def test_repeat_reclaim_is_noop(self, ledger, engine, scheduler):
        await ledger.seed("mug-blue", 2)
        await start_attempt(engine, scheduler, "session", "cs_1", "mug-blue", 2,
                            expires_in=timedelta(minutes=30))
        later = utcnow() + timedelta(hours=1)

        assert await scheduler.reclaim_expired(now=later) == ["cs_1"]
        assert await scheduler.reclaim_expired(now=later) == []
        assert (await ledger.get_level("mug-blue")).reserve == 0

    @pytest.mark.asyncio
    async def test_unexpired_attempt_untouched(self, ledger, engine, scheduler):
        await ledger.seed("bowl", 1)
        await start_attempt(engine, scheduler, "session", "cs_1", "bowl", 1,
                            expires_in=timedelta(minutes=30))

        assert await scheduler.reclaim_expired(now=utcnow()) == []
        assert (await ledger.get_level("bowl")).reserve == 1

    @pytest.mark.asyncio
    async def test_settled_attempt_is_dropped_without_effect(self, ledger, engine, scheduler, fake_redis):
        """Webhook won the race: reclaim must not release the hold again."""
        await ledger.seed("bowl", 3)
        await start_attempt(engine, scheduler, "payment_intent", "pi_1", "bowl", 1,
                            expires_in=timedelta(minutes=30))
        await claim_attempt(fake_redis, "payment_intent", "pi_1", SETTLEMENT_COMMITTED, 3600)

        reclaimed = await scheduler.reclaim_expired(now=utcnow() + timedelta(hours=1))

        assert reclaimed == []
        assert (await ledger.get_level("bowl")).reserve == 1
        assert await fake_redis.zcard(RECLAIM_SCHEDULE_KEY) == 0

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried_on_next_sweep(self, ledger, engine, scheduler, fake_redis):
        await ledger.seed("vase", 5)
        await start_attempt(engine, scheduler, "payment_intent", "pi_1", "vase", 3,
                            expires_in=timedelta(minutes=30))
        later = utcnow() + timedelta(hours=1)

        original = ledger.settle_holds
        calls = {"n": 0}

        async def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise StoreUnavailableError("Redis timeout")
            return await original(*args, **kwargs)

        ledger.settle_holds = flaky

        with pytest.raises(StoreUnavailableError):
            await scheduler.reclaim_expired(now=later)
        assert (await ledger.get_level("vase")).reserve == 3
        assert await fake_redis.zcard(RECLAIM_SCHEDULE_KEY) == 1

        assert await scheduler.reclaim_expired(now=later) == ["pi_1"]
        level = await ledger.get_level("vase")
        assert (level.stock, level.reserve, level.available) == (5, 0, 5)
        assert await fake_redis.zcard(RECLAIM_SCHEDULE_KEY) == 0

    @pytest.mark.asyncio
    async def test_unfinished_release_is_completed(self, ledger, engine, scheduler, fake_redis):
        """A release that took its gate but never returned the hold."""
        await ledger.seed("bowl", 2)
        await start_attempt(engine, scheduler, "session", "cs_1", "bowl", 2,
                            expires_in=timedelta(minutes=30))
        await claim_attempt(fake_redis, "session", "cs_1", SETTLEMENT_RELEASED, 3600)

        assert await scheduler.reclaim_expired(now=utcnow() + timedelta(hours=1)) == ["cs_1"]
        assert (await ledger.get_level("bowl")).reserve == 0
        assert await fake_redis.get("settled:attempt:session:cs_1") == "released"
        assert await fake_redis.get("reserve:session:cs_1") is None

    @pytest.mark.asyncio
    async def test_missing_record_is_dropped(self, scheduler, fake_redis):
        await scheduler.schedule("session", "cs_gone", utcnow() - timedelta(minutes=1))

        assert await scheduler.reclaim_expired() == []
        assert await fake_redis.zcard(RECLAIM_SCHEDULE_KEY) == 0

    @pytest.mark.asyncio
    async def test_batch_limit(self, ledger, engine, scheduler):
        await ledger.seed("cup", 5)
        for n in range(3):
            await start_attempt(engine, scheduler, "session", f"cs_{n}", "cup", 1,
                                expires_in=timedelta(minutes=1))
        later = utcnow() + timedelta(minutes=5)

        first = await scheduler.reclaim_expired(now=later, limit=2)
        rest = await scheduler.reclaim_expired(now=later, limit=2)

        assert len(first) == 2
        assert len(rest) == 1
        assert (await ledger.get_level("cup")).reserve == 0

    @pytest.mark.asyncio
    async def test_cancel_schedule(self, scheduler, fake_redis):
        await scheduler.schedule("session", "cs_1", utcnow())
        await scheduler.cancel_schedule("session", "cs_1")
        assert await fake_redis.zcard(RECLAIM_SCHEDULE_KEY) == 0


class TestPendingStats:
    @pytest.mark.asyncio
    async def test_counts(self, scheduler):
        now = utcnow()
        await scheduler.schedule("session", "expired", now - timedelta(minutes=1))
        await scheduler.schedule("session", "soon", now + timedelta(minutes=2))
        await scheduler.schedule("session", "later", now + timedelta(minutes=20))

        stats = await scheduler.pending_stats(now=now)

        assert stats == {
            "total_reservations": 3,
            "active_reservations": 2,
            "expired_reservations": 1,
            "expiring_within_5min": 1,
        }


class TestCleanupJob:
    @pytest.mark.asyncio
    async def test_release_expired_reservations(self, ledger, engine, scheduler, fake_redis):
        await ledger.seed("plate", 4)
        for n in range(2):
            await start_attempt(engine, scheduler, "payment_intent", f"pi_{n}", "plate", 1,
                                expires_in=timedelta(minutes=-1))

        stats = await release_expired_reservations(fake_redis)

        assert stats["reservations_released"] == 2
        assert stats["errors"] == 0
        assert (await ledger.get_level("plate")).reserve == 0
        assert (await get_reservation_stats(fake_redis))["total_reservations"] == 0

    @pytest.mark.asyncio
    async def test_errors_are_counted_not_raised(self):
        client = MagicMock()
        client.register_script = MagicMock(return_value=AsyncMock())
        client.zrangebyscore = AsyncMock(side_effect=RedisConnectionError("down"))

        stats = await release_expired_reservations(client)

        assert stats["errors"] == 1
        assert stats["reservations_released"] == 0
