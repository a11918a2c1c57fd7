"""
Tests for the Stock Ledger counters and Lua scripts.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

from kiln.core.exceptions import StockError, StoreUnavailableError
from kiln.services.stock_ledger import (
    SETTLE_DEDUCT,
    SETTLE_FINALIZE,
    SETTLE_RELEASE,
    StockLedger,
    StockLevel,
)


class TestStockLevel:
    def test_available_never_negative(self):
        assert StockLevel(slug="mug", stock=2, reserve=5).available == 0

    def test_to_dict(self):
        assert StockLevel(slug="mug", stock=5, reserve=2).to_dict() == {
            "slug": "mug",
            "stock": 5,
            "reserve": 2,
            "available": 3,
        }


class TestReads:
    @pytest.mark.asyncio
    async def test_missing_keys_read_as_zero(self, ledger):
        level = await ledger.get_level("unknown-vase")
        assert (level.stock, level.reserve, level.available) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_available_is_stock_minus_reserve(self, ledger, fake_redis):
        await fake_redis.set("stock:product:bowl", 5)
        await fake_redis.set("reserve:product:bowl", 2)
        assert await ledger.get_available("bowl") == 3

    @pytest.mark.asyncio
    async def test_available_clamped_when_reserve_exceeds_stock(self, ledger, fake_redis):
        await fake_redis.set("stock:product:bowl", 1)
        await fake_redis.set("reserve:product:bowl", 3)
        assert await ledger.get_available("bowl") == 0

    @pytest.mark.asyncio
    async def test_recorded_stock_none_for_garbage(self, ledger, fake_redis):
        await fake_redis.set("stock:product:bowl", "lots")
        assert await ledger.get_recorded_stock("bowl") is None
        assert await ledger.get_recorded_stock("missing") is None


class TestSeed:
    @pytest.mark.asyncio
    async def test_seed_creates_missing_counter(self, ledger):
        assert await ledger.seed("plate", 4) is True
        assert (await ledger.get_level("plate")).stock == 4

    @pytest.mark.asyncio
    async def test_seed_never_overwrites(self, ledger):
        await ledger.seed("plate", 4)
        assert await ledger.seed("plate", 9) is False
        assert (await ledger.get_level("plate")).stock == 4

    @pytest.mark.asyncio
    async def test_seed_rejects_negative(self, ledger):
        with pytest.raises(StockError):
            await ledger.seed("plate", -1)


class TestReserveUpTo:
    @pytest.mark.asyncio
    async def test_takes_what_is_available(self, ledger):
        await ledger.seed("cup", 3)
        assert await ledger.reserve_up_to("cup", 5) == 3
        level = await ledger.get_level("cup")
        assert (level.stock, level.reserve) == (3, 3)

    @pytest.mark.asyncio
    async def test_respects_existing_holds(self, ledger):
        await ledger.seed("cup", 3)
        await ledger.reserve_up_to("cup", 2)
        assert await ledger.reserve_up_to("cup", 2) == 1
        assert await ledger.reserve_up_to("cup", 1) == 0

    @pytest.mark.asyncio
    async def test_no_stock_record_takes_nothing(self, ledger):
        assert await ledger.reserve_up_to("ghost", 2) == 0
        assert (await ledger.get_level("ghost")).reserve == 0

    @pytest.mark.asyncio
    async def test_non_positive_quantity_is_noop(self, ledger):
        await ledger.seed("cup", 3)
        assert await ledger.reserve_up_to("cup", 0) == 0
        assert (await ledger.get_level("cup")).reserve == 0


class TestFinalizeDeduction:
    @pytest.mark.asyncio
    async def test_moves_stock_and_reserve_together(self, ledger):
        await ledger.seed("jug", 5)
        await ledger.reserve_up_to("jug", 2)

        result = await ledger.finalize_deduction("jug", 2)

        assert result.new_stock == 3
        assert result.previous_stock == 5
        assert result.drift is False
        level = await ledger.get_level("jug")
        assert (level.stock, level.reserve, level.available) == (3, 0, 3)

    @pytest.mark.asyncio
    async def test_drift_clamps_stock_at_zero(self, ledger, fake_redis):
        await fake_redis.set("stock:product:jug", 1)
        await fake_redis.set("reserve:product:jug", 3)

        result = await ledger.finalize_deduction("jug", 3)

        assert result.drift is True
        assert result.new_stock == 0
        level = await ledger.get_level("jug")
        assert (level.stock, level.reserve) == (0, 0)

    @pytest.mark.asyncio
    async def test_reserve_never_negative(self, ledger):
        await ledger.seed("jug", 5)
        await ledger.finalize_deduction("jug", 2)
        assert (await ledger.get_level("jug")).reserve == 0

    @pytest.mark.asyncio
    async def test_non_positive_amount_returns_none(self, ledger):
        await ledger.seed("jug", 5)
        assert await ledger.finalize_deduction("jug", 0) is None
        assert (await ledger.get_level("jug")).stock == 5


class TestDeductStock:
    @pytest.mark.asyncio
    async def test_leaves_reserve_untouched(self, ledger):
        await ledger.seed("tile", 4)
        await ledger.reserve_up_to("tile", 1)

        result = await ledger.deduct_stock("tile", 2)

        assert result.new_stock == 2
        level = await ledger.get_level("tile")
        assert (level.stock, level.reserve) == (2, 1)


class TestReleaseReservation:
    @pytest.mark.asyncio
    async def test_returns_hold_without_touching_stock(self, ledger):
        await ledger.seed("vase", 2)
        await ledger.reserve_up_to("vase", 2)

        assert await ledger.release_reservation("vase", 2) == 0
        level = await ledger.get_level("vase")
        assert (level.stock, level.reserve, level.available) == (2, 0, 2)

    @pytest.mark.asyncio
    async def test_clamps_underflow(self, ledger):
        await ledger.seed("vase", 2)
        await ledger.reserve_up_to("vase", 1)
        assert await ledger.release_reservation("vase", 5) == 0


class TestSettleHolds:
    GATE = "settled:attempt:session:cs_1"
    RECORD = "reserve:session:cs_1"

    async def settle(self, ledger, holds, mode, expected="committed", new="committed", require_record=True):
        return await ledger.settle_holds(
            holds, mode,
            gate_key=self.GATE, expected_gate=expected, new_gate=new, gate_ttl_seconds=60,
            record_key=self.RECORD, require_record=require_record,
        )

    @pytest.mark.asyncio
    async def test_finalize_moves_every_slug_and_drops_record(self, ledger, fake_redis):
        await ledger.seed("mug-blue", 3)
        await ledger.seed("vase", 5)
        await ledger.reserve_up_to("mug-blue", 1)
        await ledger.reserve_up_to("vase", 2)
        await fake_redis.set(self.GATE, "committed")
        await fake_redis.set(self.RECORD, "{}")

        results = await self.settle(ledger, {"mug-blue": 1, "vase": 2, "bowl": 0}, SETTLE_FINALIZE)

        assert [(r.slug, r.new_stock, r.new_reserve) for r in results] == [("mug-blue", 2, 0), ("vase", 3, 0)]
        assert await fake_redis.get(self.RECORD) is None
        assert await fake_redis.ttl(self.GATE) > 0

    @pytest.mark.asyncio
    async def test_second_settle_is_rejected_once_record_is_gone(self, ledger, fake_redis):
        await ledger.seed("vase", 5)
        await ledger.reserve_up_to("vase", 2)
        await fake_redis.set(self.GATE, "reclaimed")
        await fake_redis.set(self.RECORD, "{}")

        first = await self.settle(ledger, {"vase": 2}, SETTLE_RELEASE, "reclaimed", "reclaimed")
        second = await self.settle(ledger, {"vase": 2}, SETTLE_RELEASE, "reclaimed", "reclaimed")

        assert first[0].new_reserve == 0
        assert second is None
        level = await ledger.get_level("vase")
        assert (level.stock, level.reserve) == (5, 0)

    @pytest.mark.asyncio
    async def test_gate_mismatch_applies_nothing(self, ledger, fake_redis):
        await ledger.seed("vase", 5)
        await ledger.reserve_up_to("vase", 2)
        await fake_redis.set(self.GATE, "committed")
        await fake_redis.set(self.RECORD, "{}")

        assert await self.settle(ledger, {"vase": 2}, SETTLE_RELEASE, "released", "released") is None
        assert (await ledger.get_level("vase")).reserve == 2
        assert await fake_redis.get(self.RECORD) == "{}"

    @pytest.mark.asyncio
    async def test_deduct_flips_gate_and_keeps_reserve(self, ledger, fake_redis):
        await ledger.seed("tile", 1)
        await ledger.reserve_up_to("tile", 1)
        await fake_redis.set(self.GATE, "reclaimed")

        results = await self.settle(ledger, {"tile": 3}, SETTLE_DEDUCT, "reclaimed", "committed",
                                    require_record=False)

        assert results[0].drift is True
        assert results[0].new_stock == 0
        assert (await ledger.get_level("tile")).reserve == 1
        assert await fake_redis.get(self.GATE) == "committed"

    @pytest.mark.asyncio
    async def test_unknown_mode(self, ledger):
        with pytest.raises(ValueError):
            await self.settle(ledger, {"tile": 1}, "refund")


class TestRestock:
    @pytest.mark.asyncio
    async def test_applies_when_counter_unchanged(self, ledger):
        await ledger.seed("jug", 1)
        assert await ledger.restock("jug", 1, 4) is True
        assert await ledger.get_recorded_stock("jug") == 4

    @pytest.mark.asyncio
    async def test_rejected_after_concurrent_deduction(self, ledger):
        await ledger.seed("jug", 2)
        await ledger.finalize_deduction("jug", 1)

        assert await ledger.restock("jug", 2, 4) is False
        assert await ledger.get_recorded_stock("jug") == 1

    @pytest.mark.asyncio
    async def test_absent_or_garbage_counter(self, ledger, fake_redis):
        assert await ledger.restock("jug", None, 3) is True
        await fake_redis.set("stock:product:cup", "lots")
        assert await ledger.restock("cup", None, 2) is True
        assert await ledger.get_recorded_stock("cup") == 2
        assert await ledger.restock("cup", None, 5) is False


class TestStoreUnavailable:
    @pytest.mark.asyncio
    async def test_redis_errors_become_store_unavailable(self):
        client = MagicMock()
        client.register_script = MagicMock(return_value=AsyncMock())
        client.mget = AsyncMock(side_effect=RedisConnectionError("connection refused"))

        ledger = StockLedger(client)

        with pytest.raises(StoreUnavailableError):
            await ledger.get_available("mug")

    @pytest.mark.asyncio
    async def test_script_failure_becomes_store_unavailable(self):
        failing_script = AsyncMock(side_effect=RedisConnectionError("connection refused"))
        client = MagicMock()
        client.register_script = MagicMock(return_value=failing_script)

        ledger = StockLedger(client)

        with pytest.raises(StoreUnavailableError):
            await ledger.reserve_up_to("mug", 1)
