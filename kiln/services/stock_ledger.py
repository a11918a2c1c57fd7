"""
Stock Ledger

Per-product inventory counters held in Redis:
- stock:product:<slug>    ready-to-ship units
- reserve:product:<slug>  units held by unsettled checkout attempts

Available-to-promise is max(0, stock - reserve). Every compound
check-and-mutate runs as one Lua script on the Redis server, so concurrent
handlers never interleave a read and a write on the same product.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from kiln.core.exceptions import StockError, StoreUnavailableError
from kiln.core.redis_client import stock_key, reserve_key

logger = logging.getLogger(__name__)

# KEYS: stock, reserve. ARGV: wanted quantity.
# Returns the quantity actually taken (0..wanted) and increments reserve by it.
RESERVE_LUA = """
local stock = tonumber(redis.call("GET", KEYS[1]) or "0") or 0
local reserved = tonumber(redis.call("GET", KEYS[2]) or "0") or 0
local want = tonumber(ARGV[1]) or 0
if want <= 0 then
  return 0
end

local available = stock - reserved
if available <= 0 then
  return 0
end

local take = want
if take > available then take = available end

redis.call("INCRBY", KEYS[2], take)
return take
"""

# KEYS: stock, reserve. ARGV: amount, release_hold ("1" / "0").
# Returns {new_stock, drift, previous_stock}; drift = 1 when amount exceeded stock.
FINALIZE_LUA = """
local stock = tonumber(redis.call("GET", KEYS[1]) or "0") or 0
local amount = tonumber(ARGV[1]) or 0

local drift = 0
if amount > stock then drift = 1 end

local new_stock = stock - amount
if new_stock < 0 then new_stock = 0 end
redis.call("SET", KEYS[1], new_stock)

if ARGV[2] == "1" then
  local reserved = tonumber(redis.call("GET", KEYS[2]) or "0") or 0
  local new_reserve = reserved - amount
  if new_reserve < 0 then new_reserve = 0 end
  redis.call("SET", KEYS[2], new_reserve)
end

return {new_stock, drift, stock}
"""

# KEYS: reserve. ARGV: amount.
# Returns {new_reserve, underflow}; reserve never goes below zero.
RELEASE_LUA = """
local reserved = tonumber(redis.call("GET", KEYS[1]) or "0") or 0
local amount = tonumber(ARGV[1]) or 0

local underflow = 0
local new_reserve = reserved - amount
if new_reserve < 0 then
  new_reserve = 0
  underflow = 1
end

redis.call("SET", KEYS[1], new_reserve)
return {new_reserve, underflow}
"""

# KEYS: attempt gate, reservation record, then (stock, reserve) per held slug.
# ARGV: mode, expected gate, new gate, gate ttl, require_record ("1" / "0"),
#       then one amount per slug.
# mode "finalize" drops stock and reserve, "release" drops reserve only,
# "deduct" drops stock only. Returns nil without touching anything when the
# gate no longer reads the expected outcome, or when require_record is set and
# the record is gone. Otherwise applies every slug, sets the new gate, deletes
# the record and returns {1, previous_stock, new_stock, new_reserve, drift,
# underflow, ...}.
SETTLE_LUA = """
if redis.call("GET", KEYS[1]) ~= ARGV[2] then
  return false
end
if ARGV[5] == "1" and redis.call("EXISTS", KEYS[2]) == 0 then
  return false
end

local mode = ARGV[1]
local out = {1}
local arg = 6
for k = 3, #KEYS, 2 do
  local amount = tonumber(ARGV[arg]) or 0
  arg = arg + 1
  local stock = tonumber(redis.call("GET", KEYS[k]) or "0") or 0
  local reserved = tonumber(redis.call("GET", KEYS[k + 1]) or "0") or 0
  local previous = stock
  local drift = 0
  local underflow = 0

  if mode ~= "release" then
    if amount > stock then drift = 1 end
    stock = stock - amount
    if stock < 0 then stock = 0 end
    redis.call("SET", KEYS[k], stock)
  end
  if mode ~= "deduct" then
    reserved = reserved - amount
    if reserved < 0 then
      reserved = 0
      underflow = 1
    end
    redis.call("SET", KEYS[k + 1], reserved)
  end

  table.insert(out, previous)
  table.insert(out, stock)
  table.insert(out, reserved)
  table.insert(out, drift)
  table.insert(out, underflow)
end

redis.call("SET", KEYS[1], ARGV[3], "EX", ARGV[4])
redis.call("DEL", KEYS[2])
return out
"""

# KEYS: stock. ARGV: expected value ("" for absent or not an integer), new value.
# Returns 1 if the counter still read as expected and was overwritten, else 0.
RESTOCK_LUA = """
local current = redis.call("GET", KEYS[1])
local matches
if ARGV[1] == "" then
  matches = (not current) or (not string.match(current, "^%-?%d+$"))
else
  matches = current and tonumber(current) == tonumber(ARGV[1])
end
if not matches then
  return 0
end
redis.call("SET", KEYS[1], ARGV[2])
return 1
"""


def _to_int(raw) -> int:
    """Parse a counter value; missing or garbage reads as 0."""
    if raw is None:
        return 0
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


@dataclass
class StockLevel:
    """Point-in-time view of one product's counters."""
    slug: str
    stock: int
    reserve: int

    @property
    def available(self) -> int:
        return max(0, self.stock - self.reserve)

    def to_dict(self) -> dict:
        return {
            "slug": self.slug,
            "stock": self.stock,
            "reserve": self.reserve,
            "available": self.available,
        }


@dataclass
class DeductionResult:
    """Outcome of a permanent stock deduction."""
    slug: str
    amount: int
    previous_stock: int
    new_stock: int
    drift: bool  # stock was lower than the amount deducted


@dataclass
class HoldSettlement:
    """One slug's counters after an attempt was settled."""
    slug: str
    amount: int
    previous_stock: int
    new_stock: int
    new_reserve: int
    drift: bool
    underflow: bool


SETTLE_FINALIZE = "finalize"
SETTLE_RELEASE = "release"
SETTLE_DEDUCT = "deduct"
SETTLE_MODES = (SETTLE_FINALIZE, SETTLE_RELEASE, SETTLE_DEDUCT)


class StockLedger:
    """The only legal mutation primitives on the stock/reserve counters."""

    def __init__(self, redis_client: redis.Redis) -> None:
        self.redis = redis_client
        self._reserve_script = redis_client.register_script(RESERVE_LUA)
        self._finalize_script = redis_client.register_script(FINALIZE_LUA)
        self._release_script = redis_client.register_script(RELEASE_LUA)
        self._settle_script = redis_client.register_script(SETTLE_LUA)
        self._restock_script = redis_client.register_script(RESTOCK_LUA)

    async def get_level(self, slug: str) -> StockLevel:
        try:
            stock, reserve = await self.redis.mget(stock_key(slug), reserve_key(slug))
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to read stock for {slug}: {e}") from e
        return StockLevel(slug=slug, stock=_to_int(stock), reserve=_to_int(reserve))

    async def get_available(self, slug: str) -> int:
        """Available-to-promise quantity; never negative."""
        return (await self.get_level(slug)).available

    async def get_recorded_stock(self, slug: str) -> Optional[int]:
        """Raw stock counter, or None when the key is absent or not an integer."""
        try:
            raw = await self.redis.get(stock_key(slug))
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to read stock for {slug}: {e}") from e
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            return None

    async def has_stock_record(self, slug: str) -> bool:
        try:
            return await self.redis.exists(stock_key(slug)) > 0
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to read stock for {slug}: {e}") from e

    async def seed(self, slug: str, quantity: int) -> bool:
        """
        First-touch initialization from the CMS mirror.

        Never overwrites an existing value. Returns True if the key was created.
        """
        if quantity < 0:
            raise StockError("Cannot seed negative stock", slug=slug, requested_qty=quantity)
        try:
            created = await self.redis.set(stock_key(slug), quantity, nx=True)
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to seed stock for {slug}: {e}") from e
        if created:
            logger.info(f"Seeded stock for {slug}: {quantity}")
        return bool(created)

    async def restock(self, slug: str, expected: Optional[int], quantity: int) -> bool:
        """
        Overwrite stock only if it still reads `expected` (None: absent or garbage).

        Returns False when a concurrent deduction moved the counter first.
        """
        if quantity < 0:
            raise StockError("Cannot set negative stock", slug=slug, requested_qty=quantity)
        try:
            applied = await self._restock_script(
                keys=[stock_key(slug)],
                args=["" if expected is None else expected, quantity],
            )
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to restock {slug}: {e}") from e
        return bool(_to_int(applied))

    async def reserve_up_to(self, slug: str, quantity: int) -> int:
        """Atomically hold up to `quantity` units; returns how many were taken."""
        if quantity <= 0:
            return 0
        try:
            taken = await self._reserve_script(
                keys=[stock_key(slug), reserve_key(slug)],
                args=[quantity],
            )
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to reserve stock for {slug}: {e}") from e
        return _to_int(taken)

    async def finalize_deduction(self, slug: str, amount: int) -> Optional[DeductionResult]:
        """
        Commit a held amount: stock -= amount (clamped at 0) and
        reserve -= amount, in a single server-side step.

        Returns None for non-positive amounts. Drift (stock already lower
        than amount) is logged, never raised.
        """
        return await self._deduct(slug, amount, release_hold=True)

    async def deduct_stock(self, slug: str, amount: int) -> Optional[DeductionResult]:
        """Deduct stock without touching reserve (the hold was already returned)."""
        return await self._deduct(slug, amount, release_hold=False)

    async def _deduct(self, slug: str, amount: int, release_hold: bool) -> Optional[DeductionResult]:
        if amount <= 0:
            return None
        try:
            new_stock, drift, previous = await self._finalize_script(
                keys=[stock_key(slug), reserve_key(slug)],
                args=[amount, "1" if release_hold else "0"],
            )
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to deduct stock for {slug}: {e}") from e

        result = DeductionResult(
            slug=slug,
            amount=amount,
            previous_stock=_to_int(previous),
            new_stock=_to_int(new_stock),
            drift=bool(_to_int(drift)),
        )
        if result.drift:
            logger.warning(
                f"INVENTORY_DRIFT: slug={slug} deducted={amount} "
                f"stock_before={result.previous_stock} clamped_to=0"
            )
        return result

    async def release_reservation(self, slug: str, amount: int) -> int:
        """Return held units to the pool (reserve only, stock untouched)."""
        if amount <= 0:
            return 0
        try:
            new_reserve, underflow = await self._release_script(
                keys=[reserve_key(slug)],
                args=[amount],
            )
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to release reservation for {slug}: {e}") from e
        if _to_int(underflow):
            logger.warning(f"Reserve underflow for {slug}: released {amount}, clamped to 0")
        return _to_int(new_reserve)

    async def settle_holds(
        self,
        holds: Dict[str, int],
        mode: str,
        *,
        gate_key: str,
        expected_gate: str,
        new_gate: str,
        gate_ttl_seconds: int,
        record_key: str,
        require_record: bool,
    ) -> Optional[List[HoldSettlement]]:
        """
        Settle every held slug of one attempt in a single server-side step.

        The counters, the attempt gate and the reservation record move
        together or not at all. Returns None when the gate no longer reads
        `expected_gate` or a required record is already gone: another path
        settled the attempt first.
        """
        if mode not in SETTLE_MODES:
            raise ValueError(f"Unknown settle mode: {mode!r}")
        held = [(slug, amount) for slug, amount in holds.items() if amount > 0]
        keys = [gate_key, record_key]
        for slug, _ in held:
            keys.extend([stock_key(slug), reserve_key(slug)])
        args = [mode, expected_gate, new_gate, gate_ttl_seconds, "1" if require_record else "0"]
        args.extend(amount for _, amount in held)

        try:
            raw = await self._settle_script(keys=keys, args=args)
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to settle holds ({mode}) for {gate_key}: {e}") from e
        if not raw:
            return None

        values = [_to_int(value) for value in raw[1:]]
        results = []
        for n, (slug, amount) in enumerate(held):
            previous, new_stock, new_reserve, drift, underflow = values[n * 5:n * 5 + 5]
            result = HoldSettlement(
                slug=slug,
                amount=amount,
                previous_stock=previous,
                new_stock=new_stock,
                new_reserve=new_reserve,
                drift=bool(drift),
                underflow=bool(underflow),
            )
            if result.drift:
                logger.warning(
                    f"INVENTORY_DRIFT: slug={slug} deducted={amount} "
                    f"stock_before={result.previous_stock} clamped_to=0"
                )
            if result.underflow:
                logger.warning(f"Reserve underflow for {slug}: released {amount}, clamped to 0")
            results.append(result)
        return results
