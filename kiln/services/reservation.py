"""
Reservation Engine

Turns a checkout request into holds against the Stock Ledger, one product at
a time. Each product's hold is its own atomic Lua step, so a stock-out on one
product never blocks the others: whatever cannot be held becomes backorder
(made-to-order).

Also owns the reservation record: the per-attempt JSON blob recording what
was actually held, keyed by the Stripe attempt id. Deleting that record is
the last step of every settlement path.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from kiln.core.config import settings
from kiln.core.exceptions import StoreUnavailableError
from kiln.core.redis_client import reservation_record_key, settled_attempt_key
from kiln.core.utils import parse_reserved_payload, safe_parse_json, utcnow
from kiln.services.stock_ledger import HoldSettlement, StockLedger

logger = logging.getLogger(__name__)


@dataclass
class ReservationRequestItem:
    slug: str
    quantity: int


@dataclass
class ReservationResult:
    """What a reserve() call managed to hold, and what spilled into backorder."""
    reserved_by_slug: Dict[str, int] = field(default_factory=dict)
    backorder_by_slug: Dict[str, int] = field(default_factory=dict)

    @property
    def has_backorder(self) -> bool:
        return any(qty > 0 for qty in self.backorder_by_slug.values())

    @property
    def total_reserved(self) -> int:
        return sum(self.reserved_by_slug.values())


@dataclass
class ReservationRecord:
    """Persisted hold for one checkout attempt."""
    kind: str
    attempt_id: str
    reserved_by_slug: Dict[str, int]
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    source: str = "store"  # "store" or "metadata" (recovered from Stripe)

    def to_json(self) -> str:
        return json.dumps({
            "reservedInStockBySlug": self.reserved_by_slug,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        })

    @classmethod
    def from_raw(cls, kind: str, attempt_id: str, raw: Any, source: str = "store") -> "ReservationRecord":
        """Build from a stored blob; malformed input yields an empty hold."""
        payload = safe_parse_json(raw, {}) if isinstance(raw, str) else raw
        created_at = expires_at = None
        if isinstance(payload, dict):
            created_at = _parse_timestamp(payload.get("createdAt"))
            expires_at = _parse_timestamp(payload.get("expiresAt"))
        return cls(
            kind=kind,
            attempt_id=attempt_id,
            reserved_by_slug=parse_reserved_payload(payload),
            created_at=created_at,
            expires_at=expires_at,
            source=source,
        )

    def held_items(self) -> Iterable[tuple[str, int]]:
        return ((slug, qty) for slug, qty in self.reserved_by_slug.items() if qty > 0)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class ReservationEngine:
    """Optimistic, immediate stock holds with backorder split."""

    def __init__(self, ledger: StockLedger) -> None:
        self.ledger = ledger
        self.redis: redis.Redis = ledger.redis

    async def reserve(self, items: Iterable[ReservationRequestItem]) -> ReservationResult:
        """
        Hold in-stock units for each item, independently.

        A product with no stock record counts as zero available, so the
        whole quantity becomes backorder. If Redis fails midway, the holds
        already taken are released before the error propagates.
        """
        result = ReservationResult()
        try:
            for item in items:
                taken = await self.ledger.reserve_up_to(item.slug, item.quantity)
                result.reserved_by_slug[item.slug] = taken
                backorder = max(0, item.quantity - taken)
                if backorder > 0:
                    result.backorder_by_slug[item.slug] = backorder
        except StoreUnavailableError:
            await self._release_quietly(result.reserved_by_slug)
            raise

        logger.info(
            f"Reserved {result.total_reserved} units across {len(result.reserved_by_slug)} products "
            f"(backorder={result.backorder_by_slug or 'none'})"
        )
        return result

    async def release(self, reserved_by_slug: Dict[str, int]) -> None:
        """Compensating release for holds that were never persisted as a record."""
        for slug, amount in reserved_by_slug.items():
            if amount > 0:
                await self.ledger.release_reservation(slug, amount)

    async def _release_quietly(self, reserved_by_slug: Dict[str, int]) -> None:
        try:
            await self.release(reserved_by_slug)
        except StoreUnavailableError as e:
            logger.error(f"Rollback of partial reservation failed: {e} held={reserved_by_slug}")

    async def save_record(
        self,
        kind: str,
        attempt_id: str,
        reserved_by_slug: Dict[str, int],
        ttl_seconds: int,
        record_ttl_seconds: Optional[int] = None,
    ) -> ReservationRecord:
        """
        Persist the hold for an attempt.

        `ttl_seconds` sets expires_at (when the attempt should be reclaimed);
        the Redis key lives for `record_ttl_seconds` so a late sweep can still
        read it.
        """
        now = utcnow()
        record = ReservationRecord(
            kind=kind,
            attempt_id=attempt_id,
            reserved_by_slug=dict(reserved_by_slug),
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        try:
            await self.redis.set(
                reservation_record_key(kind, attempt_id),
                record.to_json(),
                ex=record_ttl_seconds or ttl_seconds,
            )
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to save reservation {kind}:{attempt_id}: {e}") from e
        return record

    async def load_record(
        self,
        kind: str,
        attempt_id: str,
        fallback: Any = None,
    ) -> Optional[ReservationRecord]:
        """
        Load the hold for an attempt.

        `fallback` is the reserved-in-stock JSON copied onto the Stripe object
        at checkout; it is used only when the Redis record is missing.
        Returns None when neither source exists.
        """
        try:
            raw = await self.redis.get(reservation_record_key(kind, attempt_id))
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to load reservation {kind}:{attempt_id}: {e}") from e

        if isinstance(raw, (str, bytes)) and raw:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            return ReservationRecord.from_raw(kind, attempt_id, raw)

        if fallback:
            logger.warning(f"Reservation {kind}:{attempt_id} missing in store, using processor metadata")
            return ReservationRecord.from_raw(kind, attempt_id, fallback, source="metadata")

        return None

    async def delete_record(self, kind: str, attempt_id: str) -> None:
        try:
            await self.redis.delete(reservation_record_key(kind, attempt_id))
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to delete reservation {kind}:{attempt_id}: {e}") from e

    async def settle(
        self,
        record: ReservationRecord,
        mode: str,
        expected: str,
        outcome: str,
    ) -> Optional[List[HoldSettlement]]:
        """
        Apply a terminal outcome to every hold in `record` atomically.

        The attempt gate must still read `expected`; it is rewritten to
        `outcome` and the stored record is deleted in the same step. A record
        read from the store must still exist there, which makes the deletion
        the commit point: a second settler finds it gone and gets None.
        """
        return await self.ledger.settle_holds(
            dict(record.held_items()),
            mode,
            gate_key=settled_attempt_key(record.kind, record.attempt_id),
            expected_gate=expected,
            new_gate=outcome,
            gate_ttl_seconds=settings.processed_event_ttl_seconds,
            record_key=reservation_record_key(record.kind, record.attempt_id),
            require_record=record.source == "store",
        )
