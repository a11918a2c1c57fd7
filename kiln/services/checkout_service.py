"""
Checkout Service

Starts a checkout attempt:
1. Reclaim expired attempts (frees stock held by abandoned checkouts)
2. Seed missing stock counters from the CMS (first touch only)
3. Reserve per product; the shortfall becomes backorder
4. Without allowBackorder, any backorder releases the holds and asks the
   customer to confirm a made-to-order purchase
5. Create the Stripe attempt carrying the reservation in its metadata
6. Persist the reservation record and schedule its reclaim

Anything that fails after step 3 releases the holds before the error
propagates, so a failed checkout never leaves stock reserved.
"""
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List
from urllib.parse import quote

from kiln.core.config import settings
from kiln.core.exceptions import BackorderConfirmationRequired, CMSError, PaymentError
from kiln.core.redis_client import ATTEMPT_PAYMENT_INTENT, ATTEMPT_SESSION
from kiln.core.utils import to_minor_units, utcnow
from kiln.schemas.checkout import CheckoutItem, CheckoutRequest
from kiln.services.payments import PaymentAttempt, StripeGateway
from kiln.services.reclaim_scheduler import ReclaimScheduler
from kiln.services.reservation import ReservationEngine, ReservationRequestItem, ReservationResult
from kiln.services.storyblok import StoryblokClient

logger = logging.getLogger(__name__)

BACKORDER_MESSAGE = (
    "Some items are no longer in stock right now. Continue again to place this "
    "as a made-to-order purchase (2-3 business weeks)."
)

# Stripe rejects a Checkout Session expiring less than 30 minutes out
SESSION_EXPIRY_MARGIN_SECONDS = 60


@dataclass
class CheckoutOutcome:
    """A started checkout attempt."""
    kind: str
    attempt: PaymentAttempt
    reservation: ReservationResult
    expires_at: datetime
    amount_minor: int


def order_amount_minor(items: List[CheckoutItem]) -> int:
    return sum(to_minor_units(item.price_pln) * item.quantity for item in items)


def build_checkout_metadata(request: CheckoutRequest, reservation: ReservationResult) -> Dict[str, str]:
    """Stripe metadata: everything settlement needs if the Redis record is gone."""
    customer = request.customer
    compact_items = [
        {"slug": item.product_slug, "name": item.product_name, "quantity": item.quantity}
        for item in request.items
    ]
    return {
        "delivery_method": request.delivery_method,
        "inpost_point": json.dumps(request.inpost_point) if request.inpost_point else "",
        "customer_email": customer.email,
        "customer_phone": customer.phone,
        "customer_name": customer.name or "",
        "shipping_street": customer.street,
        "shipping_postal_code": customer.postal_code,
        "shipping_city": customer.city,
        "shipping_country": customer.country,
        "product_slugs": json.dumps([item.product_slug for item in request.items]),
        "cart_items_compact": json.dumps(compact_items),
        "quantities": json.dumps(request.quantities),
        "reserved_in_stock": json.dumps(reservation.reserved_by_slug),
        "backorder": json.dumps(reservation.backorder_by_slug),
    }


class CheckoutService:
    """Reserve-then-pay orchestration for both Stripe flows."""

    def __init__(
        self,
        engine: ReservationEngine,
        scheduler: ReclaimScheduler,
        payments: StripeGateway,
        cms: StoryblokClient,
    ) -> None:
        self.engine = engine
        self.ledger = engine.ledger
        self.scheduler = scheduler
        self.payments = payments
        self.cms = cms

    async def start_payment_intent(self, request: CheckoutRequest) -> CheckoutOutcome:
        """Embedded payment flow: returns a PaymentIntent client secret."""
        start_time = time.time()
        self._require_payments()
        amount = order_amount_minor(request.items)
        reservation = await self._reserve(request)

        try:
            attempt = self.payments.create_payment_intent(
                amount_minor=amount,
                currency=settings.STRIPE_CURRENCY,
                metadata=build_checkout_metadata(request, reservation),
            )
            expires_at = await self._persist(ATTEMPT_PAYMENT_INTENT, attempt.id, reservation)
        except Exception:
            await self._release_quietly(reservation)
            raise

        self._log_metric("payment_intent_created", attempt.id, amount, reservation, start_time)
        return CheckoutOutcome(ATTEMPT_PAYMENT_INTENT, attempt, reservation, expires_at, amount)

    async def start_checkout_session(self, request: CheckoutRequest) -> CheckoutOutcome:
        """Hosted payment flow: returns a Checkout Session URL."""
        start_time = time.time()
        self._require_payments()
        amount = order_amount_minor(request.items)
        reservation = await self._reserve(request)

        expires_at = utcnow() + timedelta(seconds=settings.reservation_ttl_seconds)
        primary_slug = request.items[0].product_slug
        line_items = [
            {
                "price_data": {
                    "currency": settings.STRIPE_CURRENCY,
                    "unit_amount": to_minor_units(item.price_pln),
                    "product_data": {"name": item.product_name},
                },
                "quantity": item.quantity,
            }
            for item in request.items
        ]

        try:
            attempt = self.payments.create_checkout_session(
                line_items=line_items,
                metadata=build_checkout_metadata(request, reservation),
                success_url=f"{settings.SITE_URL}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{settings.SITE_URL}/checkout/cancel?product={quote(primary_slug)}",
                expires_at=int(expires_at.timestamp()) + SESSION_EXPIRY_MARGIN_SECONDS,
            )
            expires_at = await self._persist(ATTEMPT_SESSION, attempt.id, reservation)
        except Exception:
            await self._release_quietly(reservation)
            raise

        self._log_metric("checkout_session_created", attempt.id, amount, reservation, start_time)
        return CheckoutOutcome(ATTEMPT_SESSION, attempt, reservation, expires_at, amount)

    async def payment_status(self, payment_intent_id: str) -> Dict[str, Any]:
        self._require_payments()
        return self.payments.retrieve_payment_intent(payment_intent_id)

    # ----- steps -----

    def _require_payments(self) -> None:
        if not self.payments.configured:
            raise PaymentError("Stripe not configured")

    async def _reserve(self, request: CheckoutRequest) -> ReservationResult:
        await self.scheduler.reclaim_expired()
        await self._seed_from_cms(request.items)

        reservation = await self.engine.reserve(
            ReservationRequestItem(slug=item.product_slug, quantity=item.quantity)
            for item in request.items
        )
        if reservation.has_backorder and not request.allow_backorder:
            await self._release_quietly(reservation)
            logger.info(f"Backorder confirmation required: {reservation.backorder_by_slug}")
            raise BackorderConfirmationRequired(BACKORDER_MESSAGE, reservation.backorder_by_slug)
        return reservation

    async def _seed_from_cms(self, items: List[CheckoutItem]) -> None:
        """Initialize counters the ledger has never seen; existing values win."""
        for item in items:
            if await self.ledger.has_stock_record(item.product_slug):
                continue
            try:
                pcs = await self.cms.get_product_stock(item.product_slug)
            except CMSError as e:
                logger.warning(f"Could not read CMS stock for {item.product_slug}: {e.message}")
                continue
            if pcs is not None:
                await self.ledger.seed(item.product_slug, pcs)

    async def _persist(self, kind: str, attempt_id: str, reservation: ReservationResult) -> datetime:
        record = await self.engine.save_record(
            kind,
            attempt_id,
            reservation.reserved_by_slug,
            ttl_seconds=settings.reservation_ttl_seconds,
            record_ttl_seconds=settings.reservation_record_ttl_seconds,
        )
        await self.scheduler.schedule(kind, attempt_id, record.expires_at)
        return record.expires_at

    async def _release_quietly(self, reservation: ReservationResult) -> None:
        try:
            await self.engine.release(reservation.reserved_by_slug)
        except Exception as e:
            logger.error(f"Rollback of checkout reservation failed: {e} held={reservation.reserved_by_slug}")

    def _log_metric(
        self,
        event: str,
        attempt_id: str,
        amount: int,
        reservation: ReservationResult,
        start_time: float,
    ) -> None:
        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"CHECKOUT_METRIC: {event} "
            f"attempt_id={attempt_id} "
            f"amount_minor={amount} "
            f"reserved={reservation.total_reserved} "
            f"backorder={sum(reservation.backorder_by_slug.values())} "
            f"duration_ms={duration_ms:.2f}"
        )
