"""
Settlement Handler

Terminal processing of Stripe payment-outcome webhooks. Deliveries may be
duplicated, reordered or late; every effect is applied at most once.

Two single-winner gates, both SET NX in Redis:
1. processed:event:<event_id>      - one handler per delivered event
2. settled:attempt:<kind>:<id>     - one terminal outcome per checkout attempt
                                     (committed / released / reclaimed)

Success  -> finalize every held slug (stock and hold drop together), then
            mirror stock to the CMS and create the CMS order.
Failure  -> return every held slug to the pool.

Each outcome is a single Lua step that moves the counters, rewrites the
attempt gate and deletes the reservation record together. Deleting the record
is the commit point: if a handler dies after taking the gate but before that
step, the record is still there and the next delivery (or sweep) resumes it.

CMS writes after a captured payment are best-effort: failures are logged for
manual reconciliation and never fail the webhook.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from kiln.core.config import settings
from kiln.core.exceptions import CMSError, StoreUnavailableError, WebhookSignatureError
from kiln.core.redis_client import (
    ATTEMPT_PAYMENT_INTENT,
    ATTEMPT_SESSION,
    SETTLEMENT_COMMITTED,
    SETTLEMENT_RELEASED,
    claim_attempt,
    claim_event,
    mark_event_done,
    release_attempt,
    release_event,
)
from kiln.core.utils import coerce_quantity_map, parse_reserved_payload, safe_parse_json
from kiln.services.payments import StripeGateway, WebhookEvent
from kiln.services.reclaim_scheduler import ReclaimScheduler
from kiln.services.reservation import ReservationEngine, ReservationRecord
from kiln.services.stock_ledger import SETTLE_DEDUCT, SETTLE_FINALIZE, SETTLE_RELEASE
from kiln.services.storyblok import OrderRecord, StoryblokClient

logger = logging.getLogger(__name__)

SUCCESS_EVENTS = {
    "checkout.session.completed": ATTEMPT_SESSION,
    "checkout.session.async_payment_succeeded": ATTEMPT_SESSION,
    "payment_intent.succeeded": ATTEMPT_PAYMENT_INTENT,
}
FAILURE_EVENTS = {
    "checkout.session.expired": ATTEMPT_SESSION,
    "checkout.session.async_payment_failed": ATTEMPT_SESSION,
    "payment_intent.payment_failed": ATTEMPT_PAYMENT_INTENT,
}

# Metadata key holding the reserved-in-stock JSON on the Stripe object
RESERVED_METADATA_KEY = "reserved_in_stock"


@dataclass
class SettlementResult:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


def ok_result(**body) -> SettlementResult:
    return SettlementResult(200, {"received": True, **body})


def error_result(status_code: int, message: str) -> SettlementResult:
    return SettlementResult(status_code, {"error": message})


def reserved_fallback(metadata: Dict[str, Any]) -> Optional[str]:
    return metadata.get(RESERVED_METADATA_KEY) or metadata.get("reservedInStock")


def build_order_record(kind: str, payment_object: Dict[str, Any]) -> OrderRecord:
    """Collect customer and delivery details from a Session or PaymentIntent."""
    metadata = payment_object.get("metadata") or {}
    quantities = coerce_quantity_map(safe_parse_json(metadata.get("quantities"), {}))
    product_slugs = safe_parse_json(metadata.get("product_slugs"), list(quantities))
    if not isinstance(product_slugs, list):
        product_slugs = list(quantities)

    if kind == ATTEMPT_SESSION:
        details = payment_object.get("customer_details") or {}
        address = details.get("address") or {}
        customer = {
            "name": details.get("name") or "Unknown",
            "email": details.get("email") or "Unknown",
            "phone": details.get("phone") or "Unknown",
            "address1": address.get("line1") or "Unknown",
            "postalCode": address.get("postal_code") or "Unknown",
            "city": address.get("city") or "Unknown",
            "country": address.get("country") or "Unknown",
        }
    else:
        customer = {
            "name": metadata.get("customer_name") or "Unknown",
            "email": metadata.get("customer_email") or "Unknown",
            "phone": metadata.get("customer_phone") or "Unknown",
            "address1": metadata.get("shipping_street") or "Unknown",
            "postalCode": metadata.get("shipping_postal_code") or "Unknown",
            "city": metadata.get("shipping_city") or "Unknown",
            "country": metadata.get("shipping_country") or "Unknown",
        }

    return OrderRecord(
        order_id=payment_object["id"],
        product_slugs=[str(slug) for slug in product_slugs],
        quantities=quantities,
        customer=customer,
        delivery_method="inpost" if metadata.get("delivery_method") == "inpost" else "courier",
        inpost_point=safe_parse_json(metadata.get("inpost_point"), None),
        backorder_by_slug=coerce_quantity_map(safe_parse_json(metadata.get("backorder"), {})),
    )


class SettlementHandler:
    """Exactly-once-effect webhook settlement."""

    def __init__(
        self,
        engine: ReservationEngine,
        scheduler: ReclaimScheduler,
        payments: StripeGateway,
        cms: StoryblokClient,
    ) -> None:
        self.engine = engine
        self.ledger = engine.ledger
        self.redis = engine.redis
        self.scheduler = scheduler
        self.payments = payments
        self.cms = cms

    @property
    def _marker_ttl(self) -> int:
        return settings.processed_event_ttl_seconds

    async def handle_event(self, raw_payload: bytes, signature: Optional[str]) -> SettlementResult:
        if not self.payments.webhook_secret:
            logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET not configured")
            return error_result(500, "Missing STRIPE_WEBHOOK_SECRET")

        if not signature:
            logger.warning("Stripe webhook missing signature header")
            return error_result(400, "Missing stripe-signature header")

        try:
            event = self.payments.verify_webhook_signature(raw_payload, signature)
        except WebhookSignatureError as e:
            return error_result(400, e.message)

        if not await claim_event(self.redis, event.id, self._marker_ttl):
            logger.info(f"Stripe webhook already processed: {event.id} ({event.type})")
            return ok_result(duplicate=True)

        logger.info(f"Stripe webhook received: {event.type} (event_id={event.id})")
        try:
            outcome = await self.dispatch(event)
        except Exception as e:
            logger.error(
                f"Stripe webhook handler error: event_id={event.id} type={event.type}: {e}",
                exc_info=True,
            )
            await release_event(self.redis, event.id)
            return error_result(500, "Webhook handler error")

        await mark_event_done(self.redis, event.id, self._marker_ttl)
        return ok_result(status=outcome)

    async def dispatch(self, event: WebhookEvent) -> str:
        payment_object = event.data_object
        if not payment_object.get("id"):
            logger.warning(f"Stripe event {event.id} has no object id, ignoring")
            return "ignored"

        if event.type == "checkout.session.completed" and payment_object.get("payment_status") != "paid":
            logger.info(f"Checkout session {payment_object['id']} completed but not paid yet")
            return "awaiting_payment"

        if event.type in SUCCESS_EVENTS:
            return await self.commit(SUCCESS_EVENTS[event.type], payment_object)
        if event.type in FAILURE_EVENTS:
            return await self.release(FAILURE_EVENTS[event.type], payment_object)

        logger.info(f"Stripe webhook ignored: {event.type} (event_id={event.id})")
        return "ignored"

    async def commit(self, kind: str, payment_object: Dict[str, Any]) -> str:
        """Payment captured: make the hold permanent."""
        attempt_id = payment_object["id"]
        metadata = payment_object.get("metadata") or {}

        settled_by = await claim_attempt(self.redis, kind, attempt_id, SETTLEMENT_COMMITTED, self._marker_ttl)
        if settled_by is not None:
            pending = await self.engine.load_record(kind, attempt_id)
            if pending is not None:
                # Marked but never applied: the earlier attempt failed before its Lua step
                logger.warning(f"Attempt {kind}:{attempt_id} marked {settled_by} but still held, committing")
                return await self._finalize(pending, payment_object, expected=settled_by, claimed=False)
            if settled_by == SETTLEMENT_COMMITTED:
                logger.info(f"Attempt {kind}:{attempt_id} already committed")
                return "already_processed"
            return await self._commit_late(kind, payment_object, settled_by)

        try:
            record = await self.engine.load_record(kind, attempt_id, reserved_fallback(metadata))
        except Exception:
            await release_attempt(self.redis, kind, attempt_id)
            raise
        if record is None:
            # Not one of ours (e.g. the PaymentIntent behind a Checkout Session)
            logger.info(f"Attempt {kind}:{attempt_id} has no reservation, nothing to settle")
            return "no_reservation"
        return await self._finalize(record, payment_object, expected=SETTLEMENT_COMMITTED, claimed=True)

    async def _finalize(
        self,
        record: ReservationRecord,
        payment_object: Dict[str, Any],
        expected: str,
        claimed: bool,
    ) -> str:
        try:
            settled = await self.engine.settle(record, SETTLE_FINALIZE, expected=expected, outcome=SETTLEMENT_COMMITTED)
        except Exception:
            await self._abandon_claim(record, claimed)
            raise
        if settled is None:
            logger.info(f"Attempt {record.kind}:{record.attempt_id} settled concurrently")
            return "already_processed"

        await self._cancel_schedule(record)
        updated_stocks = {}
        for item in settled:
            updated_stocks[item.slug] = item.new_stock
            await self._mirror_stock(item.slug, item.new_stock)
        await self._create_order(record.kind, payment_object)

        logger.info(f"Attempt {record.kind}:{record.attempt_id} committed, updated_stocks={updated_stocks}")
        return "committed"

    async def _commit_late(self, kind: str, payment_object: Dict[str, Any], settled_by: str) -> str:
        """
        Success after the hold was already released or reclaimed.

        The payment is authoritative: deduct stock for the originally held
        amounts (reserve untouched) and still create the order.
        """
        attempt_id = payment_object["id"]
        held = parse_reserved_payload(reserved_fallback(payment_object.get("metadata") or {}))
        logger.warning(
            f"LATE_PAYMENT: attempt {kind}:{attempt_id} succeeded after being {settled_by}; "
            f"deducting held={held} without reservation"
        )
        record = ReservationRecord(kind=kind, attempt_id=attempt_id, reserved_by_slug=held, source="metadata")
        settled = await self.engine.settle(record, SETTLE_DEDUCT, expected=settled_by, outcome=SETTLEMENT_COMMITTED)
        if settled is None:
            logger.info(f"Late payment for {kind}:{attempt_id} already applied")
            return "already_processed"

        for item in settled:
            await self._mirror_stock(item.slug, item.new_stock)
        await self._create_order(kind, payment_object)
        return "committed_late"

    async def release(self, kind: str, payment_object: Dict[str, Any]) -> str:
        """Payment failed or attempt expired: return the hold to the pool."""
        attempt_id = payment_object["id"]
        metadata = payment_object.get("metadata") or {}

        settled_by = await claim_attempt(self.redis, kind, attempt_id, SETTLEMENT_RELEASED, self._marker_ttl)
        if settled_by == SETTLEMENT_COMMITTED:
            logger.info(f"Attempt {kind}:{attempt_id} already committed, release is a no-op")
            return "already_processed"
        if settled_by is not None:
            pending = await self.engine.load_record(kind, attempt_id)
            if pending is None:
                logger.info(f"Attempt {kind}:{attempt_id} already {settled_by}, release is a no-op")
                return "already_processed"
            logger.warning(f"Resuming unfinished {settled_by} of {kind}:{attempt_id}")
            return await self._return_hold(pending, expected=settled_by, claimed=False)

        try:
            record = await self.engine.load_record(kind, attempt_id, reserved_fallback(metadata))
        except Exception:
            await release_attempt(self.redis, kind, attempt_id)
            raise
        if record is None:
            logger.info(f"No reservation to release for {kind}:{attempt_id}")
            return "no_reservation"
        return await self._return_hold(record, expected=SETTLEMENT_RELEASED, claimed=True)

    async def _return_hold(self, record: ReservationRecord, expected: str, claimed: bool) -> str:
        try:
            settled = await self.engine.settle(record, SETTLE_RELEASE, expected=expected, outcome=expected)
        except Exception:
            await self._abandon_claim(record, claimed)
            raise
        if settled is None:
            logger.info(f"Attempt {record.kind}:{record.attempt_id} settled concurrently, release is a no-op")
            return "already_processed"

        await self._cancel_schedule(record)
        logger.info(f"Attempt {record.kind}:{record.attempt_id} released, held={record.reserved_by_slug}")
        return "released"

    async def _cancel_schedule(self, record: ReservationRecord) -> None:
        try:
            await self.scheduler.cancel_schedule(record.kind, record.attempt_id)
        except StoreUnavailableError as e:
            # The sweep drops entries whose attempt is already settled
            logger.warning(f"Could not cancel reclaim for {record.kind}:{record.attempt_id}: {e.message}")

    async def _abandon_claim(self, record: ReservationRecord, claimed: bool) -> None:
        """Settling failed before the Lua step ran."""
        if not claimed or record.source == "store":
            # The stored record still marks the hold as pending; a retry resumes from it
            return
        await release_attempt(self.redis, record.kind, record.attempt_id)

    async def _mirror_stock(self, slug: str, stock: int) -> None:
        try:
            await self.cms.update_product_stock(slug, stock)
        except CMSError as e:
            logger.warning(f"CMS stock mirror failed for {slug} (stock={stock}): {e.message}")

    async def _create_order(self, kind: str, payment_object: Dict[str, Any]) -> None:
        order = build_order_record(kind, payment_object)
        try:
            await self.cms.create_order_record(order)
        except CMSError as e:
            logger.error(
                f"ORDER_RECORD_FAILED: payment {order.order_id} captured but CMS order failed, "
                f"manual follow-up required: {e.to_dict()}"
            )
