"""
Stripe Checkout API Routes

Both flows reserve stock in Redis before the payment attempt exists:
1. create-payment-intent: embedded payment (client secret)
2. start: hosted Checkout Session (redirect URL)
3. submit: payment status lookup after the client-side confirmation

Settlement happens only in the Stripe webhook; these routes never decrement
stock. Rate limited to prevent reservation flooding.
"""
from fastapi import APIRouter, Depends, Request

from kiln.api.deps import get_checkout_service
from kiln.core.config import settings
from kiln.core.rate_limit import limiter
from kiln.schemas.checkout import (
    CheckoutRequest,
    CheckoutSessionResponse,
    PaymentIntentResponse,
    SubmitPaymentRequest,
)
from kiln.services.checkout_service import CheckoutService

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post("/create-payment-intent", response_model=PaymentIntentResponse)
@limiter.limit(settings.RATE_LIMIT_CHECKOUT)
async def create_payment_intent(
    request: Request,
    payload: CheckoutRequest,
    service: CheckoutService = Depends(get_checkout_service),
):
    """
    Reserve stock and create a Stripe PaymentIntent.

    409 when part of the cart is out of stock and allowBackorder is false;
    the customer confirms and resubmits with allowBackorder=true.
    """
    outcome = await service.start_payment_intent(payload)
    return PaymentIntentResponse(
        client_secret=outcome.attempt.client_secret,
        payment_intent_id=outcome.attempt.id,
        amount=outcome.amount_minor,
        reserved_by_slug=outcome.reservation.reserved_by_slug,
        backorder_by_slug=outcome.reservation.backorder_by_slug,
        expires_at=outcome.expires_at.isoformat(),
    )


@router.post("/start", response_model=CheckoutSessionResponse)
@limiter.limit(settings.RATE_LIMIT_CHECKOUT)
async def start_checkout(
    request: Request,
    payload: CheckoutRequest,
    service: CheckoutService = Depends(get_checkout_service),
):
    """Reserve stock and create a hosted Stripe Checkout Session."""
    outcome = await service.start_checkout_session(payload)
    return CheckoutSessionResponse(
        url=outcome.attempt.url,
        session_id=outcome.attempt.id,
        reserved_by_slug=outcome.reservation.reserved_by_slug,
        backorder_by_slug=outcome.reservation.backorder_by_slug,
        expires_at=outcome.expires_at.isoformat(),
    )


@router.post("/submit")
async def submit_payment(
    payload: SubmitPaymentRequest,
    service: CheckoutService = Depends(get_checkout_service),
):
    """Report the PaymentIntent status; the webhook does the settling."""
    return await service.payment_status(payload.payment_intent_id)


@router.get("/config")
async def get_stripe_config():
    """
    Return publishable key for frontend.
    This is safe to expose - it's meant to be public.
    """
    return {
        "publishable_key": settings.STRIPE_PUBLISHABLE_KEY,
        "currency": settings.STRIPE_CURRENCY,
        "reservation_ttl_minutes": settings.RESERVATION_TTL_MINUTES,
    }
