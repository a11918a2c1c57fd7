"""
Stripe gateway

Thin wrapper over the Stripe SDK exposing only what checkout and settlement
need. Stripe calls are synchronous SDK calls, as elsewhere in the app.

Webhook payloads are verified with Stripe's signature scheme and then decoded
from the verified raw body into plain dicts, so the settlement code never
depends on SDK object types.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import stripe

from kiln.core.config import settings
from kiln.core.exceptions import PaymentError, PaymentSessionError, WebhookSignatureError

logger = logging.getLogger(__name__)


@dataclass
class PaymentAttempt:
    """A created PaymentIntent or Checkout Session."""
    id: str
    client_secret: Optional[str] = None
    url: Optional[str] = None


@dataclass
class WebhookEvent:
    id: str
    type: str
    data_object: Dict[str, Any] = field(default_factory=dict)


class StripeGateway:
    """Payment processor collaborator."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
    ) -> None:
        self.secret_key = secret_key if secret_key is not None else settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def create_payment_intent(
        self,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, str],
    ) -> PaymentAttempt:
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.secret_key,
                amount=amount_minor,
                currency=currency,
                automatic_payment_methods={"enabled": True},
                metadata=metadata,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe PaymentIntent creation failed: {e}")
            raise PaymentSessionError(f"Payment provider error: {e.user_message or e}") from e
        return PaymentAttempt(id=intent.id, client_secret=intent.client_secret)

    def create_checkout_session(
        self,
        line_items: List[Dict[str, Any]],
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        expires_at: int,
    ) -> PaymentAttempt:
        """`expires_at` is a unix timestamp; Stripe requires 30 minutes to 24 hours ahead."""
        try:
            session = stripe.checkout.Session.create(
                api_key=self.secret_key,
                mode="payment",
                line_items=line_items,
                shipping_address_collection={"allowed_countries": settings.CHECKOUT_ALLOWED_COUNTRIES},
                phone_number_collection={"enabled": True},
                expires_at=expires_at,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe Checkout Session creation failed: {e}")
            raise PaymentSessionError(f"Payment provider error: {e.user_message or e}") from e
        return PaymentAttempt(id=session.id, url=session.url)

    def retrieve_payment_intent(self, intent_id: str) -> Dict[str, Any]:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise PaymentError(f"Could not retrieve payment {intent_id}: {e}") from e
        return {
            "id": intent.id,
            "status": intent.status,
            "amount": intent.amount,
            "currency": intent.currency,
        }

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> WebhookEvent:
        """Verify the stripe-signature header and decode the event."""
        payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, self.webhook_secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Stripe webhook signature verification failed: {e}")
            raise WebhookSignatureError("Invalid signature") from e

        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.warning(f"Stripe webhook invalid payload: {e}")
            raise WebhookSignatureError("Invalid payload") from e

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise WebhookSignatureError("Invalid payload")

        data_object = (event.get("data") or {}).get("object") or {}
        return WebhookEvent(id=event["id"], type=event["type"], data_object=data_object)
