"""
Pytest configuration and fixtures for Kiln storefront tests.

Redis is fakeredis with Lua enabled, so the ledger scripts run for real.
Stripe and Storyblok are mocks, except webhook signatures, which are
produced with Stripe's actual scheme and verified by the real SDK.
"""
import hashlib
import hmac
import json
import os
import time
from typing import Callable, Dict, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_unit_tests_only"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_unit_tests_only"
os.environ["STORYBLOK_TOKEN"] = "storyblok-test-token"
os.environ["STORYBLOK_MANAGEMENT_TOKEN"] = "storyblok-management-test-token"
os.environ["STORYBLOK_SPACE_ID"] = "12345"
os.environ["STORYBLOK_ORDERS_FOLDER_ID"] = "678"
os.environ["ADMIN_SYNC_TOKEN"] = "admin-test-token"
os.environ["STOCK_CLEANUP_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"

import fakeredis

from kiln.services.payments import PaymentAttempt, StripeGateway
from kiln.services.reclaim_scheduler import ReclaimScheduler
from kiln.services.reservation import ReservationEngine
from kiln.services.settlement import SettlementHandler
from kiln.services.stock_ledger import StockLedger

WEBHOOK_SECRET = "whsec_unit_tests_only"


@pytest.fixture
def fake_redis() -> fakeredis.FakeAsyncRedis:
    """Isolated in-memory Redis per test."""
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def ledger(fake_redis) -> StockLedger:
    return StockLedger(fake_redis)


@pytest.fixture
def engine(ledger) -> ReservationEngine:
    return ReservationEngine(ledger)


@pytest.fixture
def scheduler(engine) -> ReclaimScheduler:
    return ReclaimScheduler(engine)


@pytest.fixture
def mock_payments() -> MagicMock:
    """Stripe gateway double; attempts get sequential ids."""
    gateway = MagicMock(spec=StripeGateway)
    gateway.configured = True
    gateway.webhook_secret = WEBHOOK_SECRET

    counter = {"n": 0}

    def _next_id(prefix: str) -> str:
        counter["n"] += 1
        return f"{prefix}_test_{counter['n']}"

    def _create_intent(amount_minor, currency, metadata):
        intent_id = _next_id("pi")
        return PaymentAttempt(id=intent_id, client_secret=f"{intent_id}_secret_abc")

    def _create_session(line_items, metadata, success_url, cancel_url, expires_at):
        session_id = _next_id("cs")
        return PaymentAttempt(id=session_id, url=f"https://checkout.stripe.com/c/pay/{session_id}")

    gateway.create_payment_intent.side_effect = _create_intent
    gateway.create_checkout_session.side_effect = _create_session
    gateway.retrieve_payment_intent.return_value = {
        "id": "pi_test_1",
        "status": "succeeded",
        "amount": 12900,
        "currency": "pln",
    }
    return gateway


@pytest.fixture
def mock_cms() -> AsyncMock:
    """Storyblok client double: no products unless a test adds them."""
    cms = AsyncMock()
    cms.get_product = AsyncMock(return_value=None)
    cms.get_product_stock = AsyncMock(return_value=None)
    cms.list_products = AsyncMock(return_value=[])
    cms.update_product_stock = AsyncMock(return_value={})
    cms.create_order_record = AsyncMock(return_value={})
    cms.close = AsyncMock()
    return cms


@pytest.fixture
def webhook_gateway() -> StripeGateway:
    """Real gateway so signatures go through the Stripe SDK."""
    return StripeGateway(secret_key="sk_test_unit_tests_only", webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def settlement(engine, scheduler, webhook_gateway, mock_cms) -> SettlementHandler:
    return SettlementHandler(engine, scheduler, webhook_gateway, mock_cms)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a stripe-signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def stripe_event() -> Callable[..., Tuple[bytes, str]]:
    """
    Factory for signed webhook deliveries.

    stripe_event("payment_intent.succeeded", {"id": "pi_1", ...}, event_id="evt_1")
    returns (raw_body, signature_header).
    """
    counter = {"n": 0}

    def _make(event_type: str, data_object: Dict, event_id: Optional[str] = None) -> Tuple[bytes, str]:
        counter["n"] += 1
        payload = json.dumps({
            "id": event_id or f"evt_test_{counter['n']}",
            "object": "event",
            "type": event_type,
            "data": {"object": data_object},
        })
        return payload.encode("utf-8"), sign_payload(payload)

    return _make


@pytest.fixture
def checkout_payload() -> Callable[..., Dict]:
    """Factory for checkout request bodies in wire (camelCase) form."""

    def _make(items, allow_backorder: bool = False, delivery_method: str = "courier") -> Dict:
        return {
            "items": [
                {
                    "productSlug": slug,
                    "productName": slug.replace("-", " ").title(),
                    "pricePLN": 129.0,
                    "quantity": qty,
                }
                for slug, qty in items
            ],
            "deliveryMethod": delivery_method,
            "customer": {
                "email": "ania@example.com",
                "phone": "+48 600 100 200",
                "name": "Ania Kowalska",
                "street": "ul. Garncarska 7",
                "postalCode": "30-001",
                "city": "Krakow",
                "country": "PL",
            },
            "allowBackorder": allow_backorder,
        }

    return _make
