"""
API dependencies
"""
import hmac
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Header, HTTPException, status

from kiln.core.config import settings
from kiln.core.redis_client import get_redis
from kiln.services.checkout_service import CheckoutService
from kiln.services.payments import StripeGateway
from kiln.services.reclaim_scheduler import ReclaimScheduler
from kiln.services.reservation import ReservationEngine
from kiln.services.settlement import SettlementHandler
from kiln.services.stock_ledger import StockLedger
from kiln.services.stock_sync import StockSyncService
from kiln.services.storyblok import StoryblokClient

# Shared CMS client (one httpx connection pool per process)
_cms_client: Optional[StoryblokClient] = None


def get_cms() -> StoryblokClient:
    global _cms_client
    if _cms_client is None:
        _cms_client = StoryblokClient()
    return _cms_client


async def close_cms() -> None:
    global _cms_client
    if _cms_client is not None:
        await _cms_client.close()
        _cms_client = None


def get_payments() -> StripeGateway:
    return StripeGateway()


async def get_ledger(client: redis.Redis = Depends(get_redis)) -> StockLedger:
    return StockLedger(client)


async def get_engine(ledger: StockLedger = Depends(get_ledger)) -> ReservationEngine:
    return ReservationEngine(ledger)


async def get_scheduler(engine: ReservationEngine = Depends(get_engine)) -> ReclaimScheduler:
    return ReclaimScheduler(engine)


async def get_checkout_service(
    engine: ReservationEngine = Depends(get_engine),
    scheduler: ReclaimScheduler = Depends(get_scheduler),
    payments: StripeGateway = Depends(get_payments),
    cms: StoryblokClient = Depends(get_cms),
) -> CheckoutService:
    return CheckoutService(engine, scheduler, payments, cms)


async def get_settlement_handler(
    engine: ReservationEngine = Depends(get_engine),
    scheduler: ReclaimScheduler = Depends(get_scheduler),
    payments: StripeGateway = Depends(get_payments),
    cms: StoryblokClient = Depends(get_cms),
) -> SettlementHandler:
    return SettlementHandler(engine, scheduler, payments, cms)


async def get_stock_sync(
    ledger: StockLedger = Depends(get_ledger),
    cms: StoryblokClient = Depends(get_cms),
) -> StockSyncService:
    return StockSyncService(ledger, cms)


async def require_admin_token(
    authorization: Optional[str] = Header(None),
    x_admin_token: Optional[str] = Header(None),
) -> None:
    """Bearer token or x-admin-token header must match ADMIN_SYNC_TOKEN."""
    expected = settings.ADMIN_SYNC_TOKEN
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Missing ADMIN_SYNC_TOKEN"
        )

    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):]
    else:
        token = x_admin_token

    if not token or not hmac.compare_digest(token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )
