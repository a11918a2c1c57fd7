"""
Webhook Routes

Stripe payment-outcome events. The handler verifies the signature itself,
so the raw body is passed through untouched.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from kiln.api.deps import get_settlement_handler
from kiln.services.settlement import SettlementHandler

router = APIRouter()


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    handler: SettlementHandler = Depends(get_settlement_handler),
):
    """
    Settle a checkout attempt from a Stripe event.

    200 for processed, duplicate and ignored events; 400 for bad signatures;
    500 when processing failed and Stripe should retry.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    result = await handler.handle_event(payload, signature)
    return JSONResponse(status_code=result.status_code, content=result.body)
