"""
Admin Routes

Stock sync: pull published stock counts from the CMS into the ledger.
Token-protected; meant to be called by a deploy hook or an operator.
"""
from fastapi import APIRouter, Depends

from kiln.api.deps import get_scheduler, get_stock_sync, require_admin_token
from kiln.services.reclaim_scheduler import ReclaimScheduler
from kiln.services.stock_sync import StockSyncService

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


@router.post("/sync-stock")
async def sync_stock(service: StockSyncService = Depends(get_stock_sync)):
    """
    Reconcile ledger stock with the CMS.

    Missing counters are created and restocks applied; a CMS value below
    the ledger is reported as drift and left alone. 409 if a sync is
    already running.
    """
    summary = await service.run()
    return {"ok": True, "summary": summary.to_dict()}


@router.get("/reservations")
async def reservation_stats(scheduler: ReclaimScheduler = Depends(get_scheduler)):
    """Pending reservation counts from the reclaim schedule."""
    return await scheduler.pending_stats()
