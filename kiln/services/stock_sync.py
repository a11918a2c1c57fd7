"""
Admin stock sync

Reconciles the ledger against the stock counts published in the CMS. The
ledger stays authoritative for sales, so the CMS can only:
- initialize a counter the ledger is missing (or holds garbage for)
- raise a counter (restock)

A CMS value lower than the ledger is reported as drift and left alone; the
ledger has already seen sales the CMS has not.

One sync at a time, guarded by an NX lock that expires on its own if the
process dies mid-run.
"""
import logging
import time
from dataclasses import asdict, dataclass

from redis.exceptions import RedisError

from kiln.core.exceptions import StockSyncLockedError, StoreUnavailableError
from kiln.core.redis_client import STOCK_LAST_SYNC_KEY, STOCK_SYNC_LOCK_KEY
from kiln.services.stock_ledger import StockLedger
from kiln.services.storyblok import StoryblokClient, resolve_slug, story_stock

logger = logging.getLogger(__name__)

PER_PAGE = 100
LOCK_TTL_SECONDS = 60 * 10
MAX_PAGES = 1000
RESTOCK_ATTEMPTS = 3


@dataclass
class SyncSummary:
    updated: int = 0
    restocked: int = 0
    skipped: int = 0
    drift: int = 0
    missingStock: int = 0
    total: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class StockSyncService:
    def __init__(self, ledger: StockLedger, cms: StoryblokClient) -> None:
        self.ledger = ledger
        self.redis = ledger.redis
        self.cms = cms

    async def run(self) -> SyncSummary:
        if not await self._acquire_lock():
            raise StockSyncLockedError("Sync already running")

        summary = SyncSummary()
        try:
            for page in range(1, MAX_PAGES + 1):
                stories = await self.cms.list_products(page=page, per_page=PER_PAGE)
                if not stories:
                    break
                for story in stories:
                    await self._reconcile(story, summary)
                if len(stories) < PER_PAGE:
                    break

            await self._mark_synced()
        finally:
            await self._release_lock()

        logger.info(f"Stock sync complete: {summary.to_dict()}")
        return summary

    async def _reconcile(self, story: dict, summary: SyncSummary) -> None:
        summary.total += 1
        slug = resolve_slug(story)
        cms_stock = story_stock(story)
        if not slug or cms_stock is None:
            summary.missingStock += 1
            return

        for _ in range(RESTOCK_ATTEMPTS):
            existing = await self.ledger.get_recorded_stock(slug)
            if existing is not None and cms_stock < existing:
                summary.drift += 1
                logger.info(f"Stock drift detected: slug={slug} cms={cms_stock} ledger={existing}")
                return
            if existing == cms_stock:
                summary.skipped += 1
                return
            # Compare-and-set: a settlement landing after the read wins
            if await self.ledger.restock(slug, existing, cms_stock):
                if existing is None:
                    summary.updated += 1
                else:
                    summary.restocked += 1
                    logger.info(f"Restocked {slug}: {existing} -> {cms_stock}")
                return

        summary.skipped += 1
        logger.warning(f"Stock for {slug} kept changing during sync, left for the next run")

    async def _mark_synced(self) -> None:
        try:
            await self.redis.set(STOCK_LAST_SYNC_KEY, str(int(time.time() * 1000)))
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to record stock sync time: {e}") from e

    async def _acquire_lock(self) -> bool:
        try:
            return bool(await self.redis.set(STOCK_SYNC_LOCK_KEY, "1", nx=True, ex=LOCK_TTL_SECONDS))
        except RedisError as e:
            raise StoreUnavailableError(f"Failed to take stock sync lock: {e}") from e

    async def _release_lock(self) -> None:
        try:
            await self.redis.delete(STOCK_SYNC_LOCK_KEY)
        except RedisError as e:
            logger.error(f"Failed to release stock sync lock: {e}")
