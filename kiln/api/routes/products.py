"""
Product Routes

Product content comes from the CMS; availability comes from the ledger.
Viewing a product seeds its stock counter from the CMS if Redis has none.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException

from kiln.api.deps import get_cms, get_ledger
from kiln.services.stock_ledger import StockLedger
from kiln.services.storyblok import StoryblokClient, story_stock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/products", tags=["products"])


@router.get("/{slug}")
async def get_product(
    slug: str,
    ledger: StockLedger = Depends(get_ledger),
    cms: StoryblokClient = Depends(get_cms),
):
    story = await cms.get_product(slug)
    if story is None:
        raise HTTPException(status_code=404, detail="Product not found")

    pcs = story_stock(story)
    if pcs is not None and await ledger.seed(slug, pcs):
        logger.info(f"Stock counter for {slug} seeded on first view")

    level = await ledger.get_level(slug)
    return {
        "story": story,
        "availability": level.to_dict(),
    }


@router.get("/{slug}/availability")
async def get_availability(
    slug: str,
    ledger: StockLedger = Depends(get_ledger),
):
    """Ledger counters only; never touches the CMS."""
    level = await ledger.get_level(slug)
    return level.to_dict()
