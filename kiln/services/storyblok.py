"""
Storyblok CMS client

Read side (CDN API): product stories under the `products/` folder. The
`pcs` content field is the shop's stock count.
Write side (Management API): mirror stock back to the product story and
create order stories in the orders folder.

The CMS copy of stock is a read optimization; Redis is authoritative.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from kiln.core.config import settings
from kiln.core.exceptions import CMSConfigurationError, CMSError, CMSOrderError

logger = logging.getLogger(__name__)

PRODUCTS_FOLDER = "products"


@dataclass
class OrderRecord:
    """Order story written after a successful payment."""
    order_id: str
    product_slugs: List[str]
    quantities: Dict[str, int]
    customer: Dict[str, str]
    delivery_method: str = "courier"
    inpost_point: Any = None
    status: str = "paid"
    backorder_by_slug: Dict[str, int] = field(default_factory=dict)

    def to_story_content(self) -> Dict[str, Any]:
        return {
            "component": "order",
            "order_id": self.order_id,
            "product_slug": ", ".join(self.product_slugs),
            "product_slugs": self.product_slugs,
            "status": self.status,
            "quantities": self.quantities,
            "backorder": self.backorder_by_slug,
            "delivery_method": self.delivery_method,
            "inpost_point": self.inpost_point,
            "customer_name": self.customer.get("name", "Unknown"),
            "email": self.customer.get("email", "Unknown"),
            "phone": self.customer.get("phone", "Unknown"),
            "address_line1": self.customer.get("address1", "Unknown"),
            "postal_code": self.customer.get("postalCode", "Unknown"),
            "city": self.customer.get("city", "Unknown"),
            "country": self.customer.get("country", "Unknown"),
        }


def resolve_slug(story: Dict[str, Any]) -> Optional[str]:
    if story.get("slug"):
        return story["slug"]
    full_slug = story.get("full_slug")
    if full_slug:
        return full_slug.removeprefix(f"{PRODUCTS_FOLDER}/")
    return None


def story_stock(story: Optional[Dict[str, Any]]) -> Optional[int]:
    """The `pcs` field as a non-negative int, or None when absent or not numeric."""
    if not story:
        return None
    pcs = (story.get("content") or {}).get("pcs")
    if isinstance(pcs, bool) or not isinstance(pcs, (int, float)):
        return None
    if pcs < 0 or pcs != pcs:  # negative or NaN
        return None
    return int(pcs)


class StoryblokClient:
    """CMS collaborator over httpx."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client or httpx.AsyncClient(timeout=settings.STORYBLOK_TIMEOUT_SECONDS)

    async def close(self) -> None:
        await self._client.aclose()

    # ----- CDN (read) -----

    def _cdn_token(self) -> str:
        token = settings.STORYBLOK_TOKEN.strip()
        if not token:
            raise CMSConfigurationError("Missing STORYBLOK_TOKEN")
        return token

    async def get_product(self, slug: str) -> Optional[Dict[str, Any]]:
        """Fetch a published product story; None if it does not exist."""
        response = await self._request(
            "GET",
            f"{settings.STORYBLOK_CDN_BASE}/stories/{PRODUCTS_FOLDER}/{slug}",
            params={"version": "published", "token": self._cdn_token()},
            allow_not_found=True,
        )
        if response is None:
            return None
        return response.json().get("story")

    async def get_product_stock(self, slug: str) -> Optional[int]:
        return story_stock(await self.get_product(slug))

    async def list_products(self, page: int = 1, per_page: int = 100) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET",
            f"{settings.STORYBLOK_CDN_BASE}/stories",
            params={
                "starts_with": PRODUCTS_FOLDER,
                "per_page": per_page,
                "page": page,
                "version": "published",
                "token": self._cdn_token(),
            },
        )
        return response.json().get("stories") or []

    # ----- Management (write) -----

    def _management_base(self) -> str:
        if not settings.STORYBLOK_MANAGEMENT_TOKEN or not settings.STORYBLOK_SPACE_ID:
            raise CMSConfigurationError("Missing STORYBLOK_MANAGEMENT_TOKEN or STORYBLOK_SPACE_ID")
        return f"{settings.STORYBLOK_MANAGEMENT_BASE}/spaces/{settings.STORYBLOK_SPACE_ID}"

    async def _management(self, method: str, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        base = self._management_base()
        response = await self._request(
            method,
            f"{base}{path}",
            json=payload,
            headers={"Authorization": settings.STORYBLOK_MANAGEMENT_TOKEN},
        )
        return response.json()

    async def update_product_stock(self, slug: str, stock: int) -> Dict[str, Any]:
        """Mirror the ledger's stock onto the product story (saved, not published)."""
        story = await self.get_product(slug)
        if story is None:
            raise CMSError(f"Product story not found: {slug}", status=404)
        content = {**(story.get("content") or {}), "stock": stock}
        return await self._management("PUT", f"/stories/{story['id']}", {
            "story": {"name": story.get("name"), "slug": story.get("slug"), "content": content},
            "publish": 0,
        })

    async def create_order_record(self, order: OrderRecord) -> Dict[str, Any]:
        folder_id = settings.STORYBLOK_ORDERS_FOLDER_ID
        if not folder_id:
            raise CMSConfigurationError("Missing STORYBLOK_ORDERS_FOLDER_ID")
        try:
            return await self._management("POST", "/stories/", {
                "story": {
                    "name": order.order_id,
                    "slug": f"orders/{order.order_id}",
                    "parent_id": int(folder_id),
                    "content": order.to_story_content(),
                },
                "publish": 0,
            })
        except CMSError as e:
            raise CMSOrderError(f"Order story for {order.order_id} failed: {e.message}",
                                status=e.details.get("upstream_status")) from e

    # ----- transport -----

    async def _request(
        self,
        method: str,
        url: str,
        allow_not_found: bool = False,
        **kwargs,
    ) -> Optional[httpx.Response]:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Storyblok request failed: {method} {url.split('?')[0]}: {e}")
            raise CMSError(f"Storyblok unreachable: {e}") from e

        if allow_not_found and response.status_code == 404:
            return None
        if response.is_error:
            logger.error(f"Storyblok error {response.status_code}: {method} {url}")
            raise CMSError(f"Storyblok API error: {response.status_code} {response.text[:200]}",
                           status=response.status_code)
        return response
