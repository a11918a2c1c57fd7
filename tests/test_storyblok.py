import json

import httpx
import pytest

from kiln.core.config import settings
from kiln.core.exceptions import CMSConfigurationError, CMSError, CMSOrderError
from kiln.services.storyblok import OrderRecord, StoryblokClient, resolve_slug, story_stock

PRODUCT_STORY = {
    "id": 4242,
    "name": "Blue mug",
    "slug": "mug-blue",
    "full_slug": "products/mug-blue",
    "content": {"component": "product", "pcs": 2, "stock": 2},
}


def make_client(handler) -> StoryblokClient:
    return StoryblokClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_story_stock_parsing():
    assert story_stock({"content": {"pcs": 3}}) == 3
    assert story_stock({"content": {"pcs": 2.0}}) == 2
    assert story_stock({"content": {"pcs": -1}}) is None
    assert story_stock({"content": {"pcs": "3"}}) is None
    assert story_stock({"content": {"pcs": True}}) is None
    assert story_stock({"content": {}}) is None
    assert story_stock(None) is None


def test_resolve_slug():
    assert resolve_slug({"slug": "jug"}) == "jug"
    assert resolve_slug({"full_slug": "products/jug"}) == "jug"
    assert resolve_slug({}) is None


@pytest.mark.asyncio
async def test_get_product_uses_cdn_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = request.url
        return httpx.Response(200, json={"story": PRODUCT_STORY})

    cms = make_client(handler)
    stock = await cms.get_product_stock("mug-blue")
    await cms.close()

    assert stock == 2
    assert seen["url"].path == "/v2/cdn/stories/products/mug-blue"
    assert seen["url"].params["token"] == "storyblok-test-token"
    assert seen["url"].params["version"] == "published"


@pytest.mark.asyncio
async def test_missing_product_is_none():
    cms = make_client(lambda request: httpx.Response(404, json={}))
    assert await cms.get_product("ghost") is None
    await cms.close()


@pytest.mark.asyncio
async def test_upstream_error_raises_cms_error():
    cms = make_client(lambda request: httpx.Response(500, text="boom"))
    with pytest.raises(CMSError) as exc_info:
        await cms.list_products()
    await cms.close()
    assert exc_info.value.details["upstream_status"] == 500


@pytest.mark.asyncio
async def test_transport_error_raises_cms_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    cms = make_client(handler)
    with pytest.raises(CMSError):
        await cms.get_product("mug-blue")
    await cms.close()


@pytest.mark.asyncio
async def test_update_product_stock_writes_story():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.method == "GET":
            return httpx.Response(200, json={"story": PRODUCT_STORY})
        return httpx.Response(200, json={"story": {"id": 4242}})

    cms = make_client(handler)
    await cms.update_product_stock("mug-blue", 1)
    await cms.close()

    put = calls[-1]
    assert put.method == "PUT"
    assert put.url.path == "/v1/spaces/12345/stories/4242"
    assert put.headers["Authorization"] == "storyblok-management-test-token"
    body = json.loads(put.content)
    assert body["story"]["content"]["stock"] == 1
    assert body["story"]["content"]["pcs"] == 2
    assert body["publish"] == 0


@pytest.mark.asyncio
async def test_create_order_record():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        return httpx.Response(201, json={"story": {"id": 1}})

    order = OrderRecord(
        order_id="pi_1",
        product_slugs=["mug-blue", "bowl"],
        quantities={"mug-blue": 1, "bowl": 2},
        customer={"name": "Ania", "email": "ania@example.com"},
        backorder_by_slug={"bowl": 1},
    )
    cms = make_client(handler)
    await cms.create_order_record(order)
    await cms.close()

    story = captured["body"]["story"]
    assert story["slug"] == "orders/pi_1"
    assert story["parent_id"] == 678
    assert story["content"]["product_slug"] == "mug-blue, bowl"
    assert story["content"]["backorder"] == {"bowl": 1}
    assert story["content"]["city"] == "Unknown"


@pytest.mark.asyncio
async def test_order_failure_is_cms_order_error():
    cms = make_client(lambda request: httpx.Response(422, json={"error": "slug taken"}))
    with pytest.raises(CMSOrderError):
        await cms.create_order_record(OrderRecord("pi_1", [], {}, {}))
    await cms.close()


@pytest.mark.asyncio
async def test_missing_cdn_token(monkeypatch):
    monkeypatch.setattr(settings, "STORYBLOK_TOKEN", "")
    cms = make_client(lambda request: httpx.Response(200, json={}))
    with pytest.raises(CMSConfigurationError):
        await cms.get_product("mug-blue")
    await cms.close()
