import json

import httpx
import pytest

from pricehub.core.errors import ConnectorError
from pricehub.integrations.connector import ConnectorRegistry, format_minor_units
from pricehub.integrations.shopify_client import ShopifyConnector, variant_gid

UPDATED = {"data": {"productVariantUpdate": {
    "productVariant": {"id": "gid://shopify/ProductVariant/42", "price": "19.99"}, "userErrors": []}}}


def _connector(handler, **kwargs):
    return ShopifyConnector(shop_domain="demo", access_token="shpat_secret", api_version="2024-07",
                            transport=httpx.MockTransport(handler), **kwargs)


@pytest.mark.parametrize("amount,currency,expected", [
    (1999, "USD", "19.99"),
    (5, "EUR", "0.05"),
    (0, "USD", "0.00"),
    (500, "JPY", "500"),
    (12345, "KWD", "12.345"),
    (1999, None, "19.99"),
])
def test_format_minor_units(amount, currency, expected):
    assert format_minor_units(amount, currency) == expected


def test_variant_gid():
    assert variant_gid("42") == "gid://shopify/ProductVariant/42"
    assert variant_gid("gid://shopify/ProductVariant/42") == "gid://shopify/ProductVariant/42"


def test_connector_requires_credentials():
    with pytest.raises(ValueError):
        ShopifyConnector(shop_domain="demo", access_token="")


@pytest.mark.asyncio
async def test_update_price_sends_variant_mutation():
    """The price write is a productVariantUpdate mutation with decimal prices and the idempotency key."""
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=UPDATED)

    connector = _connector(handler)
    result = await connector.update_price("42", 1999, 2499, currency="USD", idempotency_key="t:42:run:1999")
    await connector.close()

    assert result.success is True
    assert result.external_ref == "42"
    request = requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://demo.myshopify.com/admin/api/2024-07/graphql.json"
    assert request.headers["X-Shopify-Access-Token"] == "shpat_secret"
    assert request.headers["Idempotency-Key"] == "t:42:run:1999"
    body = json.loads(request.content)
    assert "productVariantUpdate" in body["query"]
    assert body["variables"]["input"] == {
        "id": "gid://shopify/ProductVariant/42", "price": "19.99", "compareAtPrice": "24.99"}


@pytest.mark.asyncio
async def test_update_price_reports_user_errors():
    def handler(request):
        return httpx.Response(200, json={"data": {"productVariantUpdate": {
            "productVariant": None, "userErrors": [{"field": ["price"], "message": "Price must be positive"}]}}})

    connector = _connector(handler)
    result = await connector.update_price("42", 100)
    await connector.close()

    assert result.success is False
    assert result.error == "Price must be positive"


@pytest.mark.asyncio
async def test_update_price_reports_graphql_errors():
    def handler(request):
        return httpx.Response(200, json={"errors": [{"message": "Throttled"}]})

    connector = _connector(handler)
    result = await connector.update_price("42", 100)
    await connector.close()

    assert result.success is False
    assert result.error == "Throttled"


@pytest.mark.asyncio
async def test_update_price_retries_server_errors():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(502, text="Bad gateway")
        return httpx.Response(200, json=UPDATED)

    connector = _connector(handler, tries=3)
    result = await connector.update_price("42", 1999)
    await connector.close()

    assert result.success is True
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        return httpx.Response(404, json={"errors": "Not Found"})

    connector = _connector(handler, tries=3)
    result = await connector.update_price("42", 1999)
    await connector.close()

    assert result.success is False
    assert result.error.startswith("Shopify request failed")
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_connection_check():
    def healthy(request):
        assert request.url.path == "/admin/api/2024-07/shop.json"
        return httpx.Response(200, json={"shop": {"name": "Demo"}})

    def unauthorized(request):
        return httpx.Response(401, json={"errors": "Invalid API key"})

    ok = _connector(healthy)
    denied = _connector(unauthorized)
    assert await ok.test_connection() is True
    assert await denied.test_connection() is False
    await ok.close()
    await denied.close()


def test_registry_rejects_unknown_platform():
    registry = ConnectorRegistry()
    with pytest.raises(ConnectorError):
        registry.get("woocommerce")
