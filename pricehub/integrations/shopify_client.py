import logging

import httpx

from pricehub.core.config import settings
from pricehub.integrations.base_client import BaseApiClient
from pricehub.integrations.connector import PlatformConnector, PriceUpdateResult, format_minor_units

logger = logging.getLogger(__name__)

VARIANT_PRICE_MUTATION = """
mutation productVariantUpdate($input: ProductVariantInput!) {
  productVariantUpdate(input: $input) {
    productVariant { id price compareAtPrice sku }
    userErrors { field message }
  }
}
"""


def variant_gid(external_ref: str) -> str:
    if external_ref.startswith("gid://"):
        return external_ref
    return f"gid://shopify/ProductVariant/{external_ref}"


class ShopifyConnector(BaseApiClient, PlatformConnector):
    """Shopify Admin API connector: price writes go through the productVariantUpdate mutation."""
    platform = "shopify"

    def __init__(self, shop_domain: str | None = None, access_token: str | None = None,
                 api_version: str | None = None, **client_kwargs):
        shop_domain = shop_domain or settings.SHOPIFY_SHOP_DOMAIN
        access_token = access_token or settings.SHOPIFY_ACCESS_TOKEN
        if not shop_domain or not access_token:
            raise ValueError("SHOPIFY_SHOP_DOMAIN and SHOPIFY_ACCESS_TOKEN must be set")
        api_version = api_version or settings.SHOPIFY_API_VERSION

        domain = shop_domain if shop_domain.endswith(".myshopify.com") else f"{shop_domain}.myshopify.com"
        super().__init__(
            base_url=f"https://{domain}/admin/api/{api_version}",
            headers={"X-Shopify-Access-Token": access_token, "Content-Type": "application/json"},
            **client_kwargs,
        )
        self.shop_domain = domain

    async def test_connection(self) -> bool:
        try:
            data = await self._request("GET", "/shop.json")
        except httpx.HTTPError as e:
            logger.warning("Shopify connection test failed: %s", e, extra={"extra": {"shop": self.shop_domain}})
            return False
        return bool(data.get("shop"))

    async def update_price(self, external_ref: str, new_amount: int, new_compare_at: int | None = None, *,
                           currency: str | None = None, idempotency_key: str | None = None) -> PriceUpdateResult:
        variables = {
            "input": {
                "id": variant_gid(external_ref),
                "price": format_minor_units(new_amount, currency),
                "compareAtPrice": format_minor_units(new_compare_at, currency) if new_compare_at is not None else None,
            }
        }
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            response = await self._request("POST", "/graphql.json",
                                           json={"query": VARIANT_PRICE_MUTATION, "variables": variables},
                                           headers=headers)
        except httpx.HTTPError as e:
            return PriceUpdateResult(success=False, external_ref=external_ref, error=f"Shopify request failed: {e}")

        if response.get("errors"):
            messages = [err.get("message", str(err)) for err in response["errors"]]
            return PriceUpdateResult(success=False, external_ref=external_ref, error=", ".join(messages))

        result = (response.get("data") or {}).get("productVariantUpdate") or {}
        user_errors = result.get("userErrors") or []
        if user_errors:
            return PriceUpdateResult(success=False, external_ref=external_ref,
                                     error=", ".join(e.get("message", "") for e in user_errors))
        if not result.get("productVariant"):
            return PriceUpdateResult(success=False, external_ref=external_ref,
                                     error="Shopify returned no variant for the update")
        return PriceUpdateResult(success=True, external_ref=external_ref)
