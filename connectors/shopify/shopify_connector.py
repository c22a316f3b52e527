"""Shopify Storefront Connector.

Implements the StorefrontConnector interface for the Shopify Admin REST API.
"""

import re
from typing import Any, Dict, List, Optional

from connectors.http_client import (
    ApiClient,
    ConnectorError,
    ConnectorNotFoundError,
    parse_shopify_rate_limit,
)
from connectors.shopify.shopify_models import (
    ShopifyInventoryLevel,
    ShopifyProduct,
    ShopifyShop,
    ShopifyVariant,
)
from connectors.storefront_base import (
    ConnectionResult,
    ProductsPage,
    SkuProduct,
    StandardProduct,
    StoreConfig,
    StorefrontConnector,
    register_connector,
)
from core.observability import get_logger

logger = get_logger(__name__)

_NEXT_PAGE_RE = re.compile(r'<[^>]*page_info=([^>&]+)[^>]*>;\s*rel="next"')


def parse_next_page_info(link_header: Optional[str]) -> Optional[str]:
    """Cursor for the next page from a Link header, if any."""
    if not link_header:
        return None
    match = _NEXT_PAGE_RE.search(link_header)
    return match.group(1) if match else None


def normalize_shop_url(store_url: str) -> str:
    url = store_url.strip().rstrip("/")
    if not url.startswith("http://") and not url.startswith("https://"):
        url = f"https://{url}"
    return url


@register_connector("shopify")
class ShopifyConnector(StorefrontConnector):
    """Shopify connector implementation.

    Required credentials:
    - access_token: Admin API access token (X-Shopify-Access-Token)

    Optional:
    - api_version: Admin API version (default: "2024-10")
    - api_secret: used by webhook verification, not by this connector

    Pagination is cursor based: the next page's page_info comes from the
    Link header, and page_info requests may only carry `limit`.
    """

    DEFAULT_API_VERSION = "2024-10"
    PAGE_SIZE = 250

    def __init__(self, config: StoreConfig):
        super().__init__(config)
        access_token = config.credentials.get("access_token")
        if not access_token:
            raise ValueError("Shopify store requires credentials.access_token")

        self.api_version = config.api_version or self.DEFAULT_API_VERSION
        self.shop_url = normalize_shop_url(config.store_url)
        self.client = ApiClient(
            f"{self.shop_url}/admin/api/{self.api_version}",
            headers={"X-Shopify-Access-Token": access_token},
            timeout_seconds=config.timeout_seconds,
            retry_config=config.retry_config,
            rate_limit_parser=parse_shopify_rate_limit,
            name="shopify",
        )
        self._location_id: Optional[int] = None

    async def test_connection(self) -> ConnectionResult:
        try:
            shop_response = await self.client.get("shop.json")
            shop = ShopifyShop.model_validate(shop_response.data["shop"])
            count_response = await self.client.get("products/count.json")
        except ConnectorError as e:
            logger.warning(f"Shopify connection test failed for {self.shop_url}: {e}")
            return ConnectionResult(success=False, message=str(e), details=e.to_dict())

        return ConnectionResult(
            success=True,
            message="Connected",
            shop_name=shop.name,
            details={
                "shop_id": shop.id,
                "domain": shop.domain,
                "myshopify_domain": shop.myshopify_domain,
                "currency": shop.currency,
                "products_count": (count_response.data or {}).get("count"),
                "api_version": self.api_version,
            },
        )

    async def get_products(
        self,
        page: int = 1,
        page_size: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> ProductsPage:
        params: Dict[str, Any] = {"limit": page_size or self.PAGE_SIZE}
        if cursor:
            params["page_info"] = cursor
        else:
            params["status"] = "active"

        response = await self.client.get("products.json", params=params)
        products = [
            ShopifyProduct.model_validate(p).to_standard()
            for p in (response.data or {}).get("products", [])
        ]
        next_cursor = parse_next_page_info(response.headers.get("Link"))
        return ProductsPage(
            products=products,
            next_cursor=next_cursor,
            has_more=next_cursor is not None,
        )

    async def get_product(self, product_id: str) -> Optional[StandardProduct]:
        try:
            response = await self.client.get(f"products/{product_id}.json")
        except ConnectorNotFoundError:
            return None
        return ShopifyProduct.model_validate(response.data["product"]).to_standard()

    async def get_product_by_sku(self, sku: str) -> Optional[SkuProduct]:
        # The REST Admin API has no SKU filter; scan the catalogue.
        for product in await self.get_products_with_sku():
            if product.sku == sku:
                return product
        return None

    async def get_products_by_skus(self, skus: List[str]) -> Dict[str, SkuProduct]:
        wanted = set(skus)
        found: Dict[str, SkuProduct] = {}
        for product in await self.get_products_with_sku():
            if product.sku in wanted and product.sku not in found:
                found[product.sku] = product
        return found

    async def update_stock(self, product: SkuProduct, quantity: int) -> None:
        inventory_item_id = product.inventory_item_id
        if not inventory_item_id:
            if not product.variant_id:
                raise ConnectorError(
                    f"SKU {product.sku} has neither inventory item nor variant id",
                    "MISSING_INVENTORY_ITEM",
                )
            variant_response = await self.client.get(f"variants/{product.variant_id}.json")
            variant = ShopifyVariant.model_validate(variant_response.data["variant"])
            if not variant.inventory_item_id:
                raise ConnectorError(
                    f"Variant {product.variant_id} has no inventory item",
                    "MISSING_INVENTORY_ITEM",
                )
            inventory_item_id = str(variant.inventory_item_id)

        location_id = await self._resolve_location(inventory_item_id)
        await self.client.post("inventory_levels/set.json", json_body={
            "location_id": location_id,
            "inventory_item_id": int(inventory_item_id),
            "available": quantity,
        })
        logger.info(f"Shopify stock for {product.sku} set to {quantity} at location {location_id}")

    async def _resolve_location(self, inventory_item_id: str) -> int:
        """Location holding the inventory item, connecting the primary one if needed."""
        try:
            response = await self.client.get(
                "inventory_levels.json", params={"inventory_item_ids": inventory_item_id}
            )
            levels = [
                ShopifyInventoryLevel.model_validate(level)
                for level in (response.data or {}).get("inventory_levels", [])
            ]
            if levels:
                return levels[0].location_id
        except ConnectorError as e:
            logger.warning(f"Could not read inventory levels for item {inventory_item_id}: {e}")

        if self._location_id is None:
            shop_response = await self.client.get("shop.json")
            shop = ShopifyShop.model_validate(shop_response.data["shop"])
            if not shop.primary_location_id:
                raise ConnectorError("Shop has no primary location for inventory updates", "NO_LOCATION")
            self._location_id = shop.primary_location_id

        try:
            await self.client.post("inventory_levels/connect.json", json_body={
                "location_id": self._location_id,
                "inventory_item_id": int(inventory_item_id),
            })
        except ConnectorError as e:
            # 422: already connected to this location
            if e.http_status != 422:
                raise
        return self._location_id

    async def get_products_with_sku(self, limit: Optional[int] = None) -> List[SkuProduct]:
        results = await super().get_products_with_sku(limit=limit)
        logger.info(f"Shopify catalogue scan found {len(results)} SKU(s)")
        return results
