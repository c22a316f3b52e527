"""WooCommerce Storefront Connector.

Implements the StorefrontConnector interface for the WooCommerce REST API
(wc/v3), authenticated with a consumer key/secret over HTTP Basic auth.
"""

from typing import List, Optional

import aiohttp

from connectors.http_client import (
    ApiClient,
    ConnectorError,
    ConnectorNotFoundError,
    parse_woocommerce_rate_limit,
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
from connectors.woocommerce.woo_models import WooProduct, WooVariation
from core.observability import get_logger

logger = get_logger(__name__)


def _int_header(headers, name: str) -> Optional[int]:
    value = headers.get(name)
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


@register_connector("woocommerce")
class WooCommerceConnector(StorefrontConnector):
    """WooCommerce connector implementation.

    Required credentials:
    - consumer_key
    - consumer_secret

    Optional:
    - webhook_secret: used by webhook verification, not by this connector

    Pagination is page-number based; totals come from X-WP-Total and
    X-WP-TotalPages.
    """

    PAGE_SIZE = 100

    def __init__(self, config: StoreConfig):
        super().__init__(config)
        key = config.credentials.get("consumer_key")
        secret = config.credentials.get("consumer_secret")
        if not key or not secret:
            raise ValueError("WooCommerce store requires credentials.consumer_key and consumer_secret")

        site_url = config.store_url.strip().rstrip("/")
        if not site_url.startswith("http://") and not site_url.startswith("https://"):
            site_url = f"https://{site_url}"
        self.site_url = site_url
        self.client = ApiClient(
            f"{site_url}/wp-json/wc/v3",
            auth=aiohttp.BasicAuth(key, secret),
            timeout_seconds=config.timeout_seconds,
            retry_config=config.retry_config,
            rate_limit_parser=parse_woocommerce_rate_limit,
            name="woocommerce",
        )

    async def test_connection(self) -> ConnectionResult:
        try:
            response = await self.client.get("products", params={"per_page": 1, "status": "publish"})
        except ConnectorError as e:
            logger.warning(f"WooCommerce connection test failed for {self.site_url}: {e}")
            return ConnectionResult(success=False, message=str(e), details=e.to_dict())

        return ConnectionResult(
            success=True,
            message="Connected",
            shop_name=self.site_url,
            details={"products_count": _int_header(response.headers, "X-WP-Total") or 0},
        )

    async def _variations(self, product: WooProduct) -> List[WooVariation]:
        response = await self.client.get(
            f"products/{product.id}/variations", params={"per_page": self.PAGE_SIZE}
        )
        return [WooVariation.model_validate(v) for v in response.data or []]

    async def _to_standard(self, product: WooProduct) -> StandardProduct:
        variations = await self._variations(product) if product.is_variable else None
        return product.to_standard(variations)

    async def get_products(
        self,
        page: int = 1,
        page_size: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> ProductsPage:
        response = await self.client.get("products", params={
            "page": page,
            "per_page": page_size or self.PAGE_SIZE,
            "status": "publish",
        })
        products = []
        for raw in response.data or []:
            products.append(await self._to_standard(WooProduct.model_validate(raw)))

        total = _int_header(response.headers, "X-WP-Total")
        total_pages = _int_header(response.headers, "X-WP-TotalPages") or 1
        return ProductsPage(
            products=products,
            total=total,
            total_pages=total_pages,
            has_more=page < total_pages,
        )

    async def get_product(self, product_id: str) -> Optional[StandardProduct]:
        try:
            response = await self.client.get(f"products/{product_id}")
        except ConnectorNotFoundError:
            return None
        return await self._to_standard(WooProduct.model_validate(response.data))

    async def get_product_by_sku(self, sku: str) -> Optional[SkuProduct]:
        response = await self.client.get("products", params={"sku": sku})
        for raw in response.data or []:
            product = await self._to_standard(WooProduct.model_validate(raw))
            for entry in self.sku_products(product):
                if entry.sku == sku:
                    return entry
        return None

    async def update_stock(self, product: SkuProduct, quantity: int) -> None:
        if product.variant_id:
            path = f"products/{product.product_id}/variations/{product.variant_id}"
        else:
            path = f"products/{product.product_id}"
        await self.client.put(path, json_body={"manage_stock": True, "stock_quantity": quantity})
        logger.info(f"WooCommerce stock for {product.sku} set to {quantity}")
