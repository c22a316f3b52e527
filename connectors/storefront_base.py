"""Abstract Storefront Connector Interface.

This module defines the interface every storefront platform connector must
implement. It is intentionally platform-agnostic - no Shopify or WooCommerce
specifics here.

Connectors implement this interface to:
1. Authenticate against the platform's admin API
2. Page through products and expose the SKU-carrying ones
3. Look up a product by id or SKU
4. Write a stock quantity back to the platform

Key Design Principles:
- All methods return NORMALIZED objects (StandardProduct, SkuProduct) - not platform payloads
- The push service and pull engine depend ONLY on this interface
- The platform is resolved once, when a store is loaded, through the registry
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from connectors.http_client import ApiClient, RateLimitInfo, RetryConfig


# =============================================================================
# Normalized Product Models
# =============================================================================

class StandardProduct(BaseModel):
    """A storefront product with its variants flattened to SKU entries."""
    id: str = Field(..., description="Platform product id")
    name: str = Field(default="", description="Product title")
    sku: Optional[str] = Field(default=None, description="Product-level SKU, if any")
    stock_quantity: Optional[int] = Field(default=None, description="Product-level stock, if managed")
    status: Optional[str] = None
    variants: List["SkuProduct"] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Additional platform data")


class SkuProduct(BaseModel):
    """One stock-keeping unit on the storefront.

    For platforms with variants, each variant with a SKU is its own SkuProduct.
    The identifiers needed to write stock back travel with it.
    """
    sku: str
    product_id: str
    variant_id: Optional[str] = None
    inventory_item_id: Optional[str] = Field(default=None, description="Shopify inventory item")
    name: str = ""
    stock_quantity: int = 0


class ProductsPage(BaseModel):
    products: List[StandardProduct] = Field(default_factory=list)
    total: Optional[int] = None
    total_pages: Optional[int] = None
    next_cursor: Optional[str] = None
    has_more: bool = False


class ConnectionResult(BaseModel):
    success: bool
    message: str = ""
    shop_name: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


StandardProduct.model_rebuild()


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class StoreConfig:
    """Configuration for a storefront connector."""
    platform: str                           # "shopify", "woocommerce"
    store_url: str
    credentials: Dict[str, Any] = field(default_factory=dict)
    store_id: Optional[str] = None
    api_version: Optional[str] = None
    timeout_seconds: float = 30
    retry_config: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_store(cls, store, timeout_seconds: float = 30) -> "StoreConfig":
        """Build from a core.models.Store record."""
        platform = store.platform.value if hasattr(store.platform, "value") else str(store.platform)
        return cls(
            platform=platform,
            store_url=store.store_url,
            credentials=dict(store.credentials),
            store_id=store.id,
            api_version=store.credentials.get("api_version"),
            timeout_seconds=timeout_seconds,
        )


# =============================================================================
# Abstract Connector Interface
# =============================================================================

class StorefrontConnector(ABC):
    """Abstract base class for storefront connectors.

    Implementations:
    - connectors/shopify/shopify_connector.py
    - connectors/woocommerce/woo_connector.py

    Connectors are async context managers; the HTTP session lives between
    connect() and close().
    """

    platform: str = ""

    def __init__(self, config: StoreConfig):
        self.config = config
        self.client: Optional[ApiClient] = None

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> None:
        if self.client is not None:
            await self.client.connect()

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()

    async def __aenter__(self) -> "StorefrontConnector":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @abstractmethod
    async def test_connection(self) -> ConnectionResult:
        """Check credentials against the platform."""
        pass

    # =========================================================================
    # Products
    # =========================================================================

    @abstractmethod
    async def get_products(
        self,
        page: int = 1,
        page_size: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> ProductsPage:
        """One page of products (page-number or cursor pagination)."""
        pass

    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[StandardProduct]:
        pass

    @abstractmethod
    async def get_product_by_sku(self, sku: str) -> Optional[SkuProduct]:
        pass

    @abstractmethod
    async def update_stock(self, product: SkuProduct, quantity: int) -> None:
        """Set the absolute stock quantity for a SKU.

        Raises:
            ConnectorError: The platform rejected the update
        """
        pass

    async def get_products_with_sku(self, limit: Optional[int] = None) -> List[SkuProduct]:
        """Full paginated scan, flattened to SKU entries.

        Args:
            limit: Stop after this many SKUs
        """
        results: List[SkuProduct] = []
        page = 1
        cursor: Optional[str] = None
        while True:
            batch = await self.get_products(page=page, cursor=cursor)
            for product in batch.products:
                results.extend(self.sku_products(product))
                if limit is not None and len(results) >= limit:
                    return results[:limit]
            if not batch.has_more:
                return results
            page += 1
            cursor = batch.next_cursor

    async def get_products_by_skus(self, skus: List[str]) -> Dict[str, SkuProduct]:
        """Look up several SKUs; missing ones are absent from the result."""
        found: Dict[str, SkuProduct] = {}
        for sku in skus:
            product = await self.get_product_by_sku(sku)
            if product is not None:
                found[sku] = product
        return found

    @staticmethod
    def sku_products(product: StandardProduct) -> List[SkuProduct]:
        """SKU entries for a product: its variants, or itself when it has a SKU."""
        if product.variants:
            return [v for v in product.variants if v.sku]
        if product.sku:
            return [SkuProduct(
                sku=product.sku,
                product_id=product.id,
                name=product.name,
                stock_quantity=product.stock_quantity or 0,
            )]
        return []

    # =========================================================================
    # Rate limiting
    # =========================================================================

    @property
    def rate_limit_info(self) -> Optional[RateLimitInfo]:
        return self.client.rate_limit_info if self.client else None

    def is_approaching_rate_limit(self, threshold: float = 0.1) -> bool:
        return self.client.is_approaching_rate_limit(threshold) if self.client else False

    def get_connector_name(self) -> str:
        return self.__class__.__name__


# =============================================================================
# Connector Registry
# =============================================================================

_connector_registry: Dict[str, type] = {}


def register_connector(platform: str):
    """Decorator to register a storefront connector implementation."""
    def decorator(cls):
        cls.platform = platform
        _connector_registry[platform] = cls
        return cls
    return decorator


def create_connector(config: StoreConfig) -> StorefrontConnector:
    """Create a connector instance from configuration.

    Raises:
        ValueError: If the platform is not registered
    """
    platform = config.platform.lower()

    if platform not in _connector_registry:
        available = list(_connector_registry.keys())
        raise ValueError(
            f"Unknown storefront platform: {platform}. "
            f"Available: {available}"
        )

    return _connector_registry[platform](config)


def list_available_connectors() -> List[str]:
    """List all registered storefront platforms."""
    return list(_connector_registry.keys())
