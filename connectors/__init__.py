"""Platform Connectors - storefront and ledger API integrations.

This package contains the abstract storefront and ledger interfaces and the
concrete implementations (Shopify, WooCommerce, Contifico). It handles:
- Platform-specific authentication
- Pagination and rate-limit aware retries
- Translating platform payloads to normalized products and movements

Key Design Principle:
- The push service and pull engine depend ONLY on StorefrontConnector and LedgerConnector
- All methods return NORMALIZED types (SkuProduct, MovementResult, ...)
- No platform payload types leak through the interfaces

To add a new platform:
1. Create a new folder (e.g., magento/)
2. Implement StorefrontConnector (or LedgerConnector)
3. Register using @register_connector (or @register_ledger)
4. Import it from connectors/factory.py
"""

from connectors.http_client import (
    ApiClient,
    ApiResponse,
    RetryConfig,
    RateLimitInfo,
    ConnectorError,
    ConnectorAuthError,
    ConnectorNotFoundError,
    ConnectorConflictError,
    ConnectorRateLimitError,
    ConnectorNetworkError,
)
from connectors.storefront_base import (
    StorefrontConnector,
    StoreConfig,
    StandardProduct,
    SkuProduct,
    ProductsPage,
    ConnectionResult,
    create_connector,
    register_connector,
    list_available_connectors,
)
from connectors.ledger_base import (
    LedgerConnector,
    LedgerConfig,
    MovementResult,
    StockAvailability,
    Warehouse,
    create_ledger,
    register_ledger,
    list_available_ledgers,
)
from connectors.factory import storefront_for, ledger_for

__all__ = [
    # HTTP
    "ApiClient",
    "ApiResponse",
    "RetryConfig",
    "RateLimitInfo",
    "ConnectorError",
    "ConnectorAuthError",
    "ConnectorNotFoundError",
    "ConnectorConflictError",
    "ConnectorRateLimitError",
    "ConnectorNetworkError",

    # Storefront interface
    "StorefrontConnector",
    "StoreConfig",
    "StandardProduct",
    "SkuProduct",
    "ProductsPage",
    "ConnectionResult",
    "create_connector",
    "register_connector",
    "list_available_connectors",

    # Ledger interface
    "LedgerConnector",
    "LedgerConfig",
    "MovementResult",
    "StockAvailability",
    "Warehouse",
    "create_ledger",
    "register_ledger",
    "list_available_ledgers",

    # Factory
    "storefront_for",
    "ledger_for",
]
