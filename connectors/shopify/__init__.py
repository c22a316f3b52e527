"""Shopify Connector Package.

Implements the StorefrontConnector interface for the Shopify Admin REST API.
"""

from connectors.shopify.shopify_connector import ShopifyConnector, parse_next_page_info
from connectors.shopify.shopify_models import ShopifyProduct, ShopifyVariant, ShopifyShop

__all__ = [
    "ShopifyConnector",
    "parse_next_page_info",
    "ShopifyProduct",
    "ShopifyVariant",
    "ShopifyShop",
]
