"""WooCommerce Connector Package.

Implements the StorefrontConnector interface for the WooCommerce REST API.
"""

from connectors.woocommerce.woo_connector import WooCommerceConnector
from connectors.woocommerce.woo_models import WooProduct, WooVariation

__all__ = [
    "WooCommerceConnector",
    "WooProduct",
    "WooVariation",
]
