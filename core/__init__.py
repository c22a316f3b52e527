"""Core module - platform-neutral configuration, models, observability and security.

Platform-specific logic (Shopify, WooCommerce, Contifico) belongs in /connectors/.
"""

__version__ = "1.0.0"
