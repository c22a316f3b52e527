"""Connector construction from stored records.

The platform and ledger type are resolved once, here, when a store or
integration is loaded. Importing this module registers every built-in
implementation.
"""

from connectors.ledger_base import LedgerConfig, LedgerConnector, create_ledger
from connectors.storefront_base import StoreConfig, StorefrontConnector, create_connector
from core.models import Integration, Store

# Registration side effects
import connectors.contifico  # noqa: F401
import connectors.shopify  # noqa: F401
import connectors.woocommerce  # noqa: F401


def storefront_for(store: Store, timeout_seconds: float = 30) -> StorefrontConnector:
    return create_connector(StoreConfig.from_store(store, timeout_seconds=timeout_seconds))


def ledger_for(integration: Integration, timeout_seconds: float = 30) -> LedgerConnector:
    return create_ledger(LedgerConfig.from_integration(integration, timeout_seconds=timeout_seconds))
