"""Push pipeline: order events -> movement queue -> ledger."""

from push.errors import (
    InsufficientStockError,
    IntegrationNotFoundError,
    LedgerProductNotFoundError,
    MovementProcessingError,
    StoreNotFoundError,
    WarehouseNotConfiguredError,
)
from push.events import (
    OrderEvent,
    OrderLineItem,
    UnsupportedEventError,
    classify_event,
    parse_shopify_order_event,
    parse_woocommerce_order_event,
    resolve_woocommerce_event,
)
from push.queue import EnqueueResult, enqueue_order_event
from push.service import MovementOutcome, PushBatchResult, PushService

__all__ = [
    "InsufficientStockError",
    "IntegrationNotFoundError",
    "LedgerProductNotFoundError",
    "MovementProcessingError",
    "StoreNotFoundError",
    "WarehouseNotConfiguredError",
    "OrderEvent",
    "OrderLineItem",
    "UnsupportedEventError",
    "classify_event",
    "parse_shopify_order_event",
    "parse_woocommerce_order_event",
    "resolve_woocommerce_event",
    "EnqueueResult",
    "enqueue_order_event",
    "MovementOutcome",
    "PushBatchResult",
    "PushService",
]
