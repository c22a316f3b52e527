"""Storefront order events.

Normalizes Shopify and WooCommerce webhook payloads into OrderEvent objects
and classifies the event type into a ledger movement direction:

    debit  - the order takes stock out (paid / completed)
    credit - stock comes back (cancelled / refunded)
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.models import MovementDirection


DEBIT_EVENTS = frozenset({
    "order_paid",
    "orders/paid",
    "orders/create",
    "orders/updated",
    "order.completed",
})

CREDIT_EVENTS = frozenset({
    "order_cancelled",
    "orders/cancelled",
    "order.cancelled",
    "order_refunded",
    "refunds/create",
    "order.refunded",
})

# Webhook topics that generate movements. orders/create and orders/updated
# classify as debits but are not subscribed: a paid order also fires them,
# and enqueueing both would rely on dedup alone.
SHOPIFY_WEBHOOK_TOPICS = frozenset({"orders/paid", "orders/cancelled", "refunds/create"})
WOOCOMMERCE_WEBHOOK_EVENTS = frozenset({"order.completed", "order.cancelled", "order.refunded"})

# WooCommerce's native order.updated topic carries the new status in the body
_WOOCOMMERCE_STATUS_EVENTS = {
    "completed": "order.completed",
    "cancelled": "order.cancelled",
    "refunded": "order.refunded",
}


class UnsupportedEventError(ValueError):
    """Event type that maps to no movement direction."""

    def __init__(self, event_type: str):
        super().__init__(f"Unknown event type: {event_type}")
        self.event_type = event_type


def classify_event(event_type: str) -> MovementDirection:
    """Movement direction for an order event type.

    Raises:
        UnsupportedEventError: The event does not move stock
    """
    if event_type in DEBIT_EVENTS:
        return MovementDirection.DEBIT
    if event_type in CREDIT_EVENTS:
        return MovementDirection.CREDIT
    raise UnsupportedEventError(event_type)


@dataclass
class OrderLineItem:
    sku: str
    quantity: int
    name: Optional[str] = None


@dataclass
class OrderEvent:
    """A storefront order event reduced to what the movement queue needs."""
    platform: str
    event_type: str
    order_id: str
    line_items: List[OrderLineItem] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def direction(self) -> MovementDirection:
        return classify_event(self.event_type)


def _quantity(value: Any) -> int:
    if value in (None, ""):
        return 1
    return int(value)


def _order_id(payload: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    raise ValueError(f"Order payload has none of {', '.join(keys)}")


def parse_shopify_order_event(topic: str, payload: Dict[str, Any]) -> OrderEvent:
    """Shopify orders/* and refunds/create payloads.

    Line items without a SKU fall back to the variant id. Refund payloads are
    keyed by their order (order_id) and list refund_line_items.
    """
    if topic == "refunds/create":
        order_id = _order_id(payload, "order_id", "id")
        raw_items = [
            {**(entry.get("line_item") or {}), "quantity": entry.get("quantity")}
            for entry in payload.get("refund_line_items") or []
        ]
    else:
        order_id = _order_id(payload, "id", "order_id")
        raw_items = payload.get("line_items") or []

    items = []
    for item in raw_items:
        sku = (item.get("sku") or "").strip() or (str(item["variant_id"]) if item.get("variant_id") else "")
        if not sku:
            continue
        items.append(OrderLineItem(sku=sku, quantity=_quantity(item.get("quantity")), name=item.get("name") or item.get("title")))

    return OrderEvent(
        platform="shopify",
        event_type=topic,
        order_id=order_id,
        line_items=items,
        metadata={"order_number": payload.get("order_number") or payload.get("name")},
    )


def resolve_woocommerce_event(
    event_header: Optional[str],
    topic_header: Optional[str],
    payload: Dict[str, Any],
) -> Optional[str]:
    """Effective event name for a WooCommerce delivery.

    Accepts the explicit order.completed/cancelled/refunded form, or the
    native order.updated/order.created topic with the status in the body.
    """
    for candidate in (event_header, topic_header):
        if candidate in WOOCOMMERCE_WEBHOOK_EVENTS:
            return candidate
    if topic_header in ("order.updated", "order.created") or event_header in ("updated", "created"):
        return _WOOCOMMERCE_STATUS_EVENTS.get(str(payload.get("status") or ""))
    return None


def parse_woocommerce_order_event(event: str, payload: Dict[str, Any]) -> OrderEvent:
    items = []
    for item in payload.get("line_items") or []:
        sku = (item.get("sku") or "").strip()
        if not sku:
            continue
        items.append(OrderLineItem(sku=sku, quantity=_quantity(item.get("quantity")), name=item.get("name")))

    return OrderEvent(
        platform="woocommerce",
        event_type=event,
        order_id=_order_id(payload, "id", "number"),
        line_items=items,
        metadata={"order_number": payload.get("number"), "status": payload.get("status")},
    )
