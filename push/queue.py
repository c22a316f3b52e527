"""Idempotent enqueue of order events into the movement queue."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.models import Store
from core.observability import get_logger, get_metrics, with_correlation
from push.events import OrderEvent
from storage.db import PathLike
from storage.movements import insert_movement_if_absent

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


@dataclass
class EnqueueResult:
    order_id: str
    direction: str
    queued: int = 0
    duplicates: int = 0
    skipped: int = 0
    movement_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "direction": self.direction,
            "queued": self.queued,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "movement_ids": self.movement_ids,
        }


def enqueue_order_event(
    event: OrderEvent,
    store: Store,
    integration_id: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    db_path: Optional[PathLike] = None,
) -> EnqueueResult:
    """Queue one pending movement per SKU line of an order event.

    A line whose (store, order, sku, direction) already has a movement, in
    any status, is a duplicate delivery and is skipped. Repeated SKUs within
    one order are summed into a single movement.

    Raises:
        UnsupportedEventError: The event type moves no stock
    """
    direction = event.direction
    result = EnqueueResult(order_id=event.order_id, direction=direction.value)
    metrics = get_metrics()

    quantities: Dict[str, int] = {}
    names: Dict[str, Optional[str]] = {}
    for item in event.line_items:
        if not item.sku or item.quantity <= 0:
            result.skipped += 1
            continue
        quantities[item.sku] = quantities.get(item.sku, 0) + item.quantity
        names.setdefault(item.sku, item.name)

    with with_correlation(tenant_id=store.tenant_id, store_id=store.id, direction=direction.value, stage="webhook"):
        for sku, quantity in quantities.items():
            movement, created = insert_movement_if_absent(
                tenant_id=store.tenant_id,
                store_id=store.id,
                integration_id=integration_id,
                direction=direction,
                sku=sku,
                quantity=quantity,
                order_id=event.order_id,
                event_type=event.event_type,
                max_attempts=max_attempts,
                metadata={
                    "platform": event.platform,
                    "product_name": names.get(sku),
                    **{k: v for k, v in event.metadata.items() if v is not None},
                },
                db_path=db_path,
            )
            if created:
                result.queued += 1
                result.movement_ids.append(movement.id)
                metrics.record_movement_enqueued(direction.value)
            else:
                result.duplicates += 1
                metrics.record_movement_duplicate()
                logger.info(
                    f"Duplicate movement for order {event.order_id}, SKU {sku} "
                    f"(existing {movement.id} from {movement.event_type}, {movement.status.value}); skipping",
                    extra_fields={"sku": sku, "existing_movement_id": movement.id},
                )

        logger.info(
            f"Order {event.order_id} ({event.event_type}): queued {result.queued}, "
            f"duplicates {result.duplicates}, skipped {result.skipped}",
            extra_fields=result.to_dict(),
        )
    return result
