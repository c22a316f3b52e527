"""Push service: drains the movement queue into the ledger.

Processing one movement:
    1. take the store's push lock (contention defers the movement, no attempt counted)
    2. pending -> processing
    3. resolve store, integration and warehouse
    4. debit: check ledger stock covers the quantity
    5. post the movement (a 409 from the ledger counts as success)
    6. processing -> completed, apply the delta to the product cache
    7. release the lock, then run a selective pull for the SKU

Business-terminal errors (MovementProcessingError) fail the movement at once.
Anything else counts an attempt and reschedules with exponential backoff
until max_attempts is reached. The lock is released on every path.
"""

import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from connectors import ConnectorNotFoundError, ledger_for, storefront_for
from core.config import Settings, get_settings
from core.models import (
    ItemStatus,
    LockDirection,
    ModifiedBy,
    Movement,
    MovementDirection,
    MovementStatus,
    SyncLog,
    SyncLogItem,
    SyncStatus,
    SyncType,
)
from core.observability import get_logger, get_metrics, with_correlation
from locks import LockManager
from push.errors import (
    InsufficientStockError,
    IntegrationNotFoundError,
    LedgerProductNotFoundError,
    MovementProcessingError,
    StoreNotFoundError,
    WarehouseNotConfiguredError,
)
from reconciliation.engine import PullEngine
from storage.db import PathLike, new_id
from storage.movements import (
    claim_movement,
    complete_movement,
    defer_movement,
    delete_finished_before,
    fail_movement,
    get_movement,
    list_due_movements,
    requeue_stale_processing,
    reset_failed_movement,
    schedule_retry,
)
from storage.product_cache import apply_stock_delta, upsert_product
from storage.stores import get_integration, get_store, get_store_integration, get_tenant
from storage.sync_logs import write_sync_log
from storage.unmapped_skus import track_unmapped_sku

logger = get_logger(__name__)

LOCK_RETRY_DELAY = timedelta(minutes=2)


def ledger_reference(movement: Movement) -> str:
    """Ledger reference for a movement, unique per natural key.

    A debit and a later credit for the same order must not collide on the
    ledger's duplicate detection.
    """
    return f"{movement.order_id}:{movement.sku}:{movement.movement_type.value}"


def retry_delay(attempts: int) -> timedelta:
    """Backoff after the given number of failed attempts: 2^attempts minutes."""
    return timedelta(minutes=2 ** attempts)


# =============================================================================
# Results
# =============================================================================

@dataclass
class MovementOutcome:
    """What happened to one movement in this pass."""
    movement_id: str
    store_id: str
    sku: str
    status: str                     # completed, failed, retry_scheduled, deferred, skipped
    category: str
    error: Optional[str] = None
    ledger_movement_id: Optional[str] = None
    stock_before: Optional[int] = None
    stock_after: Optional[int] = None
    product_name: Optional[str] = None

    def to_log_item(self) -> SyncLogItem:
        if self.status == MovementStatus.COMPLETED.value:
            item_status = ItemStatus.SUCCESS
        elif self.status == MovementStatus.FAILED.value:
            item_status = ItemStatus.FAILED
        else:
            item_status = ItemStatus.SKIPPED
        return SyncLogItem(
            sku=self.sku,
            product_name=self.product_name,
            status=item_status,
            category=self.category,
            stock_before=self.stock_before,
            stock_after=self.stock_after,
            error_message=self.error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "movement_id": self.movement_id,
            "store_id": self.store_id,
            "sku": self.sku,
            "status": self.status,
            "category": self.category,
            "error": self.error,
            "ledger_movement_id": self.ledger_movement_id,
        }


@dataclass
class PushBatchResult:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    deferred: int = 0
    skipped_tenants: int = 0
    requeued_stale: int = 0
    outcomes: List[MovementOutcome] = field(default_factory=list)
    sync_log_ids: List[str] = field(default_factory=list)

    def add(self, outcome: MovementOutcome) -> None:
        self.processed += 1
        self.outcomes.append(outcome)
        if outcome.status == "completed":
            self.completed += 1
        elif outcome.status == "failed":
            self.failed += 1
        elif outcome.status == "retry_scheduled":
            self.retried += 1
        else:
            self.deferred += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "retried": self.retried,
            "deferred": self.deferred,
            "skipped_tenants": self.skipped_tenants,
            "requeued_stale": self.requeued_stale,
            "sync_log_ids": self.sync_log_ids,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


# =============================================================================
# Service
# =============================================================================

class PushService:
    """Push state machine over the movement queue.

    Connector factories are injectable so tests can substitute in-memory
    fakes for the storefront and the ledger.
    """

    def __init__(
        self,
        db_path: Optional[PathLike] = None,
        settings: Optional[Settings] = None,
        lock_manager: Optional[LockManager] = None,
        connector_factory: Callable = storefront_for,
        ledger_factory: Callable = ledger_for,
        pull_engine=None,
        post_push_pull: bool = True,
    ):
        self.settings = settings or get_settings()
        self.db_path = db_path or self.settings.db_path
        self.locks = lock_manager or LockManager(self.db_path)
        self.connector_factory = connector_factory
        self.ledger_factory = ledger_factory
        self.post_push_pull = post_push_pull
        if pull_engine is None and post_push_pull:
            pull_engine = PullEngine(
                db_path=self.db_path,
                settings=self.settings,
                lock_manager=self.locks,
                connector_factory=connector_factory,
                ledger_factory=ledger_factory,
            )
        self.pull_engine = pull_engine

    # -------------------------------------------------------------------------
    # Single movement
    # -------------------------------------------------------------------------

    async def process_movement(self, movement: Movement) -> MovementOutcome:
        """Run one pending movement through the state machine."""
        metrics = get_metrics()
        owner_token = f"push-movement-{movement.id}-{int(time.time() * 1000)}"
        started = time.monotonic()

        with with_correlation(
            tenant_id=movement.tenant_id,
            store_id=movement.store_id,
            integration_id=movement.integration_id,
            movement_id=movement.id,
            direction=movement.movement_type.value,
            sku=movement.sku,
            stage="push",
        ):
            lock = self.locks.acquire_exclusive(
                movement.store_id,
                LockDirection.PUSH,
                owner_token,
                self.settings.push_lock_ttl_seconds,
            )
            if lock is None:
                metrics.record_lock_contention()
                defer_movement(
                    movement.id,
                    datetime.utcnow() + LOCK_RETRY_DELAY,
                    reason="Store sync lock busy; deferred",
                    db_path=self.db_path,
                )
                logger.info(f"Store {movement.store_id} locked; movement {movement.id} deferred")
                return MovementOutcome(
                    movement_id=movement.id,
                    store_id=movement.store_id,
                    sku=movement.sku,
                    status="deferred",
                    category="lock_busy",
                )

            try:
                if not claim_movement(movement.id, db_path=self.db_path):
                    logger.info(f"Movement {movement.id} already claimed elsewhere")
                    return MovementOutcome(
                        movement_id=movement.id,
                        store_id=movement.store_id,
                        sku=movement.sku,
                        status="skipped",
                        category="already_claimed",
                    )
                outcome = await self._execute(movement)
            except MovementProcessingError as e:
                outcome = self._fail_terminal(movement, e)
            except Exception as e:
                outcome = self._fail_transient(movement, e)
            finally:
                self.locks.release(movement.store_id, LockDirection.PUSH, owner_token)

            duration_ms = (time.monotonic() - started) * 1000
            if outcome.status == "completed":
                metrics.record_movement_completed(movement.movement_type.value, duration_ms)
            elif outcome.status == "failed":
                metrics.record_movement_failed(movement.movement_type.value)
            elif outcome.status == "retry_scheduled":
                metrics.record_movement_retry()

            if outcome.status == "completed" and self.post_push_pull and self.pull_engine is not None:
                await self._post_push_pull(movement)

        return outcome

    async def _execute(self, movement: Movement) -> MovementOutcome:
        store = get_store(movement.store_id, db_path=self.db_path)
        if store is None:
            raise StoreNotFoundError(f"Store {movement.store_id} not found", movement.sku)
        integration = get_integration(movement.integration_id, db_path=self.db_path)
        if integration is None:
            raise IntegrationNotFoundError(
                f"Integration {movement.integration_id} not found", movement.sku
            )
        link = get_store_integration(
            movement.store_id, movement.integration_id, active_only=False, db_path=self.db_path
        )
        warehouse_id = (link.config.pull.warehouse if link else None) or integration.warehouse_primary
        if not warehouse_id:
            raise WarehouseNotConfiguredError(
                f"No warehouse configured for integration {integration.id}", movement.sku
            )

        product_name = movement.metadata.get("product_name")
        stock_before: Optional[int] = None

        async with self.ledger_factory(integration, self.settings.http_timeout_seconds) as ledger:
            product_id = await ledger.find_product_id_by_sku(movement.sku)
            if product_id is None:
                raise LedgerProductNotFoundError(movement.sku)

            if movement.movement_type == MovementDirection.DEBIT:
                stock_before = await ledger.get_stock(product_id, movement.sku, warehouse_id)
                if stock_before < movement.quantity:
                    raise InsufficientStockError(movement.sku, movement.quantity, stock_before)

            result = await ledger.post_movement(
                kind=movement.movement_type,
                warehouse_id=warehouse_id,
                sku=movement.sku,
                quantity=movement.quantity,
                reference_id=ledger_reference(movement),
                note=f"{movement.event_type} order {movement.order_id}",
                product_id=product_id,
            )

        if result.already_existed:
            logger.info(f"Ledger already holds the movement for order {movement.order_id}; treating as posted")

        complete_movement(
            movement.id,
            metadata={
                "ledger_movement_id": result.movement_id,
                "ledger_product_id": product_id,
                "warehouse_id": warehouse_id,
                "already_existed": result.already_existed,
                "stock_before": stock_before,
            },
            db_path=self.db_path,
        )

        stock_after = self._apply_cache_delta(movement, stock_before, product_name)
        logger.info(
            f"Posted {movement.movement_type.value} of {movement.quantity} for SKU {movement.sku}",
            extra_fields={"ledger_movement_id": result.movement_id, "warehouse_id": warehouse_id},
        )
        return MovementOutcome(
            movement_id=movement.id,
            store_id=movement.store_id,
            sku=movement.sku,
            status="completed",
            category="posted" if not result.already_existed else "already_posted",
            ledger_movement_id=result.movement_id,
            stock_before=stock_before,
            stock_after=stock_after,
            product_name=product_name,
        )

    def _apply_cache_delta(
        self,
        movement: Movement,
        stock_before: Optional[int],
        product_name: Optional[str],
    ) -> Optional[int]:
        """Best-effort cache update; the ledger post has already succeeded."""
        try:
            new_quantity = apply_stock_delta(
                movement.store_id,
                movement.sku,
                movement.signed_quantity,
                ModifiedBy.PUSH,
                db_path=self.db_path,
            )
            if new_quantity is None and stock_before is not None:
                new_quantity = max(0, stock_before + movement.signed_quantity)
                upsert_product(
                    movement.store_id,
                    movement.sku,
                    new_quantity,
                    ModifiedBy.PUSH,
                    name=product_name,
                    db_path=self.db_path,
                )
            return new_quantity
        except sqlite3.Error as e:
            logger.warning(f"Cache update failed for SKU {movement.sku}: {e}")
            return None

    def _fail_terminal(self, movement: Movement, error: MovementProcessingError) -> MovementOutcome:
        logger.warning(f"Movement {movement.id} failed: {error}", extra_fields={"category": error.category})
        fail_movement(movement.id, str(error), db_path=self.db_path)
        if error.track_unmapped:
            track_unmapped_sku(
                movement.tenant_id,
                movement.store_id,
                movement.sku,
                reason=error.category,
                product_name=movement.metadata.get("product_name"),
                db_path=self.db_path,
            )
        return MovementOutcome(
            movement_id=movement.id,
            store_id=movement.store_id,
            sku=movement.sku,
            status="failed",
            category=error.category,
            error=str(error),
            product_name=movement.metadata.get("product_name"),
        )

    def _fail_transient(self, movement: Movement, error: Exception) -> MovementOutcome:
        attempts = movement.attempts + 1
        message = str(error) or error.__class__.__name__

        if attempts >= movement.max_attempts:
            logger.error(
                f"Movement {movement.id} failed after {attempts} attempts: {message}",
                exc_info=True,
            )
            fail_movement(movement.id, message, attempts=attempts, db_path=self.db_path)
            if isinstance(error, ConnectorNotFoundError):
                track_unmapped_sku(
                    movement.tenant_id,
                    movement.store_id,
                    movement.sku,
                    reason="not_found_ledger",
                    product_name=movement.metadata.get("product_name"),
                    db_path=self.db_path,
                )
            return MovementOutcome(
                movement_id=movement.id,
                store_id=movement.store_id,
                sku=movement.sku,
                status="failed",
                category="max_attempts",
                error=message,
            )

        next_attempt_at = datetime.utcnow() + retry_delay(attempts)
        logger.warning(
            f"Movement {movement.id} attempt {attempts}/{movement.max_attempts} failed: {message}; "
            f"retry at {next_attempt_at.isoformat()}"
        )
        schedule_retry(movement.id, attempts, next_attempt_at, message, db_path=self.db_path)
        return MovementOutcome(
            movement_id=movement.id,
            store_id=movement.store_id,
            sku=movement.sku,
            status="retry_scheduled",
            category="retry_scheduled",
            error=message,
        )

    async def _post_push_pull(self, movement: Movement) -> None:
        try:
            await self.pull_engine.pull(
                movement.store_id,
                movement.integration_id,
                skus=[movement.sku],
                skip_recent_push_check=True,
                trigger="post_push",
            )
        except Exception as e:
            logger.warning(f"Post-push pull for SKU {movement.sku} failed: {e}")

    # -------------------------------------------------------------------------
    # Batch driver and operations
    # -------------------------------------------------------------------------

    async def process_pending_movements(self, limit: Optional[int] = None) -> PushBatchResult:
        """Process due movements oldest first, one audit log per store."""
        limit = limit or self.settings.push_batch_limit
        result = PushBatchResult()
        started = time.monotonic()

        stale_before = datetime.utcnow() - timedelta(seconds=self.settings.push_lock_ttl_seconds)
        result.requeued_stale = requeue_stale_processing(stale_before, db_path=self.db_path)
        if result.requeued_stale:
            logger.warning(f"Requeued {result.requeued_stale} movement(s) stuck in processing")

        movements = list_due_movements(limit=limit, db_path=self.db_path)
        if not movements:
            return result
        logger.info(f"Processing {len(movements)} pending movement(s)")

        tenant_ok: Dict[str, bool] = {}
        by_store: Dict[str, List[MovementOutcome]] = {}
        store_meta: Dict[str, Movement] = {}

        for movement in movements:
            if movement.tenant_id not in tenant_ok:
                tenant = get_tenant(movement.tenant_id, db_path=self.db_path)
                tenant_ok[movement.tenant_id] = tenant is not None and tenant.is_operational()
            if not tenant_ok[movement.tenant_id]:
                result.skipped_tenants += 1
                continue

            outcome = await self.process_movement(movement)
            result.add(outcome)
            by_store.setdefault(movement.store_id, []).append(outcome)
            store_meta.setdefault(movement.store_id, movement)

        duration_ms = int((time.monotonic() - started) * 1000)
        for store_id, outcomes in by_store.items():
            log_id = self._write_store_log(store_meta[store_id], outcomes, duration_ms)
            result.sync_log_ids.append(log_id)

        logger.info("Push batch finished", extra_fields={
            k: v for k, v in result.to_dict().items() if k != "outcomes"
        })
        return result

    def _write_store_log(self, sample: Movement, outcomes: List[MovementOutcome], duration_ms: int) -> str:
        items = [o.to_log_item() for o in outcomes]
        synced = sum(1 for i in items if i.status == ItemStatus.SUCCESS)
        failed = sum(1 for i in items if i.status == ItemStatus.FAILED)
        skipped = len(items) - synced - failed

        if failed == 0:
            status = SyncStatus.SUCCESS
        elif synced > 0:
            status = SyncStatus.PARTIAL
        else:
            status = SyncStatus.ERROR

        log = SyncLog(
            id=new_id(),
            tenant_id=sample.tenant_id,
            store_id=sample.store_id,
            integration_id=sample.integration_id,
            sync_type=SyncType.PUSH,
            status=status,
            synced_count=synced,
            failed_count=failed,
            skipped_count=skipped,
            duration_ms=duration_ms,
            details={
                "movements": len(outcomes),
                "categories": _count_categories(outcomes),
            },
            items=items,
        )
        return write_sync_log(log, db_path=self.db_path).id

    async def retry_movement(self, movement_id: str) -> MovementOutcome:
        """Operator-forced retry of a failed movement with a fresh attempt budget.

        Raises:
            LookupError: No such movement
            ValueError: The movement is not in failed status
        """
        movement = get_movement(movement_id, db_path=self.db_path)
        if movement is None:
            raise LookupError(f"Movement {movement_id} not found")
        if movement.status != MovementStatus.FAILED:
            raise ValueError(f"Movement {movement_id} is {movement.status.value}, not failed")
        movement = reset_failed_movement(movement_id, db_path=self.db_path)
        if movement is None:
            raise ValueError(f"Movement {movement_id} changed status concurrently")
        logger.info(f"Movement {movement_id} reset for retry")
        return await self.process_movement(movement)

    def clean_old_movements(self, days: Optional[int] = None) -> int:
        """Delete completed and failed movements processed more than `days` ago."""
        days = days if days is not None else self.settings.movement_retention_days
        deleted = delete_finished_before(datetime.utcnow() - timedelta(days=days), db_path=self.db_path)
        if deleted:
            logger.info(f"Deleted {deleted} movement(s) older than {days} days")
        return deleted


def _count_categories(outcomes: List[MovementOutcome]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for outcome in outcomes:
        counts[outcome.category] = counts.get(outcome.category, 0) + 1
    return counts
