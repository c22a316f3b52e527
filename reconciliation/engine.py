"""Pull reconciliation engine: ledger stock -> storefront stock.

Exposes:
- PullEngine.pull(store_id, ...) -> PullResult

Modes:
- full: every SKU the storefront exposes (scheduled and forced pulls)
- selective: an explicit SKU list (the correction run right after a push)

For each SKU the ledger product is looked up, its stock read (warehouse
scoped when a warehouse is configured) and compared with the storefront's.
Equal quantities are skipped; differing ones are written to the storefront.
SKUs are reconciled in bounded concurrent batches with a pause between
batches to stay under platform rate limits.
"""

import asyncio
import time
from enum import Enum
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from connectors import (
    ConnectorError,
    LedgerConnector,
    SkuProduct,
    StorefrontConnector,
    ledger_for,
    storefront_for,
)
from core.config import Settings, get_settings
from core.models import (
    Integration,
    ItemStatus,
    LockDirection,
    ModifiedBy,
    Store,
    SyncConfig,
    SyncLog,
    SyncLogItem,
    SyncStatus,
    SyncType,
)
from core.observability import get_logger, get_metrics, with_correlation
from locks import LockManager
from storage.db import PathLike, new_id
from storage.movements import recently_pushed_skus
from storage.product_cache import upsert_product
from storage.stores import get_integration, get_store, get_store_integration, update_store_last_sync
from storage.sync_logs import write_sync_log

logger = get_logger(__name__)

MAX_LOGGED_ERRORS = 20


class PullError(Exception):
    """The pull could not run (unknown store, tenant mismatch, ...)."""


class PullLockedError(PullError):
    """Another pull or a push holds the store."""


# =============================================================================
# Outcome categories
# =============================================================================

class PullCategory(str, Enum):
    UPDATED = "updated"
    WOULD_UPDATE = "would_update"
    NO_CHANGES = "no_changes"
    NOT_FOUND_LEDGER = "not_found_ledger"
    NOT_FOUND_STORE = "not_found_store"
    RECENT_PUSH = "recent_push"
    UPDATE_ERROR = "update_error"
    PROCESSING_ERROR = "processing_error"


class PullItemResult:
    """Outcome of reconciling one SKU."""

    def __init__(
        self,
        sku: str,
        status: ItemStatus,
        category: PullCategory,
        product_name: Optional[str] = None,
        stock_before: Optional[int] = None,
        stock_after: Optional[int] = None,
        error: Optional[str] = None,
    ):
        self.sku = sku
        self.status = status
        self.category = category
        self.product_name = product_name
        self.stock_before = stock_before
        self.stock_after = stock_after
        self.error = error

    def to_log_item(self) -> SyncLogItem:
        return SyncLogItem(
            sku=self.sku,
            product_name=self.product_name,
            status=self.status,
            category=self.category.value,
            stock_before=self.stock_before,
            stock_after=self.stock_after,
            error_message=self.error,
        )

    def to_dict(self) -> Dict:
        return {
            "sku": self.sku,
            "status": self.status.value,
            "category": self.category.value,
            "stock_before": self.stock_before,
            "stock_after": self.stock_after,
            "error": self.error,
        }


class PullResult:
    """Aggregate outcome of one pull run."""

    def __init__(
        self,
        store_id: str,
        integration_id: str,
        mode: str,
        trigger: str,
        dry_run: bool = False,
        warehouse_id: Optional[str] = None,
    ):
        self.store_id = store_id
        self.integration_id = integration_id
        self.mode = mode
        self.trigger = trigger
        self.dry_run = dry_run
        self.warehouse_id = warehouse_id
        self.items: List[PullItemResult] = []
        self.sync_log_id: Optional[str] = None
        self.duration_ms: int = 0
        self.error: Optional[str] = None

    def add(self, item: PullItemResult) -> None:
        self.items.append(item)

    def _count(self, status: ItemStatus) -> int:
        return sum(1 for item in self.items if item.status == status)

    @property
    def success(self) -> int:
        return self._count(ItemStatus.SUCCESS)

    @property
    def failed(self) -> int:
        return self._count(ItemStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(ItemStatus.SKIPPED)

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def skip_reasons(self) -> Dict[str, int]:
        reasons: Dict[str, int] = {}
        for item in self.items:
            if item.status == ItemStatus.SKIPPED:
                reasons[item.category.value] = reasons.get(item.category.value, 0) + 1
        return reasons

    @property
    def errors(self) -> List[Dict[str, Any]]:
        return [
            {"sku": item.sku, "category": item.category.value, "error": item.error}
            for item in self.items
            if item.status == ItemStatus.FAILED
        ]

    @property
    def status(self) -> SyncStatus:
        if self.error is not None:
            return SyncStatus.ERROR
        if self.failed == 0:
            return SyncStatus.SUCCESS
        if self.success or self.skipped:
            return SyncStatus.PARTIAL
        return SyncStatus.ERROR

    def details(self) -> Dict[str, Any]:
        return {
            "integration_id": self.integration_id,
            "warehouse_id": self.warehouse_id,
            "trigger": self.trigger,
            "mode": self.mode,
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "skip_reasons": self.skip_reasons,
            "errors": self.errors[:MAX_LOGGED_ERRORS],
        }

    def to_dict(self) -> Dict:
        return {
            "store_id": self.store_id,
            "status": self.status.value,
            "dry_run": self.dry_run,
            "sync_log_id": self.sync_log_id,
            "duration_ms": self.duration_ms,
            "error": self.error,
            **self.details(),
            "items": [item.to_dict() for item in self.items],
        }


# =============================================================================
# Engine
# =============================================================================

class PullEngine:
    """Reconciles storefront stock against the ledger for one store at a time."""

    def __init__(
        self,
        db_path: Optional[PathLike] = None,
        settings: Optional[Settings] = None,
        lock_manager: Optional[LockManager] = None,
        connector_factory: Callable = storefront_for,
        ledger_factory: Callable = ledger_for,
    ):
        self.settings = settings or get_settings()
        self.db_path = db_path or self.settings.db_path
        self.locks = lock_manager or LockManager(self.db_path)
        self.connector_factory = connector_factory
        self.ledger_factory = ledger_factory

    async def pull(
        self,
        store_id: str,
        integration_id: Optional[str] = None,
        skus: Optional[List[str]] = None,
        dry_run: bool = False,
        limit: Optional[int] = None,
        skip_recent_push_check: bool = False,
        trigger: str = "scheduled",
    ) -> PullResult:
        """Run a full (skus=None) or selective pull for a store.

        Only full pulls advance the store's last_sync_at.

        Args:
            store_id: Store to reconcile
            integration_id: Ledger integration; the store's active one when omitted
            skus: Restrict to these SKUs (selective mode)
            dry_run: Compute changes without writing the storefront, cache or log
            limit: Cap on SKUs scanned in full mode
            skip_recent_push_check: Bypass the recent-push guard
            trigger: Recorded in the sync log (scheduled, manual, post_push)

        Raises:
            PullError: Unknown store or integration, or tenant mismatch
            PullLockedError: The store is locked by another pull or a push
        """
        store, integration, config = self._resolve(store_id, integration_id)
        warehouse_id = config.pull.warehouse or integration.warehouse_primary
        result = PullResult(
            store_id=store.id,
            integration_id=integration.id,
            mode="selective" if skus is not None else "full",
            trigger=trigger,
            dry_run=dry_run,
            warehouse_id=warehouse_id,
        )
        started = time.monotonic()
        owner_token = f"pull-{store.id}-{int(time.time() * 1000)}"

        with with_correlation(
            tenant_id=store.tenant_id,
            store_id=store.id,
            integration_id=integration.id,
            stage="pull",
        ):
            lock = None
            if not dry_run:
                lock = self.locks.acquire_exclusive(
                    store.id, LockDirection.PULL, owner_token, self.settings.pull_lock_ttl_seconds
                )
                if lock is None:
                    get_metrics().record_lock_contention()
                    raise PullLockedError(f"Store {store.id} is locked by another sync")

            logger.info(
                f"Starting {result.mode} pull ({trigger})",
                extra_fields={"warehouse_id": warehouse_id, "dry_run": dry_run},
            )
            try:
                await self._run(store, integration, config, result, skus, limit, skip_recent_push_check)
            except Exception as e:
                result.error = str(e) or e.__class__.__name__
                result.duration_ms = int((time.monotonic() - started) * 1000)
                logger.error(f"Pull failed: {result.error}", exc_info=True)
                get_metrics().record_pull_error()
                if not dry_run:
                    self._write_log(store, result)
                raise
            finally:
                if lock is not None:
                    self.locks.release(store.id, LockDirection.PULL, owner_token)

            result.duration_ms = int((time.monotonic() - started) * 1000)
            if not dry_run:
                self._write_log(store, result)
                # Selective pulls (post-push corrections) leave the scheduled full-pull clock alone
                if skus is None:
                    update_store_last_sync(store.id, db_path=self.db_path)

            get_metrics().record_pull_completed(
                updated=result.success,
                skipped=result.skipped,
                failed=result.failed,
                skip_reasons=result.skip_reasons,
                duration_ms=result.duration_ms,
            )
            logger.info(
                f"Pull finished: {result.success} updated, {result.skipped} skipped, {result.failed} failed",
                extra_fields={"skip_reasons": result.skip_reasons, "duration_ms": result.duration_ms},
            )
        return result

    def _resolve(self, store_id: str, integration_id: Optional[str]):
        store = get_store(store_id, db_path=self.db_path)
        if store is None:
            raise PullError(f"Store {store_id} not found")

        link = get_store_integration(store_id, integration_id, db_path=self.db_path)
        if integration_id is None:
            if link is None:
                raise PullError(f"Store {store_id} has no active integration")
            integration_id = link.integration_id

        integration = get_integration(integration_id, db_path=self.db_path)
        if integration is None:
            raise PullError(f"Integration {integration_id} not found")
        if integration.tenant_id != store.tenant_id:
            raise PullError(f"Store {store_id} and integration {integration_id} belong to different tenants")

        config = link.config if link is not None else SyncConfig()
        return store, integration, config

    async def _run(
        self,
        store: Store,
        integration: Integration,
        config: SyncConfig,
        result: PullResult,
        skus: Optional[List[str]],
        limit: Optional[int],
        skip_recent_push_check: bool,
    ) -> None:
        timeout = self.settings.http_timeout_seconds
        async with self.connector_factory(store, timeout) as storefront, \
                self.ledger_factory(integration, timeout) as ledger:
            products = await self._collect_products(storefront, skus, limit, result)
            guarded = set() if skip_recent_push_check else self._recent_push_skus(store.id, config)
            if guarded:
                logger.info(f"Recent-push guard holds back {len(guarded)} SKU(s)")

            batch_size = max(1, self.settings.pull_batch_size)
            for start in range(0, len(products), batch_size):
                batch = products[start:start + batch_size]
                items = await asyncio.gather(*[
                    self._reconcile_sku(storefront, ledger, product, store.id, result, guarded)
                    for product in batch
                ])
                for item in items:
                    result.add(item)
                if start + batch_size < len(products) and self.settings.pull_batch_pause_seconds > 0:
                    await asyncio.sleep(self.settings.pull_batch_pause_seconds)

    async def _collect_products(
        self,
        storefront: StorefrontConnector,
        skus: Optional[List[str]],
        limit: Optional[int],
        result: PullResult,
    ) -> List[SkuProduct]:
        if skus is None:
            return await storefront.get_products_with_sku(limit=limit)

        wanted = list(dict.fromkeys(s for s in skus if s))
        found = await storefront.get_products_by_skus(wanted)
        for sku in wanted:
            if sku not in found:
                result.add(PullItemResult(sku, ItemStatus.SKIPPED, PullCategory.NOT_FOUND_STORE))
        return [found[sku] for sku in wanted if sku in found]

    def _recent_push_skus(self, store_id: str, config: SyncConfig) -> Set[str]:
        minutes = config.pull.recent_push_guard_minutes
        if minutes is None:
            minutes = self.settings.pull_recent_push_guard_minutes
        if minutes <= 0:
            return set()
        since = datetime.utcnow() - timedelta(minutes=minutes)
        return recently_pushed_skus(store_id, since, db_path=self.db_path)

    async def _reconcile_sku(
        self,
        storefront: StorefrontConnector,
        ledger: LedgerConnector,
        product: SkuProduct,
        store_id: str,
        result: PullResult,
        guarded: Set[str],
    ) -> PullItemResult:
        sku = product.sku
        current = product.stock_quantity
        if sku in guarded:
            return PullItemResult(sku, ItemStatus.SKIPPED, PullCategory.RECENT_PUSH, product.name, current)

        try:
            ledger_product_id = await ledger.find_product_id_by_sku(sku)
            if ledger_product_id is None:
                return PullItemResult(sku, ItemStatus.SKIPPED, PullCategory.NOT_FOUND_LEDGER, product.name, current)

            ledger_stock = await self._ledger_stock(ledger, ledger_product_id, sku, result.warehouse_id)

            if ledger_stock == current:
                if not result.dry_run:
                    self._cache(store_id, product, ledger_stock)
                return PullItemResult(
                    sku, ItemStatus.SKIPPED, PullCategory.NO_CHANGES, product.name, current, ledger_stock
                )

            if result.dry_run:
                logger.info(f"[dry run] SKU {sku}: {current} -> {ledger_stock}")
                return PullItemResult(
                    sku, ItemStatus.SUCCESS, PullCategory.WOULD_UPDATE, product.name, current, ledger_stock
                )

            try:
                await storefront.update_stock(product, ledger_stock)
            except ConnectorError as e:
                logger.warning(f"Storefront update failed for SKU {sku}: {e.message}")
                return PullItemResult(
                    sku, ItemStatus.FAILED, PullCategory.UPDATE_ERROR, product.name, current, ledger_stock, e.message
                )

            self._cache(store_id, product, ledger_stock)
            return PullItemResult(
                sku, ItemStatus.SUCCESS, PullCategory.UPDATED, product.name, current, ledger_stock
            )
        except Exception as e:
            logger.warning(f"Reconciling SKU {sku} failed: {e}")
            return PullItemResult(
                sku, ItemStatus.FAILED, PullCategory.PROCESSING_ERROR, product.name, current,
                error=str(e) or e.__class__.__name__,
            )

    async def _ledger_stock(
        self,
        ledger: LedgerConnector,
        product_id: str,
        sku: str,
        warehouse_id: Optional[str],
    ) -> int:
        if warehouse_id:
            try:
                return await ledger.get_stock(product_id, sku, warehouse_id)
            except ConnectorError as e:
                logger.warning(f"Warehouse stock read failed for SKU {sku}, using global stock: {e.message}")
        return await ledger.get_stock(product_id, sku, None)

    def _cache(self, store_id: str, product: SkuProduct, quantity: int) -> None:
        upsert_product(
            store_id,
            product.sku,
            quantity,
            ModifiedBy.PULL,
            platform_product_id=product.product_id,
            platform_variant_id=product.variant_id,
            name=product.name or None,
            db_path=self.db_path,
        )

    def _write_log(self, store: Store, result: PullResult) -> None:
        log = SyncLog(
            id=new_id(),
            tenant_id=store.tenant_id,
            store_id=store.id,
            integration_id=result.integration_id,
            sync_type=SyncType.PULL,
            status=result.status,
            synced_count=result.success,
            failed_count=result.failed,
            skipped_count=result.skipped,
            duration_ms=result.duration_ms,
            error_message=result.error,
            details=result.details(),
            items=[item.to_log_item() for item in result.items],
        )
        result.sync_log_id = write_sync_log(log, db_path=self.db_path).id
