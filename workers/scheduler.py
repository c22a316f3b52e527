"""Scheduled pull loop.

Wakes every `interval_seconds` (the smallest supported sync interval) and
runs a full pull for each store integration that is due:

    - tenant approved, active and not expired
    - store and store integration active
    - pull enabled, ledger integration of type contifico
    - current local time inside the configured active hours
    - interval elapsed since the store's last sync

Stores run concurrently, bounded by a semaphore. A pull that fails outright,
or fails more SKUs than it updates, leaves a notification for the tenant.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from core.models import ActiveHours, Integration, Store, StoreIntegration, Tenant
from core.observability import get_logger, with_correlation
from reconciliation.engine import PullEngine, PullLockedError, PullResult
from storage.stores import (
    create_notification,
    get_integration,
    get_store,
    get_tenant,
    list_store_integrations,
)

logger = get_logger(__name__)

INTERVAL_MINUTES = {
    "5min": 5,
    "30min": 30,
    "hourly": 60,
    "daily": 1440,
    "weekly": 10080,
}

SCHEDULED_LEDGER_TYPES = {"contifico"}


def _minutes_of_day(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def is_within_active_hours(active_hours: Optional[ActiveHours], now: Optional[datetime] = None) -> bool:
    """True when no window is configured or `now` falls inside it (inclusive).

    A window whose end is before its start spans midnight (e.g. 22:00-06:00).
    """
    if active_hours is None:
        return True
    now = now or datetime.now()
    current = now.hour * 60 + now.minute
    start = _minutes_of_day(active_hours.start)
    end = _minutes_of_day(active_hours.end)
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def is_sync_due(interval: Optional[str], last_sync_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    minutes = INTERVAL_MINUTES.get(interval or "")
    if minutes is None:
        return False
    if last_sync_at is None:
        return True
    elapsed = ((now or datetime.utcnow()) - last_sync_at).total_seconds() / 60
    return elapsed >= minutes


def tenant_allows_sync(tenant: Optional[Tenant], now: Optional[datetime] = None) -> bool:
    return (
        tenant is not None
        and tenant.account_status == "approved"
        and tenant.is_operational(now)
    )


class PullScheduler:
    """Periodic fan-out of scheduled pulls."""

    def __init__(
        self,
        engine: PullEngine,
        interval_seconds: Optional[float] = None,
        concurrency: Optional[int] = None,
        pull_limit: Optional[int] = None,
    ):
        self.engine = engine
        self.db_path = engine.db_path
        self.interval_seconds = interval_seconds or engine.settings.scheduler_interval_seconds
        self.concurrency = concurrency or engine.settings.scheduler_concurrency
        self.pull_limit = pull_limit or engine.settings.scheduled_pull_limit
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self._busy = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.info("Scheduler already running")
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name="pull-scheduler")
        logger.info(f"Scheduler started (every {self.interval_seconds}s)")

    async def stop(self, timeout: float = 120) -> None:
        if self._task is None:
            return
        self._stopping.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Scheduler did not drain within {timeout}s; cancelling")
            self._task.cancel()
        finally:
            self._task = None
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    # -------------------------------------------------------------------------
    # One tick
    # -------------------------------------------------------------------------

    def due_integrations(self, now: Optional[datetime] = None, local_now: Optional[datetime] = None):
        """(tenant, store, integration, link) tuples whose scheduled pull is due.

        A link whose stored sync_config no longer validates is logged and
        skipped; it never holds back the other stores.
        """
        due = []
        tenants: Dict[str, Optional[Tenant]] = {}
        for link in list_store_integrations(active_only=True, db_path=self.db_path):
            try:
                entry = self._due_entry(link, tenants, now, local_now)
            except (ValidationError, ValueError) as e:
                logger.warning(
                    f"Skipping store {link.store_id}: invalid sync config on link {link.id}: {e}",
                    extra_fields={"store_id": link.store_id, "link_id": link.id},
                )
                continue
            if entry is not None:
                due.append(entry)
        return due

    def _due_entry(
        self,
        link: StoreIntegration,
        tenants: Dict[str, Optional[Tenant]],
        now: Optional[datetime],
        local_now: Optional[datetime],
    ):
        config = link.config
        if not config.pull.enabled:
            return None

        store = get_store(link.store_id, db_path=self.db_path)
        if store is None or not store.is_active:
            return None

        if store.tenant_id not in tenants:
            tenants[store.tenant_id] = get_tenant(store.tenant_id, db_path=self.db_path)
        tenant = tenants[store.tenant_id]
        if not tenant_allows_sync(tenant, now):
            logger.debug(f"Tenant {store.tenant_id} suspended or not approved; skipping store {store.id}")
            return None

        integration = get_integration(link.integration_id, db_path=self.db_path)
        if integration is None or not integration.is_active:
            return None
        if integration.integration_type not in SCHEDULED_LEDGER_TYPES:
            return None

        if not is_within_active_hours(config.pull.active_hours, local_now):
            logger.debug(f"Store {store.id} outside active hours")
            return None
        if not is_sync_due(config.pull.interval, store.last_sync_at, now):
            return None

        return tenant, store, integration, link

    async def run_once(self) -> List[Dict[str, Any]]:
        """Run every due pull. Returns one summary per attempted store."""
        if self._busy:
            logger.info("Previous scheduler tick still running; skipping")
            return []
        self._busy = True
        try:
            due = self.due_integrations()
            if not due:
                return []
            logger.info(f"Running {len(due)} scheduled pull(s)")
            semaphore = asyncio.Semaphore(self.concurrency)

            async def bounded(entry):
                async with semaphore:
                    return await self._pull_store(*entry)

            return list(await asyncio.gather(*[bounded(entry) for entry in due]))
        finally:
            self._busy = False

    async def _pull_store(
        self,
        tenant: Tenant,
        store: Store,
        integration: Integration,
        link: StoreIntegration,
    ) -> Dict[str, Any]:
        with with_correlation(tenant_id=tenant.id, store_id=store.id, integration_id=integration.id):
            try:
                result = await self.engine.pull(
                    store.id,
                    integration.id,
                    limit=self.pull_limit,
                    trigger="scheduled",
                )
            except PullLockedError as e:
                logger.info(f"Store {store.id} busy; scheduled pull skipped: {e}")
                return {"store_id": store.id, "status": "locked"}
            except Exception as e:
                logger.error(f"Scheduled pull for store {store.id} failed: {e}")
                create_notification(
                    tenant.id,
                    kind="sync_failure",
                    title="Scheduled sync failed",
                    message=f"The scheduled pull failed completely: {e}",
                    store_id=store.id,
                    db_path=self.db_path,
                )
                return {"store_id": store.id, "status": "error", "error": str(e)}

            self._notify_if_mostly_failed(tenant, store, result)
            return {
                "store_id": store.id,
                "status": result.status.value,
                "success": result.success,
                "failed": result.failed,
                "skipped": result.skipped,
            }

    def _notify_if_mostly_failed(self, tenant: Tenant, store: Store, result: PullResult) -> None:
        if result.failed == 0 or result.failed < result.success:
            return
        create_notification(
            tenant.id,
            kind="sync_failure",
            title="Scheduled sync finished with errors",
            message=(
                f"The scheduled pull failed for {result.failed} of "
                f"{result.failed + result.success} products. Check the sync logs for details."
            ),
            store_id=store.id,
            db_path=self.db_path,
        )
