"""Push worker loop.

Polls the movement queue on a fixed interval. Each tick:
    - purges expired sync locks
    - processes up to `batch_limit` due movements
    - once per day, deletes finished movements past the retention window

A tick never overlaps the previous one; stop() lets the in-flight tick
finish before returning.
"""

import asyncio
from datetime import date
from typing import Any, Dict, Optional

from core.observability import get_logger, log_sync_event
from push.service import PushBatchResult, PushService

logger = get_logger(__name__)


class PushWorker:
    def __init__(
        self,
        service: PushService,
        interval_seconds: Optional[float] = None,
        batch_limit: Optional[int] = None,
    ):
        self.service = service
        self.interval_seconds = interval_seconds or service.settings.push_worker_interval_seconds
        self.batch_limit = batch_limit or service.settings.push_batch_limit
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self._busy = False
        self._last_cleanup: Optional[date] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the loop on the running event loop. The first tick runs immediately."""
        if self.is_running:
            logger.info("Push worker already running")
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name="push-worker")
        logger.info(f"Push worker started (interval {self.interval_seconds}s, batch {self.batch_limit})")

    async def stop(self, timeout: float = 60) -> None:
        if self._task is None:
            return
        self._stopping.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Push worker did not drain within {timeout}s; cancelling")
            self._task.cancel()
        finally:
            self._task = None
        logger.info("Push worker stopped")

    async def run_once(self) -> Optional[PushBatchResult]:
        """One tick. Returns None when the previous tick is still running."""
        if self._busy:
            logger.info("Previous push tick still running; skipping")
            return None
        self._busy = True
        try:
            self.service.locks.purge_expired()
            result = await self.service.process_pending_movements(limit=self.batch_limit)
            if result.processed:
                log_sync_event(
                    "push_batch_completed",
                    processed=result.processed,
                    completed=result.completed,
                    failed=result.failed,
                    retried=result.retried,
                    deferred=result.deferred,
                )
            self._daily_cleanup()
            return result
        finally:
            self._busy = False

    def _daily_cleanup(self) -> None:
        today = date.today()
        if self._last_cleanup == today:
            return
        self._last_cleanup = today
        self.service.clean_old_movements()

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Push tick failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "busy": self._busy,
            "interval_seconds": self.interval_seconds,
            "batch_limit": self.batch_limit,
        }
