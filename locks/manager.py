"""Distributed Lock Manager.

Per-store, per-direction mutual exclusion backed by the ``sync_locks`` table.
At most one unexpired lock exists per (store_id, lock_type): the UNIQUE
constraint enforces this, the application never coordinates it. Expired
locks are reaped before every acquisition attempt, so a crashed worker
blocks a store for at most its lock TTL.

Locks are advisory. Ledger and storefront stock are only mutated by the push
service and the pull engine, and both acquire their lock before mutating.
Any new stock-mutating path must do the same.

Releasing:
    release(store_id, direction)  - one direction, optionally owner-checked
    release_all(store_id)         - both pull and push; an operator/legacy
                                    path that drops the pull/push exclusion
                                    guarantee for that store
"""

import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Optional, Union

from core.models import LockDirection, SyncLock
from core.observability import get_logger
from storage.db import PathLike, connect, new_id, to_iso, transaction

logger = get_logger(__name__)


class LockManager:
    """Acquire and release sync locks.

    Usage:
        locks = LockManager(db_path)
        lock = locks.acquire(store_id, LockDirection.PUSH, owner_token, ttl_seconds=300)
        if lock is None:
            ...  # contention, try later
        try:
            ...
        finally:
            locks.release(store_id, LockDirection.PUSH, owner_token)
    """

    def __init__(self, db_path: Optional[PathLike] = None):
        self.db_path = db_path

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete every lock whose TTL has passed."""
        conn = connect(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM sync_locks WHERE expires_at <= ?",
                (to_iso(now or datetime.utcnow()),),
            )
            if cursor.rowcount:
                logger.info(f"Purged {cursor.rowcount} expired sync lock(s)")
            return cursor.rowcount
        finally:
            conn.close()

    def acquire(
        self,
        store_id: str,
        direction: Union[LockDirection, str],
        owner_token: str,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> Optional[SyncLock]:
        """Try to take the lock.

        Returns:
            The lock, or None when an unexpired lock is already held.
        """
        direction = LockDirection(direction)
        now = now or datetime.utcnow()
        lock = SyncLock(
            id=new_id(),
            store_id=store_id,
            lock_type=direction,
            process_id=owner_token,
            locked_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

        try:
            with transaction(self.db_path) as conn:
                conn.execute(
                    "DELETE FROM sync_locks WHERE expires_at <= ?",
                    (to_iso(now),),
                )
                conn.execute("""
                    INSERT INTO sync_locks (id, store_id, lock_type, locked_at, expires_at, process_id)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    lock.id,
                    lock.store_id,
                    direction.value,
                    to_iso(lock.locked_at),
                    to_iso(lock.expires_at),
                    lock.process_id,
                ))
        except sqlite3.IntegrityError as e:
            if "UNIQUE" not in str(e):
                raise
            logger.info(
                f"Lock {direction.value} busy for store {store_id}",
                extra_fields={"store_id": store_id, "owner": owner_token},
            )
            return None

        logger.debug(f"Acquired {direction.value} lock for store {store_id} ({owner_token})")
        return lock

    def release(
        self,
        store_id: str,
        direction: Union[LockDirection, str],
        owner_token: Optional[str] = None,
    ) -> int:
        """Delete the lock for one direction.

        With owner_token, only that owner's lock is removed, so a holder whose
        lock expired and was re-acquired by someone else cannot free it.
        """
        direction = LockDirection(direction)
        query = "DELETE FROM sync_locks WHERE store_id = ? AND lock_type = ?"
        params = [store_id, direction.value]
        if owner_token is not None:
            query += " AND process_id = ?"
            params.append(owner_token)
        conn = connect(self.db_path)
        try:
            return conn.execute(query, params).rowcount
        finally:
            conn.close()

    def release_all(self, store_id: str) -> int:
        """Delete both pull and push locks for a store."""
        conn = connect(self.db_path)
        try:
            released = conn.execute("DELETE FROM sync_locks WHERE store_id = ?", (store_id,)).rowcount
        finally:
            conn.close()
        if released:
            logger.warning(f"Released all {released} lock(s) for store {store_id}")
        return released

    def has_active_lock(
        self,
        store_id: str,
        direction: Optional[Union[LockDirection, str]] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Whether an unexpired lock exists (any direction when None)."""
        self.purge_expired(now)
        query = "SELECT 1 FROM sync_locks WHERE store_id = ?"
        params = [store_id]
        if direction is not None:
            query += " AND lock_type = ?"
            params.append(LockDirection(direction).value)
        conn = connect(self.db_path)
        try:
            return conn.execute(query + " LIMIT 1", params).fetchone() is not None
        finally:
            conn.close()

    def get_lock(self, store_id: str, direction: Union[LockDirection, str]) -> Optional[SyncLock]:
        conn = connect(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM sync_locks WHERE store_id = ? AND lock_type = ?",
                (store_id, LockDirection(direction).value),
            ).fetchone()
            return SyncLock(**dict(row)) if row else None
        finally:
            conn.close()

    def acquire_exclusive(
        self,
        store_id: str,
        direction: Union[LockDirection, str],
        owner_token: str,
        ttl_seconds: int,
    ) -> Optional[SyncLock]:
        """Acquire `direction` only if the opposite direction is not held.

        Pull and push on the same store are mutually exclusive. Each side
        takes its own lock first and then checks the other, so two racing
        callers can at worst both back off, never both proceed.
        """
        direction = LockDirection(direction)
        lock = self.acquire(store_id, direction, owner_token, ttl_seconds)
        if lock is None:
            return None
        other = LockDirection.PULL if direction == LockDirection.PUSH else LockDirection.PUSH
        if self.has_active_lock(store_id, other):
            self.release(store_id, direction, owner_token)
            logger.info(f"Store {store_id} has an active {other.value} lock; backing off")
            return None
        return lock

    @asynccontextmanager
    async def hold(
        self,
        store_id: str,
        direction: Union[LockDirection, str],
        owner_token: str,
        ttl_seconds: int,
    ) -> AsyncIterator[Optional[SyncLock]]:
        """Async context manager: yields the lock (or None) and always releases it."""
        lock = self.acquire_exclusive(store_id, direction, owner_token, ttl_seconds)
        try:
            yield lock
        finally:
            if lock is not None:
                self.release(store_id, direction, owner_token)
