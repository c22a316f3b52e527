"""Inventory movement queue repository.

The queue is the durable substrate of the push pipeline. Every state change
is a guarded UPDATE (``WHERE status = ...``) so two workers racing on the same
row cannot both move it forward, and a completed movement is never rewritten.

Lifecycle:
    pending -> processing -> completed
                          -> pending (retry, attempts + 1, next_attempt_at)
                          -> failed (terminal)
"""

import json
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from core.models import Movement, MovementDirection, MovementStatus
from storage.db import PathLike, connect, new_id, to_iso, transaction


def _row_to_movement(row: sqlite3.Row) -> Movement:
    return Movement(**dict(row))


# =============================================================================
# Enqueue / lookup
# =============================================================================

def find_movement_by_key(
    store_id: str,
    order_id: str,
    sku: str,
    direction: MovementDirection,
    db_path: Optional[PathLike] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> Optional[Movement]:
    """Indexed point lookup on the natural key (store, order, sku, direction)."""
    query = """
        SELECT * FROM inventory_movements_queue
        WHERE store_id = ? AND order_id = ? AND sku = ? AND movement_type = ?
    """
    params = (store_id, order_id, sku, MovementDirection(direction).value)
    if conn is not None:
        row = conn.execute(query, params).fetchone()
        return _row_to_movement(row) if row else None

    own = connect(db_path)
    try:
        row = own.execute(query, params).fetchone()
        return _row_to_movement(row) if row else None
    finally:
        own.close()


def insert_movement_if_absent(
    tenant_id: str,
    store_id: str,
    integration_id: str,
    direction: MovementDirection,
    sku: str,
    quantity: int,
    order_id: str,
    event_type: str,
    max_attempts: int = 3,
    metadata: Optional[Dict[str, Any]] = None,
    db_path: Optional[PathLike] = None,
) -> Tuple[Movement, bool]:
    """Insert a pending movement unless its natural key already exists.

    Returns:
        (movement, created). When created is False the returned movement is
        the existing row for the key.
    """
    movement = Movement(
        id=new_id(),
        tenant_id=tenant_id,
        store_id=store_id,
        integration_id=integration_id,
        movement_type=direction,
        sku=sku,
        quantity=quantity,
        order_id=str(order_id),
        event_type=event_type,
        status=MovementStatus.PENDING,
        attempts=0,
        max_attempts=max_attempts,
        metadata=metadata or {},
        created_at=datetime.utcnow(),
    )

    try:
        with transaction(db_path) as conn:
            existing = find_movement_by_key(
                store_id, movement.order_id, sku, direction, conn=conn
            )
            if existing is not None:
                return existing, False

            conn.execute("""
                INSERT INTO inventory_movements_queue
                (id, tenant_id, store_id, integration_id, movement_type, sku, quantity,
                 order_id, event_type, status, attempts, max_attempts, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                movement.id,
                movement.tenant_id,
                movement.store_id,
                movement.integration_id,
                movement.movement_type.value,
                movement.sku,
                movement.quantity,
                movement.order_id,
                movement.event_type,
                movement.status.value,
                movement.attempts,
                movement.max_attempts,
                json.dumps(movement.metadata),
                to_iso(movement.created_at),
            ))
    except sqlite3.IntegrityError as e:
        # Another writer inserted the same key between our lookup and insert
        if "UNIQUE" not in str(e):
            raise
        existing = find_movement_by_key(store_id, movement.order_id, sku, direction, db_path=db_path)
        if existing is None:
            raise
        return existing, False

    return movement, True


def get_movement(movement_id: str, db_path: Optional[PathLike] = None) -> Optional[Movement]:
    conn = connect(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM inventory_movements_queue WHERE id = ?", (movement_id,)
        ).fetchone()
        return _row_to_movement(row) if row else None
    finally:
        conn.close()


def list_due_movements(
    limit: int = 50,
    now: Optional[datetime] = None,
    db_path: Optional[PathLike] = None,
) -> List[Movement]:
    """Pending movements whose retry time has come, oldest first."""
    now_iso = to_iso(now or datetime.utcnow())
    conn = connect(db_path)
    try:
        rows = conn.execute("""
            SELECT * FROM inventory_movements_queue
            WHERE status = 'pending'
              AND attempts < max_attempts
              AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
            ORDER BY created_at
            LIMIT ?
        """, (now_iso, limit)).fetchall()
        return [_row_to_movement(row) for row in rows]
    finally:
        conn.close()


def list_movements(
    status: Optional[str] = None,
    store_id: Optional[str] = None,
    limit: int = 100,
    db_path: Optional[PathLike] = None,
) -> List[Movement]:
    query = "SELECT * FROM inventory_movements_queue WHERE 1=1"
    params: List[Any] = []
    if status:
        query += " AND status = ?"
        params.append(status)
    if store_id:
        query += " AND store_id = ?"
        params.append(store_id)
    query += " ORDER BY created_at DESC LIMIT ?"
    params.append(limit)

    conn = connect(db_path)
    try:
        return [_row_to_movement(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def count_movements_by_status(
    store_id: Optional[str] = None,
    db_path: Optional[PathLike] = None,
) -> Dict[str, int]:
    query = "SELECT status, COUNT(*) AS n FROM inventory_movements_queue"
    params: List[Any] = []
    if store_id:
        query += " WHERE store_id = ?"
        params.append(store_id)
    query += " GROUP BY status"
    conn = connect(db_path)
    try:
        return {row["status"]: row["n"] for row in conn.execute(query, params).fetchall()}
    finally:
        conn.close()


# =============================================================================
# State transitions
# =============================================================================

def claim_movement(
    movement_id: str,
    now: Optional[datetime] = None,
    db_path: Optional[PathLike] = None,
) -> bool:
    """pending -> processing. False if another worker got there first."""
    conn = connect(db_path)
    try:
        cursor = conn.execute("""
            UPDATE inventory_movements_queue
            SET status = 'processing', last_attempt_at = ?
            WHERE id = ? AND status = 'pending' AND attempts < max_attempts
        """, (to_iso(now or datetime.utcnow()), movement_id))
        return cursor.rowcount == 1
    finally:
        conn.close()


def defer_movement(
    movement_id: str,
    next_attempt_at: datetime,
    reason: Optional[str] = None,
    db_path: Optional[PathLike] = None,
) -> bool:
    """Push back a pending movement without counting an attempt."""
    conn = connect(db_path)
    try:
        cursor = conn.execute("""
            UPDATE inventory_movements_queue
            SET next_attempt_at = ?, error_message = COALESCE(?, error_message)
            WHERE id = ? AND status = 'pending'
        """, (to_iso(next_attempt_at), reason, movement_id))
        return cursor.rowcount == 1
    finally:
        conn.close()


def complete_movement(
    movement_id: str,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    db_path: Optional[PathLike] = None,
) -> bool:
    """processing -> completed, merging metadata (ledger movement id etc.)."""
    with transaction(db_path) as conn:
        row = conn.execute(
            "SELECT metadata FROM inventory_movements_queue WHERE id = ? AND status = 'processing'",
            (movement_id,),
        ).fetchone()
        if row is None:
            return False
        merged = json.loads(row["metadata"] or "{}")
        merged.update(metadata or {})
        conn.execute("""
            UPDATE inventory_movements_queue
            SET status = 'completed', processed_at = ?, error_message = NULL,
                next_attempt_at = NULL, metadata = ?
            WHERE id = ?
        """, (to_iso(now or datetime.utcnow()), json.dumps(merged), movement_id))
    return True


def fail_movement(
    movement_id: str,
    error_message: str,
    attempts: Optional[int] = None,
    now: Optional[datetime] = None,
    db_path: Optional[PathLike] = None,
) -> bool:
    """Terminal failure. Never applied to a completed movement."""
    conn = connect(db_path)
    try:
        cursor = conn.execute("""
            UPDATE inventory_movements_queue
            SET status = 'failed', error_message = ?, processed_at = ?,
                next_attempt_at = NULL, attempts = COALESCE(?, attempts)
            WHERE id = ? AND status IN ('pending', 'processing')
        """, (error_message, to_iso(now or datetime.utcnow()), attempts, movement_id))
        return cursor.rowcount == 1
    finally:
        conn.close()


def schedule_retry(
    movement_id: str,
    attempts: int,
    next_attempt_at: datetime,
    error_message: str,
    db_path: Optional[PathLike] = None,
) -> bool:
    """processing -> pending with the attempt counted."""
    conn = connect(db_path)
    try:
        cursor = conn.execute("""
            UPDATE inventory_movements_queue
            SET status = 'pending', attempts = ?, next_attempt_at = ?, error_message = ?
            WHERE id = ? AND status = 'processing'
        """, (attempts, to_iso(next_attempt_at), error_message, movement_id))
        return cursor.rowcount == 1
    finally:
        conn.close()


def reset_failed_movement(
    movement_id: str,
    db_path: Optional[PathLike] = None,
) -> Optional[Movement]:
    """failed -> pending with a fresh attempt budget (operator-forced retry)."""
    conn = connect(db_path)
    try:
        cursor = conn.execute("""
            UPDATE inventory_movements_queue
            SET status = 'pending', attempts = 0, next_attempt_at = NULL,
                processed_at = NULL, error_message = NULL
            WHERE id = ? AND status = 'failed'
        """, (movement_id,))
        if cursor.rowcount != 1:
            return None
    finally:
        conn.close()
    return get_movement(movement_id, db_path=db_path)


def requeue_stale_processing(
    older_than: datetime,
    db_path: Optional[PathLike] = None,
) -> int:
    """Return movements stuck in processing (crashed worker) to pending.

    The interrupted attempt is counted; rows that exhaust their attempts are
    marked failed.
    """
    cutoff = to_iso(older_than)
    with transaction(db_path) as conn:
        failed = conn.execute("""
            UPDATE inventory_movements_queue
            SET status = 'failed', attempts = attempts + 1, processed_at = ?,
                error_message = 'Processing interrupted; attempts exhausted'
            WHERE status = 'processing' AND last_attempt_at < ? AND attempts + 1 >= max_attempts
        """, (to_iso(datetime.utcnow()), cutoff)).rowcount
        requeued = conn.execute("""
            UPDATE inventory_movements_queue
            SET status = 'pending', attempts = attempts + 1, next_attempt_at = NULL,
                error_message = 'Processing interrupted; requeued'
            WHERE status = 'processing' AND last_attempt_at < ?
        """, (cutoff,)).rowcount
    return failed + requeued


# =============================================================================
# Queries used by pull and maintenance
# =============================================================================

def recently_pushed_skus(
    store_id: str,
    since: datetime,
    db_path: Optional[PathLike] = None,
) -> Set[str]:
    """SKUs with a push completed at or after `since`."""
    conn = connect(db_path)
    try:
        rows = conn.execute("""
            SELECT DISTINCT sku FROM inventory_movements_queue
            WHERE store_id = ? AND status = 'completed' AND processed_at >= ?
        """, (store_id, to_iso(since))).fetchall()
        return {row["sku"] for row in rows}
    finally:
        conn.close()


def find_stuck_movements(
    older_than: datetime,
    min_attempts: int = 2,
    store_id: Optional[str] = None,
    db_path: Optional[PathLike] = None,
) -> List[Movement]:
    """Open (pending/processing) movements created before `older_than` that
    have already burned `min_attempts` attempts."""
    query = """
        SELECT * FROM inventory_movements_queue
        WHERE status IN ('pending', 'processing') AND attempts >= ? AND created_at < ?
    """
    params: List[Any] = [min_attempts, to_iso(older_than)]
    if store_id:
        query += " AND store_id = ?"
        params.append(store_id)
    query += " ORDER BY created_at"
    conn = connect(db_path)
    try:
        return [_row_to_movement(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def find_open_with_error(
    pattern: str,
    store_id: Optional[str] = None,
    db_path: Optional[PathLike] = None,
) -> List[Movement]:
    """Open movements whose last error contains `pattern` (case-insensitive)."""
    query = """
        SELECT * FROM inventory_movements_queue
        WHERE status IN ('pending', 'processing') AND LOWER(error_message) LIKE ?
    """
    params: List[Any] = [f"%{pattern.lower()}%"]
    if store_id:
        query += " AND store_id = ?"
        params.append(store_id)
    query += " ORDER BY created_at"
    conn = connect(db_path)
    try:
        return [_row_to_movement(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def delete_finished_before(cutoff: datetime, db_path: Optional[PathLike] = None) -> int:
    """Retention: drop completed and failed movements processed before cutoff."""
    conn = connect(db_path)
    try:
        return conn.execute("""
            DELETE FROM inventory_movements_queue
            WHERE status IN ('completed', 'failed') AND processed_at < ?
        """, (to_iso(cutoff),)).rowcount
    finally:
        conn.close()
