"""Sync audit trail.

One sync_logs row per pull run or per store per push batch, with
sync_log_items holding per-SKU outcomes. Logs are append-only: a log and its
items are written together in one transaction and never edited afterwards.
"""

import json
from datetime import datetime
from typing import List, Optional

from core.models import SyncLog, SyncLogItem
from storage.db import PathLike, connect, new_id, to_iso, transaction


def write_sync_log(log: SyncLog, db_path: Optional[PathLike] = None) -> SyncLog:
    """Persist a log and its items atomically."""
    created_at = log.created_at or datetime.utcnow()
    with transaction(db_path) as conn:
        conn.execute("""
            INSERT INTO sync_logs
            (id, tenant_id, store_id, integration_id, sync_type, status, synced_count,
             failed_count, skipped_count, duration_ms, error_message, details, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            log.id,
            log.tenant_id,
            log.store_id,
            log.integration_id,
            log.sync_type.value,
            log.status.value,
            log.synced_count,
            log.failed_count,
            log.skipped_count,
            log.duration_ms,
            log.error_message,
            json.dumps(log.details, default=str),
            to_iso(created_at),
        ))
        conn.executemany("""
            INSERT INTO sync_log_items
            (id, sync_log_id, sku, product_name, status, category, stock_before,
             stock_after, error_message, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            (
                item.id or new_id(),
                log.id,
                item.sku,
                item.product_name,
                item.status.value,
                item.category,
                item.stock_before,
                item.stock_after,
                item.error_message,
                to_iso(created_at),
            )
            for item in log.items
        ])
    return log.model_copy(update={"created_at": created_at})


def get_sync_log(sync_log_id: str, db_path: Optional[PathLike] = None) -> Optional[SyncLog]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM sync_logs WHERE id = ?", (sync_log_id,)).fetchone()
        if row is None:
            return None
        items = conn.execute(
            "SELECT * FROM sync_log_items WHERE sync_log_id = ? ORDER BY rowid", (sync_log_id,)
        ).fetchall()
        return SyncLog(**dict(row), items=[SyncLogItem(**dict(item)) for item in items])
    finally:
        conn.close()


def list_sync_logs(
    store_id: Optional[str] = None,
    sync_type: Optional[str] = None,
    limit: int = 50,
    db_path: Optional[PathLike] = None,
) -> List[SyncLog]:
    """Most recent logs first, without items."""
    query = "SELECT * FROM sync_logs WHERE 1=1"
    params: list = []
    if store_id:
        query += " AND store_id = ?"
        params.append(store_id)
    if sync_type:
        query += " AND sync_type = ?"
        params.append(sync_type)
    query += " ORDER BY created_at DESC LIMIT ?"
    params.append(limit)
    conn = connect(db_path)
    try:
        return [SyncLog(**dict(row)) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()
