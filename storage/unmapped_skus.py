"""Unmapped SKU tracking.

Records SKUs that repeatedly fail on the ledger side (no matching product,
insufficient stock) so the mapping gaps can be surfaced. Sync logic never
reads this table.
"""

from datetime import datetime
from typing import List, Optional

from core.models import UnmappedSku
from storage.db import PathLike, connect, new_id, to_iso


def track_unmapped_sku(
    tenant_id: str,
    store_id: str,
    sku: str,
    reason: str,
    product_name: Optional[str] = None,
    db_path: Optional[PathLike] = None,
) -> None:
    """Record an occurrence; reopens the entry if it had been resolved."""
    now = to_iso(datetime.utcnow())
    conn = connect(db_path)
    try:
        conn.execute("""
            INSERT INTO unmapped_skus
            (id, tenant_id, store_id, sku, product_name, reason, occurrences,
             resolved, first_seen_at, last_seen_at)
            VALUES (?, ?, ?, ?, ?, ?, 1, 0, ?, ?)
            ON CONFLICT(store_id, sku) DO UPDATE SET
                occurrences = occurrences + 1,
                reason = excluded.reason,
                product_name = COALESCE(excluded.product_name, product_name),
                last_seen_at = excluded.last_seen_at,
                resolved = 0,
                resolved_at = NULL
        """, (new_id(), tenant_id, store_id, sku, product_name, reason, now, now))
    finally:
        conn.close()


def list_unmapped_skus(
    tenant_id: Optional[str] = None,
    store_id: Optional[str] = None,
    include_resolved: bool = False,
    db_path: Optional[PathLike] = None,
) -> List[UnmappedSku]:
    query = "SELECT * FROM unmapped_skus WHERE 1=1"
    params = []
    if tenant_id:
        query += " AND tenant_id = ?"
        params.append(tenant_id)
    if store_id:
        query += " AND store_id = ?"
        params.append(store_id)
    if not include_resolved:
        query += " AND resolved = 0"
    query += " ORDER BY occurrences DESC, last_seen_at DESC"
    conn = connect(db_path)
    try:
        return [UnmappedSku(**dict(row)) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def get_unmapped_sku(
    store_id: str,
    sku: str,
    db_path: Optional[PathLike] = None,
) -> Optional[UnmappedSku]:
    conn = connect(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM unmapped_skus WHERE store_id = ? AND sku = ?", (store_id, sku)
        ).fetchone()
        return UnmappedSku(**dict(row)) if row else None
    finally:
        conn.close()


def resolve_unmapped_sku(unmapped_id: str, db_path: Optional[PathLike] = None) -> bool:
    conn = connect(db_path)
    try:
        cursor = conn.execute(
            "UPDATE unmapped_skus SET resolved = 1, resolved_at = ? WHERE id = ? AND resolved = 0",
            (to_iso(datetime.utcnow()), unmapped_id),
        )
        return cursor.rowcount == 1
    finally:
        conn.close()
