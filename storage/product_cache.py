"""Store product cache.

Last known storefront stock per (store, sku). This is a projection for the
dashboard: the engine writes it after pulls and pushes but never reads it to
decide what to sync.
"""

from datetime import datetime
from typing import List, Optional

from core.models import ModifiedBy, StoreProduct
from storage.db import PathLike, connect, new_id, to_iso, transaction


def upsert_product(
    store_id: str,
    sku: str,
    stock_quantity: int,
    modified_by: ModifiedBy,
    platform_product_id: Optional[str] = None,
    platform_variant_id: Optional[str] = None,
    name: Optional[str] = None,
    db_path: Optional[PathLike] = None,
) -> None:
    """Insert or overwrite the cached stock for a SKU."""
    now = to_iso(datetime.utcnow())
    conn = connect(db_path)
    try:
        conn.execute("""
            INSERT INTO store_products
            (id, store_id, sku, platform_product_id, platform_variant_id, name,
             stock_quantity, last_modified_at, last_modified_by, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(store_id, sku) DO UPDATE SET
                stock_quantity = excluded.stock_quantity,
                platform_product_id = COALESCE(excluded.platform_product_id, platform_product_id),
                platform_variant_id = COALESCE(excluded.platform_variant_id, platform_variant_id),
                name = COALESCE(excluded.name, name),
                last_modified_at = excluded.last_modified_at,
                last_modified_by = excluded.last_modified_by,
                updated_at = excluded.updated_at
        """, (
            new_id(),
            store_id,
            sku,
            platform_product_id,
            platform_variant_id,
            name,
            stock_quantity,
            now,
            ModifiedBy(modified_by).value,
            now,
        ))
    finally:
        conn.close()


def apply_stock_delta(
    store_id: str,
    sku: str,
    delta: int,
    modified_by: ModifiedBy = ModifiedBy.PUSH,
    db_path: Optional[PathLike] = None,
) -> Optional[int]:
    """Add a signed delta to the cached stock, floored at zero.

    Returns:
        The new cached quantity, or None when the SKU is not cached yet.
    """
    now = to_iso(datetime.utcnow())
    with transaction(db_path) as conn:
        cursor = conn.execute("""
            UPDATE store_products
            SET stock_quantity = MAX(0, stock_quantity + ?),
                last_modified_at = ?, last_modified_by = ?, updated_at = ?
            WHERE store_id = ? AND sku = ?
        """, (delta, now, ModifiedBy(modified_by).value, now, store_id, sku))
        if cursor.rowcount == 0:
            return None
        row = conn.execute(
            "SELECT stock_quantity FROM store_products WHERE store_id = ? AND sku = ?",
            (store_id, sku),
        ).fetchone()
        return row["stock_quantity"]


def get_cached_product(
    store_id: str,
    sku: str,
    db_path: Optional[PathLike] = None,
) -> Optional[StoreProduct]:
    conn = connect(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM store_products WHERE store_id = ? AND sku = ?", (store_id, sku)
        ).fetchone()
        return StoreProduct(**dict(row)) if row else None
    finally:
        conn.close()


def list_cached_products(store_id: str, db_path: Optional[PathLike] = None) -> List[StoreProduct]:
    conn = connect(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM store_products WHERE store_id = ? ORDER BY sku", (store_id,)
        ).fetchall()
        return [StoreProduct(**dict(row)) for row in rows]
    finally:
        conn.close()
