"""Database connection and schema for the sync engine.

This module handles:
- Resolving the sqlite database path (at call time, from settings)
- Opening connections with row access by column name
- Short write transactions (BEGIN IMMEDIATE) for check-then-update sequences
- Schema initialization

The movement queue and lock tables are owned by the sync engine. The
store_products cache may be read by UI collaborators but is written only here.
"""

import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional, Union

from core.config import get_settings
from core.models.sync import naive_utc


PathLike = Union[str, Path]


def resolve_db_path(db_path: Optional[PathLike] = None) -> Path:
    """Explicit path if given, else the configured one."""
    if db_path is not None:
        return Path(db_path)
    return Path(get_settings().db_path)


def connect(db_path: Optional[PathLike] = None) -> sqlite3.Connection:
    """Open a connection in autocommit mode.

    Single statements commit on their own; multi-statement writes go through
    transaction().
    """
    path = resolve_db_path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(db_path: Optional[PathLike] = None) -> Iterator[sqlite3.Connection]:
    """Write transaction holding sqlite's RESERVED lock from the first statement.

    BEGIN IMMEDIATE serializes writers across processes, so a read followed
    by an update inside the block cannot interleave with another writer.
    """
    conn = connect(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow_iso() -> str:
    return datetime.utcnow().isoformat()


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Naive UTC ISO text; aware values are converted so string comparisons in SQL hold."""
    return naive_utc(value).isoformat() if value else None


# =============================================================================
# Schema
# =============================================================================

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS tenants (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        account_status TEXT NOT NULL DEFAULT 'approved',
        is_active INTEGER NOT NULL DEFAULT 1,
        expires_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stores (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        platform TEXT NOT NULL CHECK (platform IN ('shopify', 'woocommerce')),
        store_url TEXT NOT NULL,
        credentials TEXT,
        sync_config TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        last_sync_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS integrations (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        integration_type TEXT NOT NULL DEFAULT 'contifico',
        credentials TEXT,
        settings TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS store_integrations (
        id TEXT PRIMARY KEY,
        store_id TEXT NOT NULL REFERENCES stores(id) ON DELETE CASCADE,
        integration_id TEXT NOT NULL REFERENCES integrations(id) ON DELETE CASCADE,
        sync_config TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        UNIQUE(store_id, integration_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory_movements_queue (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        store_id TEXT NOT NULL,
        integration_id TEXT NOT NULL,
        movement_type TEXT NOT NULL CHECK (movement_type IN ('debit', 'credit')),
        sku TEXT NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity > 0),
        order_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        last_attempt_at TEXT,
        next_attempt_at TEXT,
        error_message TEXT,
        metadata TEXT,
        created_at TEXT NOT NULL,
        processed_at TEXT
    )
    """,
    # Natural dedup key: at most one movement per (store, order, sku, direction)
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_movements_natural_key
    ON inventory_movements_queue(store_id, order_id, sku, movement_type)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_movements_due
    ON inventory_movements_queue(status, next_attempt_at, created_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_movements_store_status
    ON inventory_movements_queue(store_id, status, processed_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_locks (
        id TEXT PRIMARY KEY,
        store_id TEXT NOT NULL REFERENCES stores(id) ON DELETE CASCADE,
        lock_type TEXT NOT NULL CHECK (lock_type IN ('pull', 'push')),
        locked_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        process_id TEXT NOT NULL,
        UNIQUE(store_id, lock_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS store_products (
        id TEXT PRIMARY KEY,
        store_id TEXT NOT NULL REFERENCES stores(id) ON DELETE CASCADE,
        sku TEXT NOT NULL,
        platform_product_id TEXT,
        platform_variant_id TEXT,
        name TEXT,
        stock_quantity INTEGER NOT NULL DEFAULT 0,
        last_modified_at TEXT,
        last_modified_by TEXT NOT NULL DEFAULT 'pull',
        updated_at TEXT NOT NULL,
        UNIQUE(store_id, sku)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS unmapped_skus (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        store_id TEXT NOT NULL,
        sku TEXT NOT NULL,
        product_name TEXT,
        reason TEXT,
        occurrences INTEGER NOT NULL DEFAULT 1,
        resolved INTEGER NOT NULL DEFAULT 0,
        first_seen_at TEXT NOT NULL,
        last_seen_at TEXT NOT NULL,
        resolved_at TEXT,
        UNIQUE(store_id, sku)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_logs (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        store_id TEXT NOT NULL,
        integration_id TEXT,
        sync_type TEXT NOT NULL CHECK (sync_type IN ('pull', 'push')),
        status TEXT NOT NULL,
        synced_count INTEGER NOT NULL DEFAULT 0,
        failed_count INTEGER NOT NULL DEFAULT 0,
        skipped_count INTEGER NOT NULL DEFAULT 0,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        error_message TEXT,
        details TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_sync_logs_store
    ON sync_logs(store_id, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_log_items (
        id TEXT PRIMARY KEY,
        sync_log_id TEXT NOT NULL REFERENCES sync_logs(id) ON DELETE CASCADE,
        sku TEXT NOT NULL,
        product_name TEXT,
        status TEXT NOT NULL,
        category TEXT NOT NULL,
        stock_before INTEGER,
        stock_after INTEGER,
        error_message TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        store_id TEXT,
        kind TEXT NOT NULL,
        title TEXT NOT NULL,
        message TEXT,
        is_read INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
]


def init_db(db_path: Optional[PathLike] = None) -> Path:
    """Create all sync engine tables and indexes.

    Returns:
        The database path that was initialized
    """
    path = resolve_db_path(db_path)
    conn = connect(path)
    try:
        for statement in SCHEMA:
            conn.execute(statement)
    finally:
        conn.close()
    return path
