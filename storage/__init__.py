"""Relational persistence for the sync engine (sqlite3).

Modules:
- db: connections, transactions, schema
- stores: tenants, stores, integrations, notifications
- movements: the inventory movement queue
- product_cache: last known storefront stock
- unmapped_skus: SKUs failing ledger lookup
- sync_logs: audit trail of pull and push runs
"""

from storage.db import init_db, connect, transaction, resolve_db_path

__all__ = [
    "init_db",
    "connect",
    "transaction",
    "resolve_db_path",
]
