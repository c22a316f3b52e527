"""Tenant, store and integration records.

Account management lives outside the sync engine; these functions are the
repository operations the engine needs to read tenants, stores and ledger
integrations, plus the writes used by seeding scripts and tests.

Credentials columns are sealed with core.security.encryption when
CREDENTIALS_KEY is configured.
"""

import json
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.config import get_settings
from core.models import Integration, Store, StoreIntegration, SyncConfig, Tenant
from core.observability import get_logger
from core.security import open_credentials, seal_credentials
from storage.db import PathLike, connect, new_id, to_iso, utcnow_iso

logger = get_logger(__name__)

_warned_plaintext = False


def _credentials_key() -> Optional[str]:
    return get_settings().credentials_key


def _seal(credentials: Dict[str, Any], tenant_id: str) -> str:
    global _warned_plaintext
    key = _credentials_key()
    if not key and not _warned_plaintext:
        logger.warning("CREDENTIALS_KEY is not set; credentials are stored as plain JSON")
        _warned_plaintext = True
    return seal_credentials(credentials, tenant_id, key)


# =============================================================================
# Tenants
# =============================================================================

def create_tenant(
    name: str,
    account_status: str = "approved",
    is_active: bool = True,
    expires_at: Optional[datetime] = None,
    tenant_id: Optional[str] = None,
    db_path: Optional[PathLike] = None,
) -> Tenant:
    tenant = Tenant(
        id=tenant_id or new_id(),
        name=name,
        account_status=account_status,
        is_active=is_active,
        expires_at=expires_at,
        created_at=datetime.utcnow(),
    )
    conn = connect(db_path)
    try:
        conn.execute("""
            INSERT INTO tenants (id, name, account_status, is_active, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            tenant.id,
            tenant.name,
            tenant.account_status,
            int(tenant.is_active),
            to_iso(tenant.expires_at),
            to_iso(tenant.created_at),
        ))
    finally:
        conn.close()
    return tenant


def get_tenant(tenant_id: str, db_path: Optional[PathLike] = None) -> Optional[Tenant]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM tenants WHERE id = ?", (tenant_id,)).fetchone()
        return Tenant(**dict(row)) if row else None
    finally:
        conn.close()


def update_tenant(
    tenant_id: str,
    account_status: Optional[str] = None,
    is_active: Optional[bool] = None,
    expires_at: Optional[datetime] = None,
    db_path: Optional[PathLike] = None,
) -> None:
    """Update the account fields the engine checks before syncing."""
    fields = []
    values: List[Any] = []
    if account_status is not None:
        fields.append("account_status = ?")
        values.append(account_status)
    if is_active is not None:
        fields.append("is_active = ?")
        values.append(int(is_active))
    if expires_at is not None:
        fields.append("expires_at = ?")
        values.append(to_iso(expires_at))
    if not fields:
        return
    values.append(tenant_id)
    conn = connect(db_path)
    try:
        conn.execute(f"UPDATE tenants SET {', '.join(fields)} WHERE id = ?", values)
    finally:
        conn.close()


# =============================================================================
# Stores
# =============================================================================

def _row_to_store(row: sqlite3.Row) -> Store:
    data = dict(row)
    data["credentials"] = open_credentials(data.get("credentials"), data["tenant_id"], _credentials_key())
    return Store(**data)


def create_store(
    tenant_id: str,
    name: str,
    platform: str,
    store_url: str,
    credentials: Dict[str, Any],
    sync_config: Optional[Dict[str, Any]] = None,
    is_active: bool = True,
    store_id: Optional[str] = None,
    db_path: Optional[PathLike] = None,
) -> Store:
    store = Store(
        id=store_id or new_id(),
        tenant_id=tenant_id,
        name=name,
        platform=platform,
        store_url=store_url,
        credentials=credentials,
        sync_config=sync_config or {},
        is_active=is_active,
        created_at=datetime.utcnow(),
    )
    conn = connect(db_path)
    try:
        conn.execute("""
            INSERT INTO stores
            (id, tenant_id, name, platform, store_url, credentials, sync_config, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            store.id,
            store.tenant_id,
            store.name,
            store.platform.value,
            store.store_url,
            _seal(credentials, tenant_id),
            json.dumps(store.sync_config),
            int(store.is_active),
            to_iso(store.created_at),
        ))
    finally:
        conn.close()
    return store


def get_store(store_id: str, db_path: Optional[PathLike] = None) -> Optional[Store]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM stores WHERE id = ?", (store_id,)).fetchone()
        return _row_to_store(row) if row else None
    finally:
        conn.close()


def list_stores(
    tenant_id: Optional[str] = None,
    active_only: bool = False,
    db_path: Optional[PathLike] = None,
) -> List[Store]:
    query = "SELECT * FROM stores WHERE 1=1"
    params: List[Any] = []
    if tenant_id:
        query += " AND tenant_id = ?"
        params.append(tenant_id)
    if active_only:
        query += " AND is_active = 1"
    query += " ORDER BY created_at"

    conn = connect(db_path)
    try:
        return [_row_to_store(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def update_store_last_sync(
    store_id: str,
    synced_at: Optional[datetime] = None,
    db_path: Optional[PathLike] = None,
) -> None:
    conn = connect(db_path)
    try:
        conn.execute(
            "UPDATE stores SET last_sync_at = ? WHERE id = ?",
            (to_iso(synced_at or datetime.utcnow()), store_id),
        )
    finally:
        conn.close()


# =============================================================================
# Integrations
# =============================================================================

def _row_to_integration(row: sqlite3.Row) -> Integration:
    data = dict(row)
    data["credentials"] = open_credentials(data.get("credentials"), data["tenant_id"], _credentials_key())
    return Integration(**data)


def create_integration(
    tenant_id: str,
    name: str,
    credentials: Dict[str, Any],
    settings: Optional[Dict[str, Any]] = None,
    integration_type: str = "contifico",
    is_active: bool = True,
    integration_id: Optional[str] = None,
    db_path: Optional[PathLike] = None,
) -> Integration:
    integration = Integration(
        id=integration_id or new_id(),
        tenant_id=tenant_id,
        name=name,
        integration_type=integration_type,
        credentials=credentials,
        settings=settings or {},
        is_active=is_active,
        created_at=datetime.utcnow(),
    )
    conn = connect(db_path)
    try:
        conn.execute("""
            INSERT INTO integrations
            (id, tenant_id, name, integration_type, credentials, settings, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            integration.id,
            integration.tenant_id,
            integration.name,
            integration.integration_type,
            _seal(credentials, tenant_id),
            json.dumps(integration.settings),
            int(integration.is_active),
            to_iso(integration.created_at),
        ))
    finally:
        conn.close()
    return integration


def get_integration(integration_id: str, db_path: Optional[PathLike] = None) -> Optional[Integration]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM integrations WHERE id = ?", (integration_id,)).fetchone()
        return _row_to_integration(row) if row else None
    finally:
        conn.close()


# =============================================================================
# Store <-> Integration links
# =============================================================================

def link_store_integration(
    store_id: str,
    integration_id: str,
    sync_config: Optional[Dict[str, Any]] = None,
    is_active: bool = True,
    db_path: Optional[PathLike] = None,
) -> StoreIntegration:
    """Raises pydantic.ValidationError when sync_config is malformed."""
    SyncConfig.model_validate(sync_config or {})
    link = StoreIntegration(
        id=new_id(),
        store_id=store_id,
        integration_id=integration_id,
        sync_config=sync_config or {},
        is_active=is_active,
        created_at=datetime.utcnow(),
    )
    conn = connect(db_path)
    try:
        conn.execute("""
            INSERT INTO store_integrations
            (id, store_id, integration_id, sync_config, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            link.id,
            link.store_id,
            link.integration_id,
            json.dumps(link.sync_config),
            int(link.is_active),
            to_iso(link.created_at),
        ))
    finally:
        conn.close()
    return link


def get_store_integration(
    store_id: str,
    integration_id: Optional[str] = None,
    active_only: bool = True,
    db_path: Optional[PathLike] = None,
) -> Optional[StoreIntegration]:
    """The store's link to a ledger integration (the oldest one if unspecified)."""
    query = "SELECT * FROM store_integrations WHERE store_id = ?"
    params: List[Any] = [store_id]
    if integration_id:
        query += " AND integration_id = ?"
        params.append(integration_id)
    if active_only:
        query += " AND is_active = 1"
    query += " ORDER BY created_at LIMIT 1"

    conn = connect(db_path)
    try:
        row = conn.execute(query, params).fetchone()
        return StoreIntegration(**dict(row)) if row else None
    finally:
        conn.close()


def list_store_integrations(
    active_only: bool = True,
    db_path: Optional[PathLike] = None,
) -> List[StoreIntegration]:
    query = "SELECT * FROM store_integrations"
    if active_only:
        query += " WHERE is_active = 1"
    query += " ORDER BY created_at"
    conn = connect(db_path)
    try:
        return [StoreIntegration(**dict(row)) for row in conn.execute(query).fetchall()]
    finally:
        conn.close()


def update_store_integration_config(
    link_id: str,
    sync_config: Dict[str, Any],
    db_path: Optional[PathLike] = None,
) -> None:
    SyncConfig.model_validate(sync_config)
    conn = connect(db_path)
    try:
        conn.execute(
            "UPDATE store_integrations SET sync_config = ? WHERE id = ?",
            (json.dumps(sync_config), link_id),
        )
    finally:
        conn.close()


# =============================================================================
# Notifications
# =============================================================================

def create_notification(
    tenant_id: str,
    kind: str,
    title: str,
    message: Optional[str] = None,
    store_id: Optional[str] = None,
    db_path: Optional[PathLike] = None,
) -> str:
    """Record a user-facing notification (e.g. a failed scheduled sync)."""
    notification_id = new_id()
    conn = connect(db_path)
    try:
        conn.execute("""
            INSERT INTO notifications (id, tenant_id, store_id, kind, title, message, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (notification_id, tenant_id, store_id, kind, title, message, utcnow_iso()))
    finally:
        conn.close()
    return notification_id


def list_notifications(
    tenant_id: str,
    unread_only: bool = False,
    db_path: Optional[PathLike] = None,
) -> List[Dict[str, Any]]:
    query = "SELECT * FROM notifications WHERE tenant_id = ?"
    if unread_only:
        query += " AND is_read = 0"
    query += " ORDER BY created_at DESC"
    conn = connect(db_path)
    try:
        return [dict(row) for row in conn.execute(query, (tenant_id,)).fetchall()]
    finally:
        conn.close()
