"""Domain models for the inventory sync engine.

Platform-neutral types shared by storage, the push pipeline, pull
reconciliation and the API. Rows from sqlite are validated into these models
by the storage layer; JSON columns arrive as strings and are decoded here.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.functional_validators import AfterValidator, BeforeValidator
from typing_extensions import Annotated


# =============================================================================
# Value Parsers
# =============================================================================

def _parse_json_dict(value):
    """Accept a dict or the JSON text stored in a sqlite column."""
    if value is None or value == "":
        return {}
    if isinstance(value, (bytes, str)):
        return json.loads(value)
    return value


def _parse_bool(value):
    """sqlite stores booleans as 0/1."""
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return bool(value)
    return value


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Offset-aware values become naive UTC; every timestamp in the engine is naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


JsonDict = Annotated[Dict[str, Any], BeforeValidator(_parse_json_dict)]
SqlBool = Annotated[bool, BeforeValidator(_parse_bool)]
UtcDatetime = Annotated[datetime, AfterValidator(naive_utc)]


# =============================================================================
# Enums
# =============================================================================

class MovementDirection(str, Enum):
    """Direction of a ledger stock movement."""
    DEBIT = "debit"     # stock leaves (sale)
    CREDIT = "credit"   # stock returns (cancellation / refund)


class MovementStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class LockDirection(str, Enum):
    PULL = "pull"
    PUSH = "push"


class ModifiedBy(str, Enum):
    PULL = "pull"
    PUSH = "push"
    MANUAL = "manual"


class SyncType(str, Enum):
    PULL = "pull"
    PUSH = "push"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class ItemStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class Platform(str, Enum):
    SHOPIFY = "shopify"
    WOOCOMMERCE = "woocommerce"


# =============================================================================
# Tenancy and configuration
# =============================================================================

class Tenant(BaseModel):
    """Account owning stores and integrations."""
    id: str
    name: str
    account_status: str = Field(default="approved", description="pending, approved or suspended")
    is_active: SqlBool = True
    expires_at: Optional[UtcDatetime] = None
    created_at: Optional[UtcDatetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = naive_utc(now) or datetime.utcnow()
        return self.expires_at is not None and self.expires_at <= now

    def is_operational(self, now: Optional[datetime] = None) -> bool:
        """Active and not expired."""
        return self.is_active and not self.is_expired(now)


class Store(BaseModel):
    """A storefront (Shopify shop or WooCommerce site)."""
    id: str
    tenant_id: str
    name: str
    platform: Platform
    store_url: str
    credentials: Dict[str, Any] = Field(default_factory=dict, description="Decrypted platform credentials")
    sync_config: JsonDict = Field(default_factory=dict)
    is_active: SqlBool = True
    last_sync_at: Optional[UtcDatetime] = None
    created_at: Optional[UtcDatetime] = None


class Integration(BaseModel):
    """A ledger integration (Contifico account)."""
    id: str
    tenant_id: str
    name: str
    integration_type: str = "contifico"
    credentials: Dict[str, Any] = Field(default_factory=dict, description="Decrypted ledger credentials")
    settings: JsonDict = Field(default_factory=dict)
    is_active: SqlBool = True
    created_at: Optional[UtcDatetime] = None

    @property
    def warehouse_primary(self) -> Optional[str]:
        return self.settings.get("warehouse_primary") or None


class ActiveHours(BaseModel):
    start: str = Field(..., description="HH:MM")
    end: str = Field(..., description="HH:MM")

    @field_validator("start", "end")
    @classmethod
    def check_clock_time(cls, value: str) -> str:
        hours, sep, minutes = value.partition(":")
        if not (sep and hours.isdigit() and minutes.isdigit() and len(minutes) == 2):
            raise ValueError(f"expected HH:MM, got {value!r}")
        if int(hours) > 23 or int(minutes) > 59:
            raise ValueError(f"time out of range: {value!r}")
        return value


class PullConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = False
    interval: str = Field(default="hourly", description="5min, 30min, hourly, daily or weekly")
    warehouse: Optional[str] = None
    active_hours: Optional[ActiveHours] = None
    recent_push_guard_minutes: Optional[int] = None


class PushConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True


class SyncConfig(BaseModel):
    """Per store-integration sync configuration."""
    model_config = ConfigDict(extra="ignore")

    pull: PullConfig = Field(default_factory=PullConfig)
    push: PushConfig = Field(default_factory=PushConfig)


class StoreIntegration(BaseModel):
    """Link between a store and the ledger integration it syncs with."""
    id: str
    store_id: str
    integration_id: str
    sync_config: JsonDict = Field(default_factory=dict)
    is_active: SqlBool = True
    created_at: Optional[UtcDatetime] = None

    @property
    def config(self) -> SyncConfig:
        return SyncConfig.model_validate(self.sync_config)


# =============================================================================
# Engine state
# =============================================================================

class Movement(BaseModel):
    """A queued stock movement derived from a storefront order event."""
    id: str
    tenant_id: str
    store_id: str
    integration_id: str
    movement_type: MovementDirection
    sku: str
    quantity: int = Field(..., gt=0)
    order_id: str
    event_type: str
    status: MovementStatus = MovementStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    last_attempt_at: Optional[UtcDatetime] = None
    next_attempt_at: Optional[UtcDatetime] = None
    error_message: Optional[str] = None
    metadata: JsonDict = Field(default_factory=dict)
    created_at: Optional[UtcDatetime] = None
    processed_at: Optional[UtcDatetime] = None

    @property
    def signed_quantity(self) -> int:
        """Stock delta this movement applies."""
        if self.movement_type == MovementDirection.DEBIT:
            return -self.quantity
        return self.quantity


class SyncLock(BaseModel):
    id: str
    store_id: str
    lock_type: LockDirection
    process_id: str
    locked_at: UtcDatetime
    expires_at: UtcDatetime


class StoreProduct(BaseModel):
    """Last known storefront stock for a SKU (UI projection)."""
    id: str
    store_id: str
    sku: str
    platform_product_id: Optional[str] = None
    platform_variant_id: Optional[str] = None
    name: Optional[str] = None
    stock_quantity: int = 0
    last_modified_at: Optional[UtcDatetime] = None
    last_modified_by: ModifiedBy = ModifiedBy.PULL
    updated_at: Optional[UtcDatetime] = None


class UnmappedSku(BaseModel):
    id: str
    tenant_id: str
    store_id: str
    sku: str
    product_name: Optional[str] = None
    reason: Optional[str] = None
    occurrences: int = 1
    resolved: SqlBool = False
    first_seen_at: Optional[UtcDatetime] = None
    last_seen_at: Optional[UtcDatetime] = None
    resolved_at: Optional[UtcDatetime] = None


class SyncLogItem(BaseModel):
    id: Optional[str] = None
    sync_log_id: Optional[str] = None
    sku: str
    product_name: Optional[str] = None
    status: ItemStatus
    category: str
    stock_before: Optional[int] = None
    stock_after: Optional[int] = None
    error_message: Optional[str] = None
    created_at: Optional[UtcDatetime] = None


class SyncLog(BaseModel):
    id: str
    tenant_id: str
    store_id: str
    integration_id: Optional[str] = None
    sync_type: SyncType
    status: SyncStatus
    synced_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    duration_ms: int = 0
    error_message: Optional[str] = None
    details: JsonDict = Field(default_factory=dict)
    created_at: Optional[UtcDatetime] = None
    items: List[SyncLogItem] = Field(default_factory=list)
