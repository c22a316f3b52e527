"""Core data models - platform-neutral sync engine types."""

from core.models.sync import (
    # Enums
    MovementDirection,
    MovementStatus,
    LockDirection,
    ModifiedBy,
    SyncType,
    SyncStatus,
    ItemStatus,
    Platform,

    # Tenancy and configuration
    Tenant,
    Store,
    Integration,
    StoreIntegration,
    SyncConfig,
    PullConfig,
    PushConfig,
    ActiveHours,

    # Engine state
    Movement,
    SyncLock,
    StoreProduct,
    UnmappedSku,
    SyncLog,
    SyncLogItem,
)

__all__ = [
    "MovementDirection",
    "MovementStatus",
    "LockDirection",
    "ModifiedBy",
    "SyncType",
    "SyncStatus",
    "ItemStatus",
    "Platform",
    "Tenant",
    "Store",
    "Integration",
    "StoreIntegration",
    "SyncConfig",
    "PullConfig",
    "PushConfig",
    "ActiveHours",
    "Movement",
    "SyncLock",
    "StoreProduct",
    "UnmappedSku",
    "SyncLog",
    "SyncLogItem",
]
