"""Push pipeline errors.

MovementProcessingError subclasses are business-terminal: the movement is
marked failed at once and never retried. Anything else raised while
processing is treated as transient and retried with backoff.
"""

from typing import Optional


class MovementProcessingError(Exception):
    """Terminal failure of a movement.

    Attributes:
        category: Short machine-readable reason recorded in sync log items
        track_unmapped: Whether the SKU should be recorded in unmapped_skus
    """
    category = "processing_error"
    track_unmapped = False

    def __init__(self, message: str, sku: Optional[str] = None):
        super().__init__(message)
        self.sku = sku


class StoreNotFoundError(MovementProcessingError):
    category = "store_not_found"


class IntegrationNotFoundError(MovementProcessingError):
    category = "integration_not_found"


class WarehouseNotConfiguredError(MovementProcessingError):
    category = "warehouse_not_configured"


class LedgerProductNotFoundError(MovementProcessingError):
    category = "not_found_ledger"
    track_unmapped = True

    def __init__(self, sku: str):
        super().__init__(f"Product with SKU {sku} not found in ledger", sku)


class InsufficientStockError(MovementProcessingError):
    category = "insufficient_stock"
    track_unmapped = True

    def __init__(self, sku: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for SKU {sku}: requested {requested}, available {available}",
            sku,
        )
        self.requested = requested
        self.available = available
