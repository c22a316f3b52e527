"""Abstract Ledger Connector Interface.

The ledger is the ERP of record for true stock quantities. The sync engine
needs three operations from it: find a product by SKU, read its stock
(optionally in one warehouse) and post a stock movement. Everything here is
ledger-agnostic; the Contifico implementation lives in connectors/contifico/.

A conflict (HTTP 409, "already exists") when posting a movement means the
ledger already holds that movement. Implementations report it as success
with already_existed=True, never as an error.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from connectors.http_client import ApiClient, RateLimitInfo, RetryConfig
from core.models import MovementDirection


class Warehouse(BaseModel):
    id: str
    name: str
    code: Optional[str] = None


class MovementResult(BaseModel):
    """Outcome of posting a movement to the ledger."""
    movement_id: Optional[str] = Field(default=None, description="Ledger movement id")
    already_existed: bool = Field(default=False, description="Ledger answered 409 conflict")
    raw: Dict[str, Any] = Field(default_factory=dict)


class StockAvailability(BaseModel):
    sku: str
    product_id: Optional[str] = None
    requested: int
    available: int = 0

    @property
    def found(self) -> bool:
        return self.product_id is not None

    @property
    def sufficient(self) -> bool:
        return self.found and self.available >= self.requested


@dataclass
class LedgerConfig:
    """Configuration for a ledger connector."""
    ledger_type: str                        # "contifico"
    credentials: Dict[str, Any] = field(default_factory=dict)
    settings: Dict[str, Any] = field(default_factory=dict)
    integration_id: Optional[str] = None
    base_url: Optional[str] = None
    timeout_seconds: float = 30
    retry_config: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_integration(cls, integration, timeout_seconds: float = 30) -> "LedgerConfig":
        """Build from a core.models.Integration record."""
        return cls(
            ledger_type=integration.integration_type,
            credentials=dict(integration.credentials),
            settings=dict(integration.settings),
            integration_id=integration.id,
            base_url=integration.settings.get("base_url"),
            timeout_seconds=timeout_seconds,
        )


class LedgerConnector(ABC):
    """Abstract base class for ledger connectors."""

    ledger_type: str = ""

    def __init__(self, config: LedgerConfig):
        self.config = config
        self.client: Optional[ApiClient] = None

    async def connect(self) -> None:
        if self.client is not None:
            await self.client.connect()

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()

    async def __aenter__(self) -> "LedgerConnector":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @abstractmethod
    async def test_connection(self) -> bool:
        pass

    @abstractmethod
    async def get_warehouses(self) -> List[Warehouse]:
        pass

    @abstractmethod
    async def find_product_id_by_sku(self, sku: str) -> Optional[str]:
        """Ledger product id for a SKU, or None when the ledger has no such product."""
        pass

    @abstractmethod
    async def get_stock(self, product_id: str, sku: str, warehouse_id: Optional[str] = None) -> int:
        """Stock for a product, scoped to a warehouse when given."""
        pass

    @abstractmethod
    async def post_movement(
        self,
        kind: MovementDirection,
        warehouse_id: str,
        sku: str,
        quantity: int,
        reference_id: str,
        note: str = "",
        product_id: Optional[str] = None,
    ) -> MovementResult:
        """Post a debit (stock out) or credit (stock in) movement.

        Raises:
            ConnectorError: Any failure other than a 409 conflict
        """
        pass

    async def check_stock_availability(
        self,
        sku: str,
        quantity: int,
        warehouse_id: Optional[str] = None,
    ) -> StockAvailability:
        product_id = await self.find_product_id_by_sku(sku)
        if product_id is None:
            return StockAvailability(sku=sku, requested=quantity)
        available = await self.get_stock(product_id, sku, warehouse_id)
        return StockAvailability(sku=sku, product_id=product_id, requested=quantity, available=available)

    @property
    def rate_limit_info(self) -> Optional[RateLimitInfo]:
        return self.client.rate_limit_info if self.client else None


# =============================================================================
# Ledger Registry
# =============================================================================

_ledger_registry: Dict[str, type] = {}


def register_ledger(ledger_type: str):
    """Decorator to register a ledger connector implementation."""
    def decorator(cls):
        cls.ledger_type = ledger_type
        _ledger_registry[ledger_type] = cls
        return cls
    return decorator


def create_ledger(config: LedgerConfig) -> LedgerConnector:
    """Create a ledger connector from configuration.

    Raises:
        ValueError: If the ledger type is not registered
    """
    ledger_type = config.ledger_type.lower()
    if ledger_type not in _ledger_registry:
        raise ValueError(
            f"Unknown ledger type: {ledger_type}. Available: {list(_ledger_registry.keys())}"
        )
    return _ledger_registry[ledger_type](config)


def list_available_ledgers() -> List[str]:
    return list(_ledger_registry.keys())
