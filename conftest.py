"""Shared fixtures: a temporary database, seeded tenancy and in-memory connectors."""

import os
import tempfile
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List, Optional, Set

import pytest

from connectors.http_client import ConnectorError
from connectors.ledger_base import LedgerConfig, LedgerConnector, MovementResult, Warehouse
from connectors.storefront_base import (
    ConnectionResult,
    ProductsPage,
    SkuProduct,
    StandardProduct,
    StoreConfig,
    StorefrontConnector,
)
from core.config import Settings
from core.models import MovementDirection
from core.observability import MetricsCollector


# =============================================================================
# Fakes
# =============================================================================

class FakeStorefront(StorefrontConnector):
    """Storefront holding stock in a dict, one product per SKU."""

    def __init__(self, stock: Optional[Dict[str, int]] = None, page_size: int = 2):
        super().__init__(StoreConfig(platform="fake", store_url="https://fake.test"))
        self.stock: Dict[str, int] = dict(stock or {})
        self.page_size = page_size
        self.updates: List[tuple] = []
        self.fail_updates: Set[str] = set()

    def _product(self, sku: str) -> StandardProduct:
        return StandardProduct(id=f"p-{sku}", name=f"Product {sku}", sku=sku, stock_quantity=self.stock[sku])

    async def test_connection(self) -> ConnectionResult:
        return ConnectionResult(success=True, shop_name="fake")

    async def get_products(self, page: int = 1, page_size: Optional[int] = None, cursor: Optional[str] = None):
        size = page_size or self.page_size
        skus = sorted(self.stock)
        chunk = skus[(page - 1) * size:page * size]
        return ProductsPage(
            products=[self._product(sku) for sku in chunk],
            total=len(skus),
            has_more=page * size < len(skus),
        )

    async def get_product(self, product_id: str):
        sku = product_id[2:]
        return self._product(sku) if sku in self.stock else None

    async def get_product_by_sku(self, sku: str):
        if sku not in self.stock:
            return None
        return SkuProduct(sku=sku, product_id=f"p-{sku}", name=f"Product {sku}", stock_quantity=self.stock[sku])

    async def update_stock(self, product: SkuProduct, quantity: int) -> None:
        if product.sku in self.fail_updates:
            raise ConnectorError("Stock update rejected", "HTTP_422", 422)
        self.updates.append((product.sku, quantity))
        self.stock[product.sku] = quantity


class FakeLedger(LedgerConnector):
    """Ledger with per-SKU stock; posting a movement adjusts it."""

    def __init__(self, stock: Optional[Dict[str, int]] = None):
        super().__init__(LedgerConfig(ledger_type="fake"))
        self.stock: Dict[str, int] = dict(stock or {})
        self.posted: List[dict] = []
        self.post_error: Optional[Exception] = None
        self.conflict_skus: Set[str] = set()
        self.warehouse_error: Optional[Exception] = None
        self.stock_reads: List[tuple] = []

    async def test_connection(self) -> bool:
        return True

    async def get_warehouses(self):
        return [Warehouse(id="WH-1", name="Main")]

    async def find_product_id_by_sku(self, sku: str):
        return f"L-{sku}" if sku in self.stock else None

    async def get_stock(self, product_id: str, sku: str, warehouse_id: Optional[str] = None) -> int:
        self.stock_reads.append((sku, warehouse_id))
        if warehouse_id and self.warehouse_error is not None:
            raise self.warehouse_error
        return self.stock[sku]

    async def post_movement(self, kind, warehouse_id, sku, quantity, reference_id, note="", product_id=None):
        if self.post_error is not None:
            raise self.post_error
        if sku in self.conflict_skus:
            return MovementResult(already_existed=True)
        self.posted.append({
            "kind": MovementDirection(kind),
            "warehouse_id": warehouse_id,
            "sku": sku,
            "quantity": quantity,
            "reference_id": reference_id,
        })
        delta = -quantity if MovementDirection(kind) == MovementDirection.DEBIT else quantity
        self.stock[sku] = self.stock.get(sku, 0) + delta
        return MovementResult(movement_id=f"MOV-{len(self.posted)}")


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def temp_db(monkeypatch):
    """Initialized sqlite database in a temp file; default paths point at it."""
    from storage.db import init_db

    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    monkeypatch.setenv("SYNC_DB_PATH", db_path)
    monkeypatch.delenv("CREDENTIALS_KEY", raising=False)
    init_db(db_path)
    MetricsCollector.reset()

    yield db_path

    MetricsCollector.reset()
    try:
        os.unlink(db_path)
    except PermissionError:
        pass


@pytest.fixture
def settings(temp_db):
    return Settings(
        db_path=Path(temp_db),
        pull_batch_pause_seconds=0,
        pull_batch_size=2,
    )


@pytest.fixture
def seeded(temp_db):
    """Approved tenant, a Shopify store, a Contifico integration and their link."""
    from storage.stores import create_integration, create_store, create_tenant, link_store_integration

    tenant = create_tenant("Acme", db_path=temp_db)
    store = create_store(
        tenant.id,
        "Acme Shop",
        "shopify",
        "acme.myshopify.com",
        {"access_token": "shpat_test", "api_secret": "shopify-secret"},
        db_path=temp_db,
    )
    integration = create_integration(
        tenant.id,
        "Acme Contifico",
        {"api_key": "key"},
        settings={"warehouse_primary": "WH-1"},
        db_path=temp_db,
    )
    link = link_store_integration(
        store.id,
        integration.id,
        sync_config={"pull": {"enabled": True, "interval": "hourly"}},
        db_path=temp_db,
    )
    return SimpleNamespace(tenant=tenant, store=store, integration=integration, link=link, db_path=temp_db)


@pytest.fixture
def storefront():
    return FakeStorefront({"ABC": 10})


@pytest.fixture
def ledger():
    return FakeLedger({"ABC": 10})


@pytest.fixture
def pull_engine(settings, storefront, ledger):
    from reconciliation.engine import PullEngine

    return PullEngine(
        db_path=settings.db_path,
        settings=settings,
        connector_factory=lambda store, timeout=30: storefront,
        ledger_factory=lambda integration, timeout=30: ledger,
    )


@pytest.fixture
def push_service(settings, pull_engine):
    from push.service import PushService

    return PushService(
        db_path=settings.db_path,
        settings=settings,
        lock_manager=pull_engine.locks,
        connector_factory=pull_engine.connector_factory,
        ledger_factory=pull_engine.ledger_factory,
        pull_engine=pull_engine,
    )
