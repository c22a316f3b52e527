"""Contifico Ledger Connector.

Implements the LedgerConnector interface for the Contifico ERP API.
"""

from datetime import datetime
from typing import List, Optional

from connectors.contifico.contifico_models import (
    ContificoMovement,
    ContificoMovementLine,
    ContificoProduct,
    ContificoStockEntry,
    ContificoWarehouse,
)
from connectors.http_client import (
    ApiClient,
    ConnectorConflictError,
    ConnectorError,
    ConnectorNotFoundError,
    parse_ledger_rate_limit,
)
from connectors.ledger_base import (
    LedgerConfig,
    LedgerConnector,
    MovementResult,
    Warehouse,
    register_ledger,
)
from core.models import MovementDirection
from core.observability import get_logger

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.contifico.com"
API_PREFIX = "sistema/api/v1"

_MOVEMENT_TYPES = {
    MovementDirection.DEBIT: "egreso",
    MovementDirection.CREDIT: "ingreso",
}


@register_ledger("contifico")
class ContificoLedger(LedgerConnector):
    """Contifico connector implementation.

    Credentials (either form):
    - api_key: single API key
    - api_keys: {"test": "...", "prod": "..."} selected by settings.environment

    Settings:
    - environment: "test" or "prod" (default "prod")
    - warehouse_primary: default bodega id
    - base_url: override the API host
    """

    def __init__(self, config: LedgerConfig):
        super().__init__(config)
        self.environment = config.settings.get("environment") or config.credentials.get("env") or "prod"
        api_key = self._select_api_key()
        if not api_key:
            raise ValueError(f"Contifico integration has no API key for environment '{self.environment}'")

        self.client = ApiClient(
            f"{(config.base_url or DEFAULT_BASE_URL).rstrip('/')}/{API_PREFIX}",
            headers={"Authorization": api_key},
            timeout_seconds=config.timeout_seconds,
            retry_config=config.retry_config,
            rate_limit_parser=parse_ledger_rate_limit,
            name="contifico",
        )

    def _select_api_key(self) -> Optional[str]:
        keys = self.config.credentials.get("api_keys") or {}
        return keys.get(self.environment) or self.config.credentials.get("api_key")

    async def test_connection(self) -> bool:
        try:
            await self.get_warehouses()
        except ConnectorError as e:
            logger.warning(f"Contifico connection test failed ({self.environment}): {e}")
            return False
        return True

    async def get_warehouses(self) -> List[Warehouse]:
        response = await self.client.get("bodega/")
        if not isinstance(response.data, list):
            raise ConnectorError("Invalid warehouse list from Contifico", "INVALID_RESPONSE", response.status, response.data)
        return [
            Warehouse(id=w.id, name=w.nombre, code=w.codigo)
            for w in (ContificoWarehouse.model_validate(raw) for raw in response.data)
        ]

    async def _find_product(self, sku: str) -> Optional[ContificoProduct]:
        try:
            response = await self.client.get("producto/", params={"codigo": sku})
        except ConnectorNotFoundError:
            return None
        if not isinstance(response.data, list) or not response.data:
            return None
        products = [ContificoProduct.model_validate(raw) for raw in response.data]
        # The codigo filter is a prefix/contains match; prefer the exact code
        for product in products:
            if product.codigo == sku:
                return product
        logger.warning(
            f"No exact Contifico code for {sku}, using closest match {products[0].codigo}",
            extra_fields={"sku": sku, "ledger_code": products[0].codigo, "candidates": len(products)},
        )
        return products[0]

    async def find_product_id_by_sku(self, sku: str) -> Optional[str]:
        product = await self._find_product(sku)
        return product.id if product else None

    async def get_stock(self, product_id: str, sku: str, warehouse_id: Optional[str] = None) -> int:
        if not warehouse_id:
            product = await self._find_product(sku)
            return product.cantidad_stock if product else 0

        response = await self.client.get(f"producto/{product_id}/stock/")
        if not isinstance(response.data, list):
            raise ConnectorError(
                f"Invalid stock response for product {product_id}",
                "INVALID_RESPONSE",
                response.status,
                response.data,
            )
        for raw in response.data:
            entry = ContificoStockEntry.model_validate(raw)
            if entry.bodega_id == warehouse_id:
                return entry.cantidad
        return 0

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
        kind = MovementDirection(kind)
        if product_id is None:
            product_id = await self.find_product_id_by_sku(sku)
            if product_id is None:
                raise ConnectorNotFoundError(f"Product with SKU {sku} not found in Contifico", "PRODUCT_NOT_FOUND", 404)

        movement = ContificoMovement(
            tipo=_MOVEMENT_TYPES[kind],
            bodega_id=warehouse_id,
            fecha=datetime.utcnow().isoformat(),
            referencia=str(reference_id),
            observaciones=note,
            detalles=[ContificoMovementLine(producto_id=product_id, cantidad=quantity, descripcion=sku)],
        )

        try:
            response = await self.client.post("movimiento/", json_body=movement.model_dump())
        except ConnectorConflictError as e:
            logger.info(f"Contifico already holds movement {reference_id} for {sku}; treating as posted")
            return MovementResult(movement_id=None, already_existed=True, raw={"conflict": e.to_dict()})

        data = response.data if isinstance(response.data, dict) else {}
        movement_id = data.get("id")
        logger.info(f"Posted Contifico {movement.tipo} of {quantity} x {sku} (ref {reference_id})")
        return MovementResult(movement_id=str(movement_id) if movement_id else None, raw=data)
