"""Contifico API data models.

Field names follow the Contifico v1 API (Spanish): producto, bodega,
movimiento. These stay inside the connector; the engine sees only the
normalized ledger types.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.functional_validators import BeforeValidator
from typing_extensions import Annotated


def _parse_quantity(value):
    """Quantities come back as numbers or decimal strings ("12.00")."""
    if value is None or value == "":
        return 0
    return int(float(value))


Quantity = Annotated[int, BeforeValidator(_parse_quantity)]


class ContificoBaseModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ContificoProduct(ContificoBaseModel):
    """Maps to: /sistema/api/v1/producto/"""
    id: str
    codigo: str = ""
    nombre: str = ""
    cantidad_stock: Quantity = 0
    activo: bool = True
    precio_venta: Optional[float] = None


class ContificoWarehouse(ContificoBaseModel):
    """Maps to: /sistema/api/v1/bodega/"""
    id: str
    nombre: str = ""
    codigo: Optional[str] = None
    activo: bool = True


class ContificoStockEntry(ContificoBaseModel):
    """Maps to: /sistema/api/v1/producto/{id}/stock/"""
    bodega_id: str
    cantidad: Quantity = 0
    producto_id: Optional[str] = None


class ContificoMovementLine(ContificoBaseModel):
    producto_id: str
    cantidad: int
    descripcion: str = ""


class ContificoMovement(ContificoBaseModel):
    """Body for POST /sistema/api/v1/movimiento/"""
    tipo: str = Field(..., description="egreso (stock out) or ingreso (stock in)")
    bodega_id: str
    fecha: str
    referencia: str
    observaciones: str = ""
    detalles: List[ContificoMovementLine] = Field(default_factory=list)
