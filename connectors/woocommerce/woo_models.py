"""WooCommerce REST API (wc/v3) data models."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.functional_validators import BeforeValidator
from typing_extensions import Annotated

from connectors.storefront_base import SkuProduct, StandardProduct


def _parse_stock(value):
    """WooCommerce returns null stock for unmanaged products."""
    if value is None or value == "":
        return None
    return int(float(value))


Stock = Annotated[Optional[int], BeforeValidator(_parse_stock)]


class WooBaseModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class WooVariation(WooBaseModel):
    """Maps to: /products/{id}/variations"""
    id: int
    sku: Optional[str] = None
    stock_quantity: Stock = None
    manage_stock: Optional[bool] = None
    stock_status: Optional[str] = None
    attributes: List[dict] = Field(default_factory=list)

    def label(self) -> str:
        options = [str(a.get("option")) for a in self.attributes if a.get("option")]
        return ", ".join(options)


class WooProduct(WooBaseModel):
    """Maps to: /products"""
    id: int
    name: str = ""
    type: str = "simple"
    status: Optional[str] = None
    sku: Optional[str] = None
    stock_quantity: Stock = None
    manage_stock: Optional[bool] = None
    stock_status: Optional[str] = None

    @property
    def is_variable(self) -> bool:
        return self.type == "variable"

    def to_standard(self, variations: Optional[List[WooVariation]] = None) -> StandardProduct:
        variants = []
        for variation in variations or []:
            if not variation.sku or not variation.sku.strip():
                continue
            label = variation.label()
            variants.append(SkuProduct(
                sku=variation.sku.strip(),
                product_id=str(self.id),
                variant_id=str(variation.id),
                name=f"{self.name} - {label}" if label else self.name,
                stock_quantity=variation.stock_quantity or 0,
            ))
        return StandardProduct(
            id=str(self.id),
            name=self.name,
            sku=self.sku.strip() if self.sku and self.sku.strip() else None,
            stock_quantity=self.stock_quantity,
            status=self.status,
            variants=variants,
            metadata={"type": self.type, "manage_stock": self.manage_stock, "stock_status": self.stock_status},
        )
