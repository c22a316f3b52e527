"""Shopify Admin REST data models.

These map to the Shopify API schema and are separate from the normalized
models in connectors/storefront_base.py.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from connectors.storefront_base import SkuProduct, StandardProduct


class ShopifyBaseModel(BaseModel):
    """Base model for Shopify API entities."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ShopifyVariant(ShopifyBaseModel):
    """Maps to: /products/{id}.json -> product.variants[]"""
    id: int
    product_id: Optional[int] = None
    title: Optional[str] = None
    sku: Optional[str] = None
    inventory_item_id: Optional[int] = None
    inventory_quantity: Optional[int] = None
    inventory_management: Optional[str] = None


class ShopifyProduct(ShopifyBaseModel):
    """Maps to: /products.json -> products[]"""
    id: int
    title: str = ""
    handle: Optional[str] = None
    status: Optional[str] = None
    product_type: Optional[str] = None
    vendor: Optional[str] = None
    variants: List[ShopifyVariant] = Field(default_factory=list)

    def variant_title(self, variant: ShopifyVariant) -> str:
        if variant.title and variant.title != "Default Title":
            return f"{self.title} - {variant.title}"
        return self.title

    def to_standard(self) -> StandardProduct:
        variants = [
            SkuProduct(
                sku=variant.sku.strip(),
                product_id=str(self.id),
                variant_id=str(variant.id),
                inventory_item_id=str(variant.inventory_item_id) if variant.inventory_item_id else None,
                name=self.variant_title(variant),
                stock_quantity=variant.inventory_quantity or 0,
            )
            for variant in self.variants
            if variant.sku and variant.sku.strip()
        ]
        main = self.variants[0] if self.variants else None
        return StandardProduct(
            id=str(self.id),
            name=self.title,
            sku=(main.sku or None) if main else None,
            stock_quantity=main.inventory_quantity if main else None,
            status=self.status,
            variants=variants,
            metadata={"handle": self.handle, "vendor": self.vendor, "product_type": self.product_type},
        )


class ShopifyShop(ShopifyBaseModel):
    """Maps to: /shop.json -> shop"""
    id: int
    name: str = ""
    domain: Optional[str] = None
    myshopify_domain: Optional[str] = None
    currency: Optional[str] = None
    primary_location_id: Optional[int] = None


class ShopifyInventoryLevel(ShopifyBaseModel):
    inventory_item_id: int
    location_id: int
    available: Optional[int] = None
