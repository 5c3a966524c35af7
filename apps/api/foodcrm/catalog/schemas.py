from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None


class CategoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    is_active: bool
    created_at: datetime
    product_count: int = 0


class ProductCreate(BaseModel):
    sku: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    category_id: UUID | None = None
    unit_price: Decimal = Field(ge=0)
    unit: str | None = Field(default=None, max_length=32)
    brand: str | None = None
    supplier: str | None = None

    @field_validator("sku")
    @classmethod
    def _normalize_sku(cls, value: str) -> str:
        normalized = value.strip().upper()
        if not normalized:
            raise ValueError("sku must not be blank")
        return normalized


class ProductUpdate(BaseModel):
    sku: str | None = Field(default=None, min_length=1, max_length=128)
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    category_id: UUID | None = None
    unit_price: Decimal | None = Field(default=None, ge=0)
    unit: str | None = Field(default=None, max_length=32)
    brand: str | None = None
    supplier: str | None = None
    is_active: bool | None = None
    row_version: int | None = None

    @field_validator("sku")
    @classmethod
    def _normalize_sku(cls, value: str | None) -> str | None:
        return value.strip().upper() if value is not None else None


class ProductBulkUpdateRequest(BaseModel):
    product_ids: list[UUID] = Field(min_length=1)
    category_id: UUID | None = None
    supplier: str | None = None
    is_active: bool | None = None


class PricingTierInput(BaseModel):
    min_quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)
    customer_segment: str | None = None


class PricingTierRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    min_quantity: int
    unit_price: Decimal
    customer_segment: str | None


class PricingUpdateRequest(BaseModel):
    tiers: list[PricingTierInput]


class InventoryUpdate(BaseModel):
    quantity_on_hand: int | None = Field(default=None, ge=0)
    quantity_reserved: int | None = Field(default=None, ge=0)
    reorder_level: int | None = Field(default=None, ge=0)
    warehouse: str | None = None


class InventoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: UUID
    quantity_on_hand: int
    quantity_reserved: int
    quantity_available: int
    reorder_level: int
    needs_reorder: bool
    warehouse: str | None
    updated_at: datetime


class ProductRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sku: str
    name: str
    description: str | None
    category_id: UUID | None
    unit_price: Decimal
    unit: str | None
    brand: str | None
    supplier: str | None
    is_active: bool
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class ProductDetailRead(ProductRead):
    category: CategoryRead | None = None
    pricing_tiers: list[PricingTierRead] = Field(default_factory=list)
    inventory: InventoryRead | None = None


class ProductAnalytics(BaseModel):
    total_products: int
    active_products: int
    inactive_products: int
    by_category: dict[str, int]
    average_price: Decimal
    low_stock_products: int
