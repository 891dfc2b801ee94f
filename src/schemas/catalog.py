"""Catalog Pydantic schemas for API request/response models."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ProductResponse(BaseModel):
    """Schema for product API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(description="Product unique identifier")
    name: str = Field(description="Product name")
    description: str | None = Field(default=None, description="Product description")
    category: str | None = Field(default=None, description="Product category")
    price: int = Field(ge=0, description="Unit price in cents")
    active: bool = Field(description="Whether the product can be purchased")
    in_stock: bool = Field(description="Whether inventory is available")
    inventory_qty: int = Field(ge=0, description="Units available")
    image_url: str | None = Field(default=None, description="Product image URL")
    created_at: datetime | None = Field(default=None, description="Creation timestamp")


class ProductListResponse(BaseModel):
    """Schema for product list responses."""

    model_config = ConfigDict(from_attributes=True)

    items: list[ProductResponse] = Field(description="Active products")
    total: int = Field(description="Number of products returned")


class InventoryUpdate(BaseModel):
    """Admin request to set a product's inventory."""

    model_config = ConfigDict(from_attributes=True)

    inventory_qty: int = Field(ge=0, description="New inventory count")
