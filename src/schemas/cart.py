"""Cart Pydantic schemas for API request/response models."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class AddCartItemRequest(BaseModel):
    """Schema for adding a product to the cart."""

    model_config = ConfigDict(from_attributes=True)

    product_id: UUID = Field(description="Product to add")
    quantity: int = Field(default=1, ge=1, description="Units to add")


class UpdateCartItemRequest(BaseModel):
    """Schema for setting a line item's quantity. Zero or less removes it."""

    model_config = ConfigDict(from_attributes=True)

    quantity: int = Field(description="New quantity")


class MergeCartRequest(BaseModel):
    """Schema for merging a guest cart into the signed-in user's cart."""

    model_config = ConfigDict(from_attributes=True)

    session_id: str = Field(min_length=1, max_length=255, description="Guest session ID")


class CartItemResponse(BaseModel):
    """A cart line item joined with live product data."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(description="Cart item identifier")
    product_id: UUID = Field(description="Product identifier")
    name: str | None = Field(default=None, description="Product name, if the product still exists")
    image_url: str | None = Field(default=None, description="Product image URL")
    quantity: int = Field(ge=1, description="Units in cart")
    price: int = Field(description="Price in cents captured when added")
    current_price: int | None = Field(default=None, description="Live product price in cents")
    active: bool = Field(default=False, description="Whether the product is still sellable")
    in_stock: bool = Field(default=False, description="Whether the product has inventory")
    line_total: int = Field(description="price x quantity in cents")


class CartResponse(BaseModel):
    """Schema for cart API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID | None = Field(default=None, description="Cart identifier, absent before first add")
    items: list[CartItemResponse] = Field(default_factory=list, description="Line items")
    subtotal: int = Field(default=0, description="Sum of line totals in cents")
    item_count: int = Field(default=0, description="Total units")
    expires_at: datetime | None = Field(default=None, description="Guest cart expiry")
    checkout_url: str | None = Field(default=None, description="Last checkout session URL")
    updated_at: datetime | None = Field(default=None, description="Last modification")


class CartCountResponse(BaseModel):
    """Schema for the header badge count."""

    model_config = ConfigDict(from_attributes=True)

    count: int = Field(description="Total units in cart")


class CartValidationResponse(BaseModel):
    """Result of validating a cart against the live catalog."""

    model_config = ConfigDict(from_attributes=True)

    valid: bool = Field(description="Whether the cart can proceed to checkout")
    errors: list[str] = Field(default_factory=list, description="Shopper-facing problems")
    valid_item_count: int = Field(description="Line items that passed validation")


class MergeCartResponse(BaseModel):
    """Schema for cart merge responses."""

    model_config = ConfigDict(from_attributes=True)

    merged: bool = Field(description="Whether a guest cart was found and merged")
    cart_id: UUID | None = Field(default=None, description="Resulting user cart")
