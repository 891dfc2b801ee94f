"""Order Pydantic schemas for API responses."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from src.schemas.checkout import CheckoutStatus


class OrderLineItemSchema(BaseModel):
    """Schema for a single line item in an order."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Product ID at time of purchase")
    name: str = Field(description="Product name")
    quantity: int = Field(ge=1, description="Quantity ordered")
    price: int = Field(ge=0, description="Unit price in cents")


class OrderResponse(BaseModel):
    """Schema for order API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(description="Order unique identifier")
    checkout_session_id: str = Field(description="Provider checkout session ID")
    user_id: UUID | None = Field(default=None, description="Owning user")
    email: str | None = Field(default=None, description="Customer email")
    status: CheckoutStatus = Field(description="Order status")
    amount: int = Field(description="Subtotal in cents")
    discount_amount: int = Field(default=0, description="Discount in cents")
    tax_amount: int = Field(default=0, description="Tax in cents")
    total_amount: int = Field(description="Total in cents")
    currency: str = Field(default="usd", description="Currency code")
    items: list[OrderLineItemSchema] = Field(default_factory=list, description="Purchased items")
    customer_name: str | None = Field(default=None, description="Customer name")
    is_business_customer: bool = Field(default=False, description="Purchased as a business")
    billing_address: dict[str, Any] | None = Field(default=None, description="Billing address")
    created_at: datetime = Field(description="Creation timestamp")
    completed_at: datetime | None = Field(default=None, description="Completion timestamp")


class OrderListResponse(BaseModel):
    """Schema for order list API responses."""

    model_config = ConfigDict(from_attributes=True)

    items: list[OrderResponse] = Field(description="Orders, newest first")


class LinkOrdersResponse(BaseModel):
    """Schema for guest order linking responses."""

    model_config = ConfigDict(from_attributes=True)

    linked: int = Field(description="Number of guest orders linked to the user")
