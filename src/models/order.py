"""Order model type definitions for database operations."""

from datetime import datetime
from typing import Any, Literal, TypedDict
from uuid import UUID


# Mirrors the checkout session status reported by the billing provider
OrderStatus = Literal["open", "confirmed", "succeeded", "failed", "expired"]


class OrderLineItem(TypedDict):
    """Denormalized snapshot of a purchased item.

    Stored in the ``items`` JSONB array, independent of the live catalog.
    """

    id: str
    name: str
    quantity: int
    price: int


class BillingAddress(TypedDict, total=False):
    """Billing address captured by the provider."""

    line1: str | None
    line2: str | None
    city: str | None
    state: str | None
    postal_code: str | None
    country: str | None


class Order(TypedDict):
    """Order table row representation.

    One row per ``checkout_session_id``; repeat completion notifications
    patch the existing row.
    """

    id: UUID
    checkout_session_id: str
    user_id: UUID | None
    email: str | None
    status: OrderStatus
    amount: int
    discount_amount: int
    tax_amount: int
    total_amount: int
    currency: str
    items: list[OrderLineItem]
    customer_name: str | None
    customer_ip_address: str | None
    is_business_customer: bool
    customer_tax_id: str | None
    billing_address: BillingAddress | None
    discount_id: str | None
    subscription_id: str | None
    trial_end: datetime | None
    metadata: dict[str, Any]
    created_at: datetime
    completed_at: datetime | None
    updated_at: datetime


class OrderUpsert(TypedDict, total=False):
    """Fields written when recording a checkout outcome."""

    checkout_session_id: str
    user_id: str | None
    email: str | None
    status: OrderStatus
    amount: int
    discount_amount: int
    tax_amount: int
    total_amount: int
    currency: str
    items: list[OrderLineItem]
    customer_name: str | None
    customer_ip_address: str | None
    is_business_customer: bool
    customer_tax_id: str | None
    billing_address: BillingAddress | None
    discount_id: str | None
    subscription_id: str | None
    trial_end: str | None
    metadata: dict[str, Any]
    completed_at: str | None
