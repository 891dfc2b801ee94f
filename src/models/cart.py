"""Cart model type definitions for database operations."""

from datetime import datetime
from typing import TypedDict
from uuid import UUID


class Cart(TypedDict):
    """Cart table row representation.

    Exactly one of ``user_id`` / ``session_id`` is set. Guest carts carry
    ``expires_at``; user carts do not.
    """

    id: UUID
    user_id: UUID | None
    session_id: str | None
    expires_at: datetime | None
    checkout_session_id: str | None
    checkout_url: str | None
    discount_id: str | None
    created_at: datetime
    updated_at: datetime


class CartItem(TypedDict):
    """Cart item table row representation.

    ``price`` is the product price in cents captured when the item was
    first added. It is never repriced automatically.
    """

    id: UUID
    cart_id: UUID
    product_id: UUID
    quantity: int
    price: int
    created_at: datetime
    updated_at: datetime


class CartCheckoutUpdate(TypedDict, total=False):
    """Checkout handle recorded on a cart after session creation."""

    checkout_session_id: str
    checkout_url: str
    discount_id: str | None
    updated_at: str
