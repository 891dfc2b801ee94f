"""Product model type definitions for database operations."""

from datetime import datetime
from typing import TypedDict
from uuid import UUID


class Product(TypedDict):
    """Product table row representation.

    ``inventory_qty`` never goes below zero; ``in_stock`` is written
    explicitly alongside every inventory change rather than derived.
    ``stripe_product_id`` is set once the product has been synced to Stripe.
    """

    id: UUID
    name: str
    description: str | None
    category: str | None
    price: int
    active: bool
    in_stock: bool
    inventory_qty: int
    stripe_product_id: str | None
    image_url: str | None
    created_at: datetime
    updated_at: datetime


class ProductUpdate(TypedDict, total=False):
    """Fields admins may change on a product."""

    active: bool
    in_stock: bool
    inventory_qty: int
    price: int
    stripe_product_id: str | None
