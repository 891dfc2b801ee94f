"""Database model type definitions."""

from src.models.cart import Cart, CartCheckoutUpdate, CartItem
from src.models.order import Order, OrderLineItem, OrderStatus, OrderUpsert
from src.models.owner import GuestOwner, Owner, UserOwner
from src.models.product import Product, ProductUpdate

__all__ = [
    "Product",
    "ProductUpdate",
    "Cart",
    "CartItem",
    "CartCheckoutUpdate",
    "Order",
    "OrderLineItem",
    "OrderStatus",
    "OrderUpsert",
    "Owner",
    "UserOwner",
    "GuestOwner",
]
