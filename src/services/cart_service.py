"""Cart service: per-owner carts, line items, merge and checkout validation."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, TypedDict
from uuid import UUID

from postgrest.exceptions import APIError as PostgrestAPIError
from supabase import Client

from src.api.middleware.error_handler import ConflictError, NotFoundError, ValidationError
from src.core.config import get_settings
from src.core.locks import KeyedLocks, get_owner_locks
from src.core.supabase import get_supabase_client
from src.models.cart import Cart, CartItem
from src.models.owner import GuestOwner, Owner, UserOwner
from src.services.catalog_service import CatalogService

logger = logging.getLogger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


class CartTotals(TypedDict):
    subtotal: int
    item_count: int


class CartValidation(TypedDict):
    valid: bool
    errors: list[str]
    valid_item_count: int


def calculate_totals(items: Iterable[dict[str, Any]]) -> CartTotals:
    """Sum price x quantity and quantity over line items.

    Args:
        items: Anything with integer ``price`` (cents) and ``quantity``.

    Returns:
        CartTotals: ``subtotal`` in cents and total ``item_count``.
    """
    subtotal = 0
    item_count = 0
    for item in items:
        subtotal += item["price"] * item["quantity"]
        item_count += item["quantity"]
    return {"subtotal": subtotal, "item_count": item_count}


def format_cents(amount: int) -> str:
    return f"${amount / 100:.2f}"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_unique_violation(error: PostgrestAPIError) -> bool:
    return getattr(error, "code", None) == UNIQUE_VIOLATION


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


class CartService:
    """Service for cart operations.

    Carts are keyed by owner (user xor guest session). Mutations for one
    owner are serialised with a keyed lock so lookup-then-insert cannot
    create two carts; the unique indexes on ``carts`` back this up across
    processes.
    """

    def __init__(
        self,
        supabase_client: Client | None = None,
        catalog_service: CatalogService | None = None,
        locks: KeyedLocks | None = None,
    ):
        """Initialize cart service.

        Args:
            supabase_client: Optional Supabase client for testing.
            catalog_service: Optional catalog service for testing.
            locks: Optional lock registry for testing.
        """
        self._supabase_client = supabase_client
        self._catalog_service = catalog_service
        self.locks = locks or get_owner_locks()
        self.settings = get_settings()

    @property
    def supabase(self) -> Client:
        """Get Supabase client."""
        if self._supabase_client is None:
            self._supabase_client = get_supabase_client()
        return self._supabase_client

    @property
    def catalog(self) -> CatalogService:
        """Get catalog service."""
        if self._catalog_service is None:
            self._catalog_service = CatalogService(self._supabase_client)
        return self._catalog_service

    # Cart lookup / creation

    async def find_cart(self, owner: Owner) -> Cart | None:
        """Find the owner's cart without creating one."""
        response = (
            self.supabase.table("carts")
            .select("*")
            .eq(owner.column, owner.value)
            .maybe_single()
            .execute()
        )
        return response.data if response and response.data else None

    async def get_cart_by_id(self, cart_id: UUID | str) -> Cart | None:
        response = (
            self.supabase.table("carts")
            .select("*")
            .eq("id", str(cart_id))
            .maybe_single()
            .execute()
        )
        return response.data if response and response.data else None

    async def get_or_create_cart(self, owner: Owner) -> Cart:
        """Return the owner's cart, creating it on first use.

        Guest carts expire after the configured TTL; user carts do not.
        """
        async with self.locks.hold(owner.key):
            return await self._get_or_create_cart(owner)

    async def _get_or_create_cart(self, owner: Owner) -> Cart:
        cart = await self.find_cart(owner)
        if cart:
            return cart

        now = datetime.now(timezone.utc)
        data: dict[str, Any] = {
            owner.column: owner.value,
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
        }
        if owner.is_guest:
            expires_at = now + timedelta(days=self.settings.guest_cart_ttl_days)
            data["expires_at"] = expires_at.isoformat()

        try:
            response = self.supabase.table("carts").insert(data).execute()
        except PostgrestAPIError as e:
            if not _is_unique_violation(e):
                raise
            # Another process created it between our lookup and insert
            logger.info("Cart for %s created concurrently, re-reading", owner.key)
            cart = await self.find_cart(owner)
            if cart is None:
                raise
            return cart

        cart = response.data[0]
        logger.info("Created cart %s for %s", cart["id"], owner.key)
        return cart

    async def _touch(self, cart_id: str) -> None:
        self.supabase.table("carts").update({"updated_at": _utcnow_iso()}).eq(
            "id", cart_id
        ).execute()

    # Line items

    async def get_items(self, cart_id: UUID | str) -> list[CartItem]:
        """Get a cart's line items, oldest first."""
        response = (
            self.supabase.table("cart_items")
            .select("*")
            .eq("cart_id", str(cart_id))
            .order("created_at")
            .execute()
        )
        return response.data or []

    async def _find_item(self, cart_id: str, product_id: str) -> CartItem | None:
        response = (
            self.supabase.table("cart_items")
            .select("*")
            .eq("cart_id", cart_id)
            .eq("product_id", product_id)
            .maybe_single()
            .execute()
        )
        return response.data if response and response.data else None

    async def add_item(
        self,
        owner: Owner,
        product_id: UUID | str,
        quantity: int = 1,
    ) -> CartItem:
        """Add a product to the owner's cart, merging with an existing line.

        The combined quantity already in the cart plus ``quantity`` may not
        exceed the product's current inventory.

        Args:
            owner: Cart owner.
            product_id: Product to add.
            quantity: Units to add (positive integer).

        Returns:
            CartItem: The created or updated line item.

        Raises:
            ValidationError: If quantity is not a positive integer.
            NotFoundError: If the product does not exist.
            ConflictError: If the product is inactive, out of stock or the
                combined quantity exceeds inventory.
        """
        if not _is_positive_int(quantity):
            raise ValidationError("Quantity must be a positive integer")

        product_id = str(product_id)
        product = await self.catalog.get_product(product_id)
        if not product:
            raise NotFoundError("Product not found")
        if not product.get("active", False):
            raise ConflictError("Product is no longer available", code="product_inactive")
        inventory_qty = product.get("inventory_qty", 0)
        if inventory_qty <= 0:
            raise ConflictError("Product is out of stock", code="out_of_stock")

        async with self.locks.hold(owner.key):
            cart = await self._get_or_create_cart(owner)
            cart_id = cart["id"]
            existing = await self._find_item(cart_id, product_id)

            combined = quantity + (existing["quantity"] if existing else 0)
            if combined > inventory_qty:
                raise ConflictError(
                    f"Only {inventory_qty} items available in stock",
                    code="insufficient_stock",
                )

            if existing:
                item = await self._set_item_quantity(existing["id"], combined)
            else:
                item = await self._insert_item(cart_id, product_id, quantity, product["price"])

            await self._touch(cart_id)

        logger.info(
            "Added %d x %s to cart %s (now %d)", quantity, product_id, cart_id, combined
        )
        return item

    async def _insert_item(
        self, cart_id: str, product_id: str, quantity: int, price: int
    ) -> CartItem:
        now = _utcnow_iso()
        response = (
            self.supabase.table("cart_items")
            .insert(
                {
                    "cart_id": cart_id,
                    "product_id": product_id,
                    "quantity": quantity,
                    "price": price,
                    "created_at": now,
                    "updated_at": now,
                }
            )
            .execute()
        )
        return response.data[0]

    async def _set_item_quantity(self, item_id: str, quantity: int) -> CartItem:
        response = (
            self.supabase.table("cart_items")
            .update({"quantity": quantity, "updated_at": _utcnow_iso()})
            .eq("id", item_id)
            .execute()
        )
        return response.data[0]

    async def update_item_quantity(
        self,
        owner: Owner,
        product_id: UUID | str,
        quantity: int,
    ) -> CartItem | None:
        """Set a line item's quantity; zero or less removes the line.

        Returns:
            CartItem | None: Updated item, or None if it was removed.

        Raises:
            NotFoundError: If a positive quantity targets a missing cart or line.
            ConflictError: If the new quantity exceeds inventory.
        """
        if quantity <= 0:
            await self.remove_item(owner, product_id)
            return None

        product_id = str(product_id)
        async with self.locks.hold(owner.key):
            cart = await self.find_cart(owner)
            if not cart:
                raise NotFoundError("Cart not found")
            existing = await self._find_item(cart["id"], product_id)
            if not existing:
                raise NotFoundError("Item not in cart")

            if quantity > existing["quantity"]:
                product = await self.catalog.get_product(product_id)
                available = product.get("inventory_qty", 0) if product else 0
                if quantity > available:
                    raise ConflictError(
                        f"Only {available} items available in stock",
                        code="insufficient_stock",
                    )

            item = await self._set_item_quantity(existing["id"], quantity)
            await self._touch(cart["id"])
        return item

    async def remove_item(self, owner: Owner, product_id: UUID | str) -> bool:
        """Remove a product from the owner's cart.

        Returns:
            bool: True if a line was removed. A missing cart or line is not an error.
        """
        async with self.locks.hold(owner.key):
            cart = await self.find_cart(owner)
            if not cart:
                return False
            response = (
                self.supabase.table("cart_items")
                .delete()
                .eq("cart_id", cart["id"])
                .eq("product_id", str(product_id))
                .execute()
            )
            removed = bool(response.data)
            if removed:
                await self._touch(cart["id"])
        return removed

    async def clear_items(self, owner: Owner) -> int:
        """Remove every line from the owner's cart. Returns lines removed."""
        async with self.locks.hold(owner.key):
            cart = await self.find_cart(owner)
            if not cart:
                return 0
            return await self.clear_cart_items(cart["id"])

    async def clear_cart_items(self, cart_id: UUID | str) -> int:
        """Remove every line from a cart by ID. Returns lines removed."""
        response = (
            self.supabase.table("cart_items")
            .delete()
            .eq("cart_id", str(cart_id))
            .execute()
        )
        removed = len(response.data) if response.data else 0
        await self._touch(str(cart_id))
        return removed

    # Views

    async def get_cart(self, owner: Owner) -> dict[str, Any]:
        """Get the owner's cart with items joined to live product data.

        Returns an empty view (no ``cart``) when the owner has no cart yet.
        Each item carries its snapshot ``price`` and the live ``current_price``.
        """
        cart = await self.find_cart(owner)
        if not cart:
            return {"cart": None, "items": [], "subtotal": 0, "item_count": 0}

        items = await self.get_items(cart["id"])
        products = await self.catalog.get_products([item["product_id"] for item in items])

        joined = []
        for item in items:
            product = products.get(item["product_id"])
            joined.append(
                {
                    **item,
                    "name": product["name"] if product else None,
                    "image_url": product.get("image_url") if product else None,
                    "current_price": product["price"] if product else None,
                    "active": bool(product and product.get("active")),
                    "in_stock": bool(product and product.get("in_stock")),
                    "line_total": item["price"] * item["quantity"],
                }
            )

        return {"cart": cart, "items": joined, **calculate_totals(items)}

    async def get_item_count(self, owner: Owner) -> int:
        cart = await self.find_cart(owner)
        if not cart:
            return 0
        return calculate_totals(await self.get_items(cart["id"]))["item_count"]

    # Merge

    async def merge_guest_into_user(self, session_id: str, user_id: UUID | str) -> Cart | None:
        """Fold a guest cart into the user's cart on sign-in.

        With no user cart yet, the guest cart simply changes owner. Otherwise
        quantities for products in both carts are summed and the rest of the
        guest lines are moved, then the guest cart is deleted. Merged
        quantities are not re-checked against inventory here;
        validate_for_checkout reports any excess.

        Args:
            session_id: Guest session ID.
            user_id: Signed-in user ID.

        Returns:
            Cart | None: The user's cart, or None if there was no guest cart.
        """
        guest = GuestOwner(session_id=session_id)
        user = UserOwner(user_id=str(user_id))

        # Fixed acquisition order so two merges cannot deadlock
        first, second = sorted([guest.key, user.key])
        async with self.locks.hold(first), self.locks.hold(second):
            guest_cart = await self.find_cart(guest)
            if not guest_cart:
                return None

            user_cart = await self.find_cart(user)
            if not user_cart:
                response = (
                    self.supabase.table("carts")
                    .update(
                        {
                            "user_id": user.user_id,
                            "session_id": None,
                            "expires_at": None,
                            "updated_at": _utcnow_iso(),
                        }
                    )
                    .eq("id", guest_cart["id"])
                    .execute()
                )
                logger.info("Transferred guest cart %s to user %s", guest_cart["id"], user.user_id)
                return response.data[0]

            guest_items = await self.get_items(guest_cart["id"])
            user_items = {item["product_id"]: item for item in await self.get_items(user_cart["id"])}

            for item in guest_items:
                existing = user_items.get(item["product_id"])
                if existing:
                    await self._set_item_quantity(
                        existing["id"], existing["quantity"] + item["quantity"]
                    )
                    self.supabase.table("cart_items").delete().eq("id", item["id"]).execute()
                else:
                    self.supabase.table("cart_items").update(
                        {"cart_id": user_cart["id"], "updated_at": _utcnow_iso()}
                    ).eq("id", item["id"]).execute()

            self.supabase.table("cart_items").delete().eq("cart_id", guest_cart["id"]).execute()
            self.supabase.table("carts").delete().eq("id", guest_cart["id"]).execute()

            if guest_items:
                await self._touch(user_cart["id"])
                logger.info(
                    "Merged %d guest items from cart %s into cart %s",
                    len(guest_items),
                    guest_cart["id"],
                    user_cart["id"],
                )

        return await self.get_cart_by_id(user_cart["id"])

    # Validation

    async def validate_for_checkout(self, cart_id: UUID | str | None) -> CartValidation:
        """Check a cart against the live catalog without changing anything.

        Reports missing products, inactive products, price drift since the
        item was added and quantities beyond current inventory.

        Returns:
            CartValidation: ``valid``, shopper-facing ``errors`` and the
            number of lines that passed every check.
        """
        items = await self.get_items(cart_id) if cart_id else []
        if not items:
            return {"valid": False, "errors": ["Cart is empty"], "valid_item_count": 0}

        products = await self.catalog.get_products([item["product_id"] for item in items])
        errors: list[str] = []
        valid_item_count = 0

        for item in items:
            product = products.get(item["product_id"])
            if not product:
                errors.append("One or more products no longer exist")
                continue

            item_errors = []
            if not product.get("active", False):
                item_errors.append(f"{product['name']} is no longer available")
            if item["price"] != product["price"]:
                item_errors.append(
                    f"Price for {product['name']} has changed from "
                    f"{format_cents(item['price'])} to {format_cents(product['price'])}"
                )
            if item["quantity"] > product.get("inventory_qty", 0):
                item_errors.append(
                    f"Only {product.get('inventory_qty', 0)} of {product['name']} available in stock"
                )

            if item_errors:
                errors.extend(item_errors)
            else:
                valid_item_count += 1

        return {"valid": not errors, "errors": errors, "valid_item_count": valid_item_count}

    # Checkout bookkeeping

    async def update_cart_checkout(
        self,
        cart_id: UUID | str,
        checkout_session_id: str,
        checkout_url: str | None,
        discount_id: str | None = None,
    ) -> None:
        """Record the latest checkout session handle on a cart."""
        self.supabase.table("carts").update(
            {
                "checkout_session_id": checkout_session_id,
                "checkout_url": checkout_url,
                "discount_id": discount_id,
                "updated_at": _utcnow_iso(),
            }
        ).eq("id", str(cart_id)).execute()

    # Maintenance

    async def cleanup_expired_carts(self, now: datetime | None = None) -> dict[str, int]:
        """Delete guest carts past their expiry, with their items.

        Returns:
            dict: ``deleted_carts`` and ``deleted_items`` counts.
        """
        now = now or datetime.now(timezone.utc)
        response = (
            self.supabase.table("carts")
            .select("id")
            .lt("expires_at", now.isoformat())
            .execute()
        )
        expired = response.data or []

        deleted_items = 0
        for cart in expired:
            items = self.supabase.table("cart_items").delete().eq("cart_id", cart["id"]).execute()
            deleted_items += len(items.data) if items.data else 0
            self.supabase.table("carts").delete().eq("id", cart["id"]).execute()

        logger.info("Deleted %d expired carts and %d items", len(expired), deleted_items)
        return {"deleted_carts": len(expired), "deleted_items": deleted_items}
