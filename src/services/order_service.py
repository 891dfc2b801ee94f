"""Order store: idempotent upsert by checkout session and order queries."""

import logging
from typing import Any
from uuid import UUID

from postgrest.exceptions import APIError as PostgrestAPIError
from supabase import Client

from src.core.supabase import get_supabase_client
from src.models.order import Order, OrderUpsert

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


class OrderService:
    """Service for order persistence and lookup."""

    def __init__(self, supabase_client: Client | None = None):
        """Initialize order service.

        Args:
            supabase_client: Optional Supabase client for testing.
        """
        self._supabase_client = supabase_client

    @property
    def supabase(self) -> Client:
        """Get Supabase client."""
        if self._supabase_client is None:
            self._supabase_client = get_supabase_client()
        return self._supabase_client

    async def get_order_by_checkout_id(self, checkout_session_id: str) -> Order | None:
        """Get an order by its checkout session ID.

        Args:
            checkout_session_id: Stripe Checkout Session ID.

        Returns:
            Order | None: The order or None if not found.
        """
        response = (
            self.supabase.table("orders")
            .select("*")
            .eq("checkout_session_id", checkout_session_id)
            .maybe_single()
            .execute()
        )
        return response.data if response and response.data else None

    async def upsert_order(self, data: OrderUpsert) -> tuple[Order, str | None]:
        """Insert the order for a checkout session, or patch the existing one.

        The unique checkout session ID is the only idempotency guard, so
        running this twice with the same input leaves exactly one row.

        Args:
            data: Order fields; must include ``checkout_session_id``.

        Returns:
            tuple: (order, previous status). Previous status is None when
            the row was inserted.
        """
        checkout_session_id = data["checkout_session_id"]
        existing = await self.get_order_by_checkout_id(checkout_session_id)

        if existing is None:
            try:
                response = self.supabase.table("orders").insert(dict(data)).execute()
                order = response.data[0]
                logger.info("Created order %s for checkout %s", order["id"], checkout_session_id)
                return order, None
            except PostgrestAPIError as e:
                if getattr(e, "code", None) != UNIQUE_VIOLATION:
                    raise
                existing = await self.get_order_by_checkout_id(checkout_session_id)
                if existing is None:
                    raise

        previous_status = existing["status"]
        patch: dict[str, Any] = {key: value for key, value in data.items() if key != "checkout_session_id"}

        # A completed payment is final; late or reordered notifications do not undo it
        if previous_status == "succeeded" and patch.get("status") != "succeeded":
            patch.pop("status", None)
            patch.pop("completed_at", None)
        if existing.get("completed_at") and patch.get("completed_at"):
            patch.pop("completed_at")
        # Keep a user link made since the order was first recorded
        if existing.get("user_id") and not patch.get("user_id"):
            patch.pop("user_id", None)

        response = (
            self.supabase.table("orders")
            .update(patch)
            .eq("checkout_session_id", checkout_session_id)
            .execute()
        )
        order = response.data[0] if response.data else {**existing, **patch}
        logger.info(
            "Updated order %s for checkout %s (%s -> %s)",
            order["id"],
            checkout_session_id,
            previous_status,
            order["status"],
        )
        return order, previous_status

    async def list_orders_for_user(self, user_id: UUID | str, email: str | None = None) -> list[Order]:
        """List a user's orders plus unlinked guest orders placed with their email.

        Args:
            user_id: Signed-in user ID.
            email: User's email; guest orders with this email are included.

        Returns:
            list[Order]: Orders, newest first.
        """
        response = (
            self.supabase.table("orders")
            .select("*")
            .eq("user_id", str(user_id))
            .order("created_at", desc=True)
            .execute()
        )
        orders: dict[str, Order] = {order["id"]: order for order in response.data or []}

        if email:
            guest_response = (
                self.supabase.table("orders")
                .select("*")
                .eq("email", email.lower())
                .is_("user_id", "null")
                .order("created_at", desc=True)
                .execute()
            )
            for order in guest_response.data or []:
                orders.setdefault(order["id"], order)

        return sorted(orders.values(), key=lambda order: str(order["created_at"]), reverse=True)

    async def link_guest_orders(self, user_id: UUID | str, email: str) -> int:
        """Attach unlinked guest orders placed with ``email`` to a user.

        Returns:
            int: Number of orders linked.
        """
        response = (
            self.supabase.table("orders")
            .update({"user_id": str(user_id)})
            .eq("email", email.lower())
            .is_("user_id", "null")
            .execute()
        )
        linked = len(response.data) if response.data else 0
        if linked:
            logger.info("Linked %d guest orders to user %s", linked, user_id)
        return linked

    @staticmethod
    def can_access_order(order: Order, user_id: UUID | str | None, email: str | None) -> bool:
        """Check if a caller can view an order.

        Owners always can. Unlinked guest orders are visible to a caller
        whose email matches the order's.
        """
        if user_id and order.get("user_id") == str(user_id):
            return True
        if order.get("user_id") is None and email and order.get("email"):
            return order["email"].lower() == email.lower()
        return False
