"""Checkout completion: record the order, then run post-payment side effects.

The order upsert is the authoritative step and propagates failures so the
webhook caller can ask Stripe to retry. Everything after it (inventory,
cart, bundle cleanup, customer link) is a list of independent best-effort
actions, each logged and contained on failure.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from supabase import Client

from src.api.middleware.error_handler import ExternalProviderError, NotFoundError
from src.core.config import get_settings
from src.core.locks import KeyedLocks, get_owner_locks
from src.core.supabase import get_supabase_client
from src.models.order import OrderLineItem, OrderUpsert
from src.services.billing_client import BillingClient, map_session_status
from src.services.cart_service import CartService, calculate_totals
from src.services.catalog_service import CatalogService
from src.services.checkout_metadata import (
    BUNDLE_PRODUCT_KEY,
    CART_ID_KEY,
    CUSTOMER_IP_KEY,
    USER_ID_KEY,
    decode_flat_metadata_to_cart_items,
)
from src.services.order_service import OrderService

logger = logging.getLogger(__name__)


@dataclass
class CompletedCheckout:
    """Fields pulled out of a finished checkout session."""

    checkout_session_id: str
    status: str
    cart_id: str | None
    user_id: str | None
    customer_id: str | None
    bundle_product_id: str | None
    items: list[OrderLineItem]
    order: OrderUpsert


def _first_tax_id(customer_details: dict[str, Any]) -> str | None:
    tax_ids = customer_details.get("tax_ids") or []
    return tax_ids[0].get("value") if tax_ids else None


def _discount_id(session: dict[str, Any]) -> str | None:
    for discount in session.get("discounts") or []:
        ref = discount.get("coupon") or discount.get("promotion_code")
        if isinstance(ref, dict):
            ref = ref.get("id")
        if ref:
            return ref
    return None


def extract_checkout(session: dict[str, Any], status_override: str | None = None) -> CompletedCheckout:
    """Build the order record and cleanup references from a Stripe session.

    Amounts, customer and billing details are taken from the session as
    Stripe reports them, not recomputed locally.
    """
    metadata = session.get("metadata") or {}
    customer_details = session.get("customer_details") or {}
    total_details = session.get("total_details") or {}
    status = status_override or map_session_status(session.get("status"), session.get("payment_status"))

    items = decode_flat_metadata_to_cart_items(metadata)
    amount = session.get("amount_subtotal")
    if amount is None:
        amount = calculate_totals(items)["subtotal"]
    total_amount = amount if session.get("amount_total") is None else session["amount_total"]

    subscription = session.get("subscription")
    subscription_id = subscription.get("id") if isinstance(subscription, dict) else subscription
    trial_end = subscription.get("trial_end") if isinstance(subscription, dict) else None

    email = customer_details.get("email") or session.get("customer_email")
    tax_id = _first_tax_id(customer_details) or metadata.get("customer_tax_id")
    user_id = metadata.get(USER_ID_KEY)

    order: OrderUpsert = {
        "checkout_session_id": session["id"],
        "user_id": user_id,
        "email": email.lower() if email else None,
        "status": status,
        "amount": amount,
        "discount_amount": total_details.get("amount_discount") or 0,
        "tax_amount": total_details.get("amount_tax") or 0,
        "total_amount": total_amount,
        "currency": session.get("currency") or get_settings().checkout_currency,
        "items": items,
        "customer_name": customer_details.get("name") or metadata.get("customer_billing_name"),
        "customer_ip_address": metadata.get(CUSTOMER_IP_KEY),
        "is_business_customer": metadata.get("is_business_customer") == "true" or bool(tax_id),
        "customer_tax_id": tax_id,
        "billing_address": customer_details.get("address"),
        "discount_id": _discount_id(session),
        "subscription_id": subscription_id,
        "trial_end": (
            datetime.fromtimestamp(trial_end, tz=timezone.utc).isoformat() if trial_end else None
        ),
        "metadata": dict(metadata),
    }
    if status == "succeeded":
        order["completed_at"] = datetime.now(timezone.utc).isoformat()

    customer = session.get("customer")
    return CompletedCheckout(
        checkout_session_id=session["id"],
        status=status,
        cart_id=metadata.get(CART_ID_KEY) or session.get("client_reference_id"),
        user_id=user_id,
        customer_id=customer.get("id") if isinstance(customer, dict) else customer,
        bundle_product_id=metadata.get(BUNDLE_PRODUCT_KEY),
        items=items,
        order=order,
    )


class CompletionService:
    """Turns finalized checkout sessions into orders and inventory changes."""

    def __init__(
        self,
        supabase_client: Client | None = None,
        billing_client: BillingClient | None = None,
        order_service: OrderService | None = None,
        catalog_service: CatalogService | None = None,
        cart_service: CartService | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.client = supabase_client or get_supabase_client()
        self.billing = billing_client or BillingClient()
        self.orders = order_service or OrderService(self.client)
        self.catalog = catalog_service or CatalogService(self.client)
        self.carts = cart_service or CartService(self.client, self.catalog)
        self.locks = locks or get_owner_locks()

    async def handle_checkout_session(
        self,
        checkout_session_id: str,
        status_override: str | None = None,
        fallback_session: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Record the outcome of a checkout session. Safe to call repeatedly.

        Args:
            checkout_session_id: Stripe Checkout Session ID.
            status_override: Status implied by the notification (e.g.
                ``failed`` for an async payment failure).
            fallback_session: Session payload already delivered with a
                webhook, used when Stripe cannot be reached to re-fetch it.

        Returns:
            dict: ``success``, ``status`` and ``order_id``.

        Raises:
            NotFoundError: If Stripe has no such session.
            ExternalProviderError: If Stripe is unreachable and no fallback
                payload was supplied.
        """
        try:
            session = self.billing.get_checkout_session(checkout_session_id)
        except ExternalProviderError as e:
            if fallback_session is None:
                raise
            logger.warning(
                "Could not re-fetch checkout %s (%s), using webhook payload",
                checkout_session_id,
                e.reason,
            )
            session = fallback_session

        if not session:
            raise NotFoundError("Checkout session not found")

        return await self.complete(session, status_override)

    async def complete(self, session: dict[str, Any], status_override: str | None = None) -> dict[str, Any]:
        """Upsert the order for a fetched session and run side effects once."""
        checkout = extract_checkout(session, status_override)

        async with self.locks.hold(f"checkout:{checkout.checkout_session_id}"):
            order, previous_status = await self.orders.upsert_order(checkout.order)

            newly_succeeded = checkout.status == "succeeded" and previous_status != "succeeded"
            if newly_succeeded and checkout.cart_id:
                await self._run_post_payment_steps(checkout)
            elif checkout.status == "succeeded":
                logger.info(
                    "Checkout %s already fulfilled, skipping side effects",
                    checkout.checkout_session_id,
                )

        return {"success": True, "status": order["status"], "order_id": str(order["id"])}

    async def _run_post_payment_steps(self, checkout: CompletedCheckout) -> None:
        steps: list[tuple[str, Callable[[], Awaitable[None]]]] = [
            (f"decrement {item['id']}", self._decrement_step(item)) for item in checkout.items
        ]
        steps.append(("clear cart", lambda: self._clear_cart(checkout.cart_id)))
        if checkout.bundle_product_id:
            steps.append(("archive bundle", lambda: self._archive_bundle(checkout.bundle_product_id)))
        if checkout.user_id and checkout.customer_id:
            steps.append(("link customer", lambda: self._link_customer(checkout)))

        for name, step in steps:
            try:
                await step()
            except Exception as e:
                logger.error(
                    "Checkout %s: %s failed: %s",
                    checkout.checkout_session_id,
                    name,
                    e,
                    exc_info=True,
                )

    def _decrement_step(self, item: OrderLineItem) -> Callable[[], Awaitable[None]]:
        async def step() -> None:
            remaining = await self.catalog.decrement_inventory(item["id"], item["quantity"])
            logger.info("Decremented %s by %d (remaining %d)", item["name"], item["quantity"], remaining)

        return step

    async def _clear_cart(self, cart_id: str | None) -> None:
        removed = await self.carts.clear_cart_items(cart_id)
        logger.info("Cleared %d items from cart %s", removed, cart_id)

    async def _archive_bundle(self, bundle_product_id: str) -> None:
        self.billing.archive_product(bundle_product_id)

    async def _link_customer(self, checkout: CompletedCheckout) -> None:
        self.billing.update_customer(checkout.customer_id, metadata={"user_id": checkout.user_id})
