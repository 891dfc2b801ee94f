"""Checkout session creation from a validated cart."""

import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlsplit

import stripe
from supabase import Client

from src.api.middleware.error_handler import (
    ConflictError,
    ExternalProviderError,
    NotFoundError,
    ValidationError,
)
from src.core.config import get_settings
from src.core.supabase import get_supabase_client
from src.models.order import OrderLineItem
from src.models.owner import Owner, UserOwner
from src.schemas.checkout import CheckoutSessionCreate
from src.services.billing_client import (
    BillingClient,
    CheckoutSessionRequest,
    session_descriptor,
)
from src.services.cart_service import CartService, calculate_totals
from src.services.catalog_service import CatalogService
from src.services.checkout_metadata import (
    BUNDLE_PRODUCT_KEY,
    MetadataBudgetExceeded,
    build_checkout_metadata,
)

logger = logging.getLogger(__name__)

SESSION_ID_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


def bundle_product_name(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"Bundle {now:%Y-%m-%d}-{int(now.timestamp() * 1000)}"


def bundle_product_description(items: list[OrderLineItem], limit: int = 500) -> str:
    """Describe bundled items as "N items: A (2) + B (1)", truncated to fit.

    Descriptions within 20 characters of ``limit`` are cut 30 characters
    short of it and suffixed with an ellipsis.
    """
    listing = " + ".join(f"{item['name']} ({item['quantity']})" for item in items)
    description = f"{len(items)} items: {listing}"
    if len(description) > limit - 20:
        description = description[: limit - 30] + "..."
    return description


def with_session_placeholder(url: str) -> str:
    """Append the checkout session ID template to a success URL."""
    if SESSION_ID_PLACEHOLDER in url:
        return url
    separator = "&" if urlsplit(url).query else "?"
    return f"{url}{separator}checkout_session_id={SESSION_ID_PLACEHOLDER}"


class CheckoutService:
    """Service for turning carts into hosted checkout sessions."""

    def __init__(
        self,
        supabase_client: Client | None = None,
        billing_client: BillingClient | None = None,
        cart_service: CartService | None = None,
        catalog_service: CatalogService | None = None,
    ) -> None:
        """Initialize checkout service with clients."""
        self.client = supabase_client or get_supabase_client()
        self.billing = billing_client or BillingClient()
        self.catalog = catalog_service or CatalogService(self.client)
        self.carts = cart_service or CartService(self.client, self.catalog)
        self.settings = get_settings()

    async def create_checkout_session(
        self,
        owner: Owner,
        data: CheckoutSessionCreate,
        user_email: str | None = None,
        customer_ip: str | None = None,
    ) -> dict[str, Any]:
        """Create a hosted checkout session for the owner's cart.

        Multi-item carts are sold as a single one-off bundle product priced
        at the exact cart subtotal. A single line is sold as its own
        product; when its quantity is above one the session carries an
        explicit amount of price x quantity.

        Args:
            owner: Cart owner.
            data: Checkout options from the request body.
            user_email: Signed-in user's email, used when none is supplied.
            customer_ip: Client address recorded in session metadata.

        Returns:
            dict: Session descriptor (id, url, client_secret, amount,
            tax_amount, total_amount, currency, status, expires_at).

        Raises:
            ConflictError: If the cart is empty or fails validation, a product
                is not synced to Stripe or has no active price.
            ValidationError: If the cart is too large to encode.
            ExternalProviderError: If Stripe fails after retries.
        """
        cart = await self.carts.find_cart(owner)
        cart_items = await self.carts.get_items(cart["id"]) if cart else []
        if not cart or not cart_items:
            raise ConflictError("Cart is empty", code="empty_cart")
        cart_id = str(cart["id"])

        validation = await self.carts.validate_for_checkout(cart_id)
        if not validation["valid"]:
            raise ConflictError(
                "; ".join(validation["errors"]),
                code="cart_invalid",
                details=[{"msg": error, "type": "cart_invalid"} for error in validation["errors"]],
            )

        products = await self.catalog.get_products([item["product_id"] for item in cart_items])

        line_items: list[OrderLineItem] = []
        resolved: list[dict[str, Any]] = []
        for item in cart_items:
            product = products[item["product_id"]]
            stripe_product_id = product.get("stripe_product_id")
            if not stripe_product_id:
                raise ConflictError(
                    f"{product['name']} is not available for online checkout",
                    code="product_not_sellable",
                )
            price = self.billing.get_active_price(stripe_product_id)
            if not price:
                raise ConflictError(
                    f"No active price found for {product['name']}",
                    code="price_not_found",
                )
            line_items.append(
                {
                    "id": str(product["id"]),
                    "name": product["name"],
                    "quantity": item["quantity"],
                    "price": item["price"],
                }
            )
            resolved.append({"product_id": stripe_product_id, "price_id": price["id"]})

        is_bundle = len(line_items) > 1
        try:
            metadata = build_checkout_metadata(
                cart_id,
                line_items,
                owner,
                customer_ip=customer_ip,
                extra=self._checkout_extras(data),
                reserve_keys=1 if is_bundle else 0,
                key_budget=self.settings.metadata_key_budget,
            )
        except MetadataBudgetExceeded as e:
            logger.warning("Cart %s too large for checkout metadata: %s", cart_id, e)
            raise ValidationError(
                "Your cart has too many different products to check out at once"
            ) from e
        except ValueError as e:
            raise ValidationError(str(e)) from e

        totals = calculate_totals(line_items)
        currency = self.settings.checkout_currency
        amount_override = None
        bundle_product_id = None

        if is_bundle:
            bundle = self.billing.create_bundle_product(
                name=bundle_product_name(),
                description=bundle_product_description(
                    line_items, self.settings.bundle_description_limit
                ),
                amount=totals["subtotal"],
                currency=currency,
            )
            bundle_product_id = bundle["product_id"]
            metadata[BUNDLE_PRODUCT_KEY] = bundle_product_id
            product_id, price_id = bundle["product_id"], bundle["price_id"]
        else:
            product_id, price_id = resolved[0]["product_id"], resolved[0]["price_id"]
            if line_items[0]["quantity"] > 1:
                amount_override = totals["subtotal"]

        customer_id, customer_email = await self._resolve_customer(owner, data, user_email)

        request = CheckoutSessionRequest(
            product_id=product_id,
            price_id=price_id,
            success_url=with_session_placeholder(str(data.success_url)),
            cancel_url=str(data.cancel_url) if data.cancel_url else None,
            metadata=metadata,
            currency=currency,
            amount_override=amount_override,
            customer_id=customer_id,
            customer_email=customer_email,
            client_reference_id=cart_id,
            discount_id=data.discount_id,
            allow_discount_codes=data.allow_discount_codes,
            require_billing_address=data.require_billing_address,
            collect_tax_id=bool(data.is_business_customer or data.customer_tax_id),
        )

        try:
            descriptor = self.billing.create_checkout_session(request)
        except ExternalProviderError:
            if bundle_product_id:
                self._discard_bundle(bundle_product_id)
            raise

        await self.carts.update_cart_checkout(
            cart_id,
            checkout_session_id=descriptor["id"],
            checkout_url=descriptor["url"],
            discount_id=data.discount_id,
        )

        logger.info(
            "Created checkout session %s for cart %s (%d items, %d %s, bundle=%s)",
            descriptor["id"],
            cart_id,
            totals["item_count"],
            totals["subtotal"],
            currency,
            is_bundle,
        )
        return descriptor

    def _checkout_extras(self, data: CheckoutSessionCreate) -> dict[str, Any]:
        extras: dict[str, Any] = dict(data.metadata or {})
        customer_fields = {
            "is_business_customer": data.is_business_customer,
            "customer_tax_id": data.customer_tax_id,
            "customer_billing_name": data.customer_billing_name,
            "discount_code": data.discount_code,
        }
        extras.update({key: value for key, value in customer_fields.items() if value is not None})
        return extras

    async def _resolve_customer(
        self,
        owner: Owner,
        data: CheckoutSessionCreate,
        user_email: str | None,
    ) -> tuple[str | None, str | None]:
        """Pick the Stripe customer or email to pre-fill.

        Signed-in users reuse the customer previously linked to their user
        ID. Everyone else gets an email pre-fill and Stripe creates the
        customer when the session completes.
        """
        email = data.customer_email or user_email
        if not isinstance(owner, UserOwner):
            return None, email

        customer = self.billing.find_customer_by_user(owner.user_id)
        if not customer:
            return None, email

        name = data.customer_billing_name or data.customer_name
        if name and name != customer.get("name"):
            self.billing.update_customer(customer["id"], name=name)
        return customer["id"], None

    def _discard_bundle(self, bundle_product_id: str) -> None:
        try:
            self.billing.archive_product(bundle_product_id)
        except ExternalProviderError as e:
            logger.error("Failed to archive unused bundle %s: %s", bundle_product_id, e.reason)

    async def get_checkout_session(self, checkout_session_id: str) -> dict[str, Any]:
        """Get the descriptor of an existing checkout session.

        Raises:
            NotFoundError: If Stripe has no such session.
        """
        session = self.billing.get_checkout_session(checkout_session_id)
        if not session:
            raise NotFoundError("Checkout session not found")
        return session_descriptor(session)

    def verify_webhook_signature(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify Stripe webhook signature and return event.

        Args:
            payload: Raw webhook payload bytes.
            sig_header: Stripe-Signature header value.

        Returns:
            dict: Verified Stripe event.

        Raises:
            ValueError: If signature is invalid or Stripe not configured.
        """
        if not self.settings.stripe_webhook_secret:
            raise ValueError("Stripe webhook secret is not configured. Please set STRIPE_WEBHOOK_SECRET environment variable.")

        try:
            return self.billing.construct_event(
                payload, sig_header, self.settings.stripe_webhook_secret
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Invalid webhook signature: %s", str(e))
            raise ValueError("Invalid webhook signature") from e
