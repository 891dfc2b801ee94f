"""Stripe billing client with retry, circuit breaking and call timing.

Every call goes through the process-wide circuit breaker and the retry
policy. Stripe failures that survive both are raised as
ExternalProviderError so the client only ever sees a generic message.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

import stripe

from src.api.middleware.error_handler import ExternalProviderError
from src.core.config import get_settings
from src.core.resilience import (
    CircuitBreaker,
    CircuitOpenError,
    RetryPolicy,
    get_billing_breaker,
)
from src.core.stripe import get_stripe

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Thresholds for log levels (in milliseconds)
SLOW_CALL_THRESHOLD_MS = 2000
VERY_SLOW_CALL_THRESHOLD_MS = 5000

PAID_STATUSES = ("paid", "no_payment_required")


def to_plain(value: Any) -> Any:
    """Convert Stripe objects into plain dicts and lists, recursively."""
    if hasattr(value, "to_dict"):
        value = value.to_dict()
    if isinstance(value, dict):
        return {key: to_plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [to_plain(item) for item in value]
    return value


def map_session_status(status: str | None, payment_status: str | None) -> str:
    """Map a Stripe Checkout Session state onto the order status vocabulary.

    ``complete`` with payment collected (or not required) is ``succeeded``;
    ``complete`` while an async payment is pending is ``confirmed``.
    """
    if status == "complete":
        return "succeeded" if payment_status in PAID_STATUSES else "confirmed"
    if status == "expired":
        return "expired"
    return "open"


def _from_timestamp(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


@dataclass
class CheckoutSessionRequest:
    """Everything needed to open one hosted checkout session."""

    product_id: str
    price_id: str
    success_url: str
    metadata: dict[str, str]
    currency: str
    cancel_url: str | None = None
    amount_override: int | None = None
    customer_id: str | None = None
    customer_email: str | None = None
    client_reference_id: str | None = None
    discount_id: str | None = None
    allow_discount_codes: bool | None = None
    require_billing_address: bool | None = None
    collect_tax_id: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    def to_params(self) -> dict[str, Any]:
        """Render as ``stripe.checkout.Session.create`` keyword arguments."""
        if self.amount_override is not None:
            line_item: dict[str, Any] = {
                "price_data": {
                    "currency": self.currency,
                    "product": self.product_id,
                    "unit_amount": self.amount_override,
                },
                "quantity": 1,
            }
        else:
            line_item = {"price": self.price_id, "quantity": 1}

        params: dict[str, Any] = {
            "mode": "payment",
            "line_items": [line_item],
            "success_url": self.success_url,
            "metadata": self.metadata,
            "payment_intent_data": {"metadata": self.metadata},
        }
        if self.cancel_url:
            params["cancel_url"] = self.cancel_url
        if self.client_reference_id:
            params["client_reference_id"] = self.client_reference_id

        if self.customer_id:
            params["customer"] = self.customer_id
            params["customer_update"] = {"name": "auto", "address": "auto"}
        else:
            params["customer_creation"] = "always"
            if self.customer_email:
                params["customer_email"] = self.customer_email

        # Stripe rejects a fixed discount combined with promotion codes
        if self.discount_id:
            params["discounts"] = [{"coupon": self.discount_id}]
        elif self.allow_discount_codes:
            params["allow_promotion_codes"] = True

        if self.require_billing_address:
            params["billing_address_collection"] = "required"
        if self.collect_tax_id:
            params["tax_id_collection"] = {"enabled": True}

        params.update(self.extra)
        return params


def session_descriptor(session: dict[str, Any]) -> dict[str, Any]:
    """Reduce a Stripe session to the descriptor returned to shoppers."""
    total_details = session.get("total_details") or {}
    return {
        "id": session["id"],
        "url": session.get("url"),
        "client_secret": session.get("client_secret"),
        "amount": session.get("amount_subtotal") or 0,
        "tax_amount": total_details.get("amount_tax") or 0,
        "total_amount": session.get("amount_total") or 0,
        "currency": session.get("currency") or get_settings().checkout_currency,
        "status": map_session_status(session.get("status"), session.get("payment_status")),
        "expires_at": _from_timestamp(session.get("expires_at")),
    }


class BillingClient:
    """Stripe operations used by checkout and order completion."""

    def __init__(
        self,
        breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.stripe = get_stripe()
        self.breaker = breaker or get_billing_breaker()
        self.retry_policy = retry_policy or RetryPolicy.from_settings()

    def _call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run one Stripe call under the breaker and retry policy."""
        start_time = time.perf_counter()
        error_msg = None
        try:
            return self.breaker.call(lambda: self.retry_policy.call(fn, *args, **kwargs))
        except CircuitOpenError as e:
            error_msg = str(e)
            raise ExternalProviderError(f"{operation}: {e}") from e
        except stripe.StripeError as e:
            error_msg = f"{type(e).__name__}: {e.user_message or e}"
            raise ExternalProviderError(f"{operation}: {error_msg}") from e
        finally:
            latency_ms = (time.perf_counter() - start_time) * 1000
            log_msg = f"Stripe {operation}: latency={latency_ms:.2f}ms"
            if error_msg:
                logger.error(log_msg + f", error={error_msg}")
            elif latency_ms > VERY_SLOW_CALL_THRESHOLD_MS:
                logger.warning(f"VERY SLOW Stripe call: {log_msg}")
            elif latency_ms > SLOW_CALL_THRESHOLD_MS:
                logger.warning(f"SLOW Stripe call: {log_msg}")
            else:
                logger.debug(log_msg)

    # Products and prices

    def get_active_price(self, product_id: str) -> dict[str, Any] | None:
        """Return the first active price of a Stripe product, if any."""
        prices = self._call(
            "price.list",
            self.stripe.Price.list,
            product=product_id,
            active=True,
            limit=1,
        )
        data = to_plain(prices).get("data") or []
        return data[0] if data else None

    def create_bundle_product(
        self,
        name: str,
        description: str,
        amount: int,
        currency: str,
    ) -> dict[str, str]:
        """Create a one-off product priced at ``amount`` for a multi-item cart.

        Returns:
            dict: ``product_id`` and ``price_id``.
        """
        product = to_plain(
            self._call(
                "product.create",
                self.stripe.Product.create,
                name=name,
                description=description,
                default_price_data={"unit_amount": amount, "currency": currency},
                metadata={"bundle": "true"},
            )
        )
        default_price = product.get("default_price")
        price_id = default_price["id"] if isinstance(default_price, dict) else default_price
        logger.info("Created bundle product %s at %d %s", product["id"], amount, currency)
        return {"product_id": product["id"], "price_id": price_id}

    def archive_product(self, product_id: str) -> None:
        """Deactivate a Stripe product so it can no longer be sold."""
        self._call("product.modify", self.stripe.Product.modify, product_id, active=False)
        logger.info("Archived Stripe product %s", product_id)

    # Customers

    def find_customer_by_user(self, user_id: str) -> dict[str, Any] | None:
        """Find the Stripe customer previously linked to a user ID."""
        result = self._call(
            "customer.search",
            self.stripe.Customer.search,
            query=f"metadata['user_id']:'{user_id}'",
            limit=1,
        )
        data = to_plain(result).get("data") or []
        return data[0] if data else None

    def update_customer(self, customer_id: str, **fields: Any) -> dict[str, Any]:
        """Update fields (name, metadata, address...) on a Stripe customer."""
        customer = self._call("customer.modify", self.stripe.Customer.modify, customer_id, **fields)
        return to_plain(customer)

    # Checkout sessions

    def create_checkout_session(self, request: CheckoutSessionRequest) -> dict[str, Any]:
        """Open a hosted checkout session and return its descriptor."""
        session = to_plain(
            self._call(
                "checkout.session.create",
                self.stripe.checkout.Session.create,
                **request.to_params(),
            )
        )
        if not session.get("url"):
            raise ExternalProviderError(f"checkout.session.create: no URL for session {session.get('id')}")
        return session_descriptor(session)

    def get_checkout_session(self, session_id: str) -> dict[str, Any] | None:
        """Fetch a checkout session with its subscription expanded.

        Returns:
            dict | None: The session as a plain dict, or None if Stripe has no
            such session.
        """
        try:
            session = self._call(
                "checkout.session.retrieve",
                self.stripe.checkout.Session.retrieve,
                session_id,
                expand=["subscription"],
            )
        except ExternalProviderError as e:
            cause = e.__cause__
            if isinstance(cause, stripe.InvalidRequestError) and cause.http_status == 404:
                return None
            raise
        return to_plain(session)

    # Webhooks

    def construct_event(self, payload: bytes, sig_header: str, secret: str) -> dict[str, Any]:
        """Verify a webhook signature and return the event as a plain dict.

        Raises:
            ValueError: If the payload cannot be parsed.
            stripe.SignatureVerificationError: If the signature is invalid.
        """
        event = self.stripe.Webhook.construct_event(payload, sig_header, secret)
        return to_plain(event)
