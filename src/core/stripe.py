"""Stripe client configuration and singleton."""

import logging

import stripe

from src.core.config import get_settings

logger = logging.getLogger(__name__)


def configure_stripe() -> None:
    """Configure Stripe SDK with API key and network policy from settings.

    This should be called once at application startup.
    If Stripe keys are not configured, Stripe operations will fail with clear errors.

    SDK-level retries are disabled; BillingClient owns the retry policy so
    attempts are counted once and feed the circuit breaker.
    """
    settings = get_settings()
    if settings.stripe_secret_key:
        stripe.api_key = settings.stripe_secret_key
    else:
        logger.warning("Stripe secret key not configured. Checkout will not work.")

    stripe.max_network_retries = 0
    stripe.default_http_client = stripe.new_default_http_client(
        timeout=settings.billing_timeout_seconds,
    )


def get_stripe() -> stripe:
    """Get the configured Stripe module.

    Returns:
        stripe: The Stripe module with API key configured.

    Note:
        Stripe SDK uses module-level configuration, so this returns
        the stripe module itself. Ensure configure_stripe() has been
        called before using Stripe API calls.
    """
    return stripe
