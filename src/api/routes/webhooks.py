"""Webhook API routes for Stripe checkout notifications."""

import logging

from fastapi import APIRouter, HTTPException, Request, status

from src.api.deps import WebhookRateLimit
from src.services.checkout_service import CheckoutService
from src.services.completion_service import CompletionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Event type -> status implied by the event (None: derive from the session)
CHECKOUT_EVENTS: dict[str, str | None] = {
    "checkout.session.completed": None,
    "checkout.session.async_payment_succeeded": "succeeded",
    "checkout.session.async_payment_failed": "failed",
    "checkout.session.expired": "expired",
}


@router.post(
    "/stripe",
    status_code=status.HTTP_200_OK,
    summary="Handle Stripe webhooks",
    description="Receives and processes Stripe webhook events. Requires valid signature.",
)
async def stripe_webhook(request: Request, _: WebhookRateLimit) -> dict[str, str]:
    """Handle Stripe checkout session events.

    Handles:
    - checkout.session.completed: records the order; paid sessions decrement
      inventory and clear the cart, unpaid (async) ones are recorded as confirmed
    - checkout.session.async_payment_succeeded: delayed payment settled
    - checkout.session.async_payment_failed: delayed payment failed
    - checkout.session.expired: session abandoned

    Other event types are acknowledged and ignored. A failure to record the
    order propagates as a 5xx so Stripe redelivers the event.

    Raises:
        HTTPException: 400 if the signature header is missing or invalid.
    """
    payload = await request.body()

    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        logger.error("Missing Stripe-Signature header in webhook request")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe-Signature header",
        )

    try:
        event = CheckoutService().verify_webhook_signature(payload, sig_header)
    except ValueError as e:
        logger.error("Invalid webhook signature: %s", str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from e

    event_type = event.get("type", "")
    if event_type not in CHECKOUT_EVENTS:
        logger.debug("Unhandled webhook event type: %s", event_type)
        return {"status": "received"}

    session = event["data"]["object"]
    logger.info("Processing Stripe webhook event %s for %s", event_type, session.get("id"))

    result = await CompletionService().handle_checkout_session(
        session["id"],
        status_override=CHECKOUT_EVENTS[event_type],
        fallback_session=session,
    )
    logger.info(
        "Processed %s: order %s is %s",
        event_type,
        result["order_id"],
        result["status"],
    )
    return {"status": "received"}
