"""Checkout and order API routes."""

from fastapi import APIRouter, status

from src.api.deps import AuthRateLimit, CheckoutRateLimit, ClientIp, CurrentUser, Shopper
from src.api.middleware.error_handler import AuthorizationError, NotFoundError
from src.schemas.checkout import (
    CheckoutCompletionResponse,
    CheckoutSessionCreate,
    CheckoutSessionResponse,
    CheckoutSuccessRequest,
)
from src.schemas.order import LinkOrdersResponse, OrderListResponse, OrderResponse
from src.services.checkout_service import CheckoutService
from src.services.completion_service import CompletionService
from src.services.order_service import OrderService

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post(
    "/session",
    response_model=CheckoutSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create checkout session",
    description=(
        "Validates the caller's cart against the live catalog and opens a Stripe-hosted "
        "checkout session for it. Supports both signed-in users and guest sessions."
    ),
    responses={
        409: {"description": "Cart empty, invalid, or contains products that cannot be sold"},
        429: {"description": "Too many checkout attempts"},
        502: {"description": "Payment provider unavailable"},
    },
)
async def create_checkout_session(
    data: CheckoutSessionCreate,
    shopper: Shopper,
    client_ip: ClientIp,
    _: CheckoutRateLimit,
) -> CheckoutSessionResponse:
    """Create a checkout session for the current cart.

    The frontend should redirect to the returned url.
    """
    service = CheckoutService()
    descriptor = await service.create_checkout_session(
        shopper.owner,
        data,
        user_email=shopper.email,
        customer_ip=client_ip,
    )
    return CheckoutSessionResponse(**descriptor)


@router.post(
    "/success",
    response_model=CheckoutCompletionResponse,
    summary="Report checkout success",
    description=(
        "Called by the success page with the session ID from the redirect. Records the order "
        "through the same idempotent path as the webhook, so it is safe if both arrive."
    ),
)
async def checkout_success(data: CheckoutSuccessRequest, _: CheckoutRateLimit) -> CheckoutCompletionResponse:
    """Record the outcome of a finished checkout session."""
    service = CompletionService()
    result = await service.handle_checkout_session(data.checkout_session_id)
    return CheckoutCompletionResponse(**result)


@router.get(
    "/session/{checkout_session_id}",
    response_model=CheckoutSessionResponse,
    summary="Get checkout session",
    responses={404: {"description": "Checkout session not found"}},
)
async def get_checkout_session(checkout_session_id: str) -> CheckoutSessionResponse:
    """Get the current state of a checkout session."""
    service = CheckoutService()
    return CheckoutSessionResponse(**await service.get_checkout_session(checkout_session_id))


# Orders router - mounted separately at /orders
orders_router = APIRouter(prefix="/orders", tags=["orders"])


@orders_router.get(
    "",
    response_model=OrderListResponse,
    summary="List my orders",
    description="Returns the user's orders plus guest orders placed with the same email, newest first.",
)
async def list_orders(user: CurrentUser) -> OrderListResponse:
    """List orders for the signed-in user."""
    service = OrderService()
    orders = await service.list_orders_for_user(user.user_id, user.email)
    return OrderListResponse(items=[OrderResponse(**order) for order in orders])


@orders_router.post(
    "/link",
    response_model=LinkOrdersResponse,
    summary="Link guest orders",
    description="Attaches unlinked guest orders placed with the user's email to the user's account.",
)
async def link_orders(user: CurrentUser, _: AuthRateLimit) -> LinkOrdersResponse:
    """Link guest orders to the signed-in user."""
    if not user.email:
        return LinkOrdersResponse(linked=0)
    service = OrderService()
    return LinkOrdersResponse(linked=await service.link_guest_orders(user.user_id, user.email))


@orders_router.get(
    "/{checkout_session_id}",
    response_model=OrderResponse,
    summary="Get order by checkout session",
    description="Returns a single order. Only accessible by the order owner.",
    responses={
        403: {"description": "Not authorized to view this order"},
        404: {"description": "Order not found"},
    },
)
async def get_order(checkout_session_id: str, user: CurrentUser) -> OrderResponse:
    """Get a single order by its checkout session ID."""
    service = OrderService()
    order = await service.get_order_by_checkout_id(checkout_session_id)
    if not order:
        raise NotFoundError("Order not found")
    if not service.can_access_order(order, user.user_id, user.email):
        raise AuthorizationError("Not authorized to view this order")
    return OrderResponse(**order)
