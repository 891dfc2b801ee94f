"""Cart API routes for signed-in users and guest sessions."""

from uuid import UUID

from fastapi import APIRouter, status

from src.api.deps import AuthRateLimit, CartRateLimit, CurrentUser, Shopper
from src.schemas.cart import (
    AddCartItemRequest,
    CartCountResponse,
    CartItemResponse,
    CartResponse,
    CartValidationResponse,
    MergeCartRequest,
    MergeCartResponse,
    UpdateCartItemRequest,
)
from src.schemas.common import SuccessResponse
from src.services.cart_service import CartService

router = APIRouter(prefix="/cart", tags=["cart"])


def _to_response(view: dict) -> CartResponse:
    cart = view["cart"]
    return CartResponse(
        id=cart["id"] if cart else None,
        items=[CartItemResponse(**item) for item in view["items"]],
        subtotal=view["subtotal"],
        item_count=view["item_count"],
        expires_at=cart.get("expires_at") if cart else None,
        checkout_url=cart.get("checkout_url") if cart else None,
        updated_at=cart.get("updated_at") if cart else None,
    )


@router.get(
    "",
    response_model=CartResponse,
    summary="Get my cart",
    description="Returns the caller's cart with live product data and totals. Empty if no cart exists yet.",
)
async def get_cart(shopper: Shopper, _: CartRateLimit) -> CartResponse:
    """Get the current cart with items and totals."""
    service = CartService()
    return _to_response(await service.get_cart(shopper.owner))


@router.get(
    "/count",
    response_model=CartCountResponse,
    summary="Get cart item count",
)
async def get_cart_count(shopper: Shopper, _: CartRateLimit) -> CartCountResponse:
    """Get the total number of units in the cart."""
    service = CartService()
    return CartCountResponse(count=await service.get_item_count(shopper.owner))


@router.post(
    "/items",
    response_model=CartResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add item to cart",
    description="Adds a product, merging with an existing line. Fails with 409 if stock is insufficient.",
    responses={
        404: {"description": "Product not found"},
        409: {"description": "Product inactive, out of stock or insufficient stock"},
    },
)
async def add_item(data: AddCartItemRequest, shopper: Shopper, _: CartRateLimit) -> CartResponse:
    """Add a product to the cart and return the updated cart."""
    service = CartService()
    await service.add_item(shopper.owner, data.product_id, data.quantity)
    return _to_response(await service.get_cart(shopper.owner))


@router.patch(
    "/items/{product_id}",
    response_model=CartResponse,
    summary="Update item quantity",
    description="Sets the quantity of a line. Zero or less removes it.",
)
async def update_item(
    product_id: UUID,
    data: UpdateCartItemRequest,
    shopper: Shopper,
    _: CartRateLimit,
) -> CartResponse:
    """Set a line item's quantity and return the updated cart."""
    service = CartService()
    await service.update_item_quantity(shopper.owner, product_id, data.quantity)
    return _to_response(await service.get_cart(shopper.owner))


@router.delete(
    "/items/{product_id}",
    response_model=CartResponse,
    summary="Remove item from cart",
)
async def remove_item(product_id: UUID, shopper: Shopper, _: CartRateLimit) -> CartResponse:
    """Remove a product from the cart. Removing an absent item is not an error."""
    service = CartService()
    await service.remove_item(shopper.owner, product_id)
    return _to_response(await service.get_cart(shopper.owner))


@router.delete(
    "",
    response_model=SuccessResponse,
    summary="Clear cart",
)
async def clear_cart(shopper: Shopper, _: CartRateLimit) -> SuccessResponse:
    """Remove every item from the cart."""
    service = CartService()
    await service.clear_items(shopper.owner)
    return SuccessResponse()


@router.post(
    "/merge",
    response_model=MergeCartResponse,
    summary="Merge guest cart",
    description="Called after sign-in to fold the guest session's cart into the user's cart.",
)
async def merge_cart(data: MergeCartRequest, user: CurrentUser, _: AuthRateLimit) -> MergeCartResponse:
    """Merge a guest cart into the signed-in user's cart."""
    service = CartService()
    cart = await service.merge_guest_into_user(data.session_id, user.user_id)
    return MergeCartResponse(merged=cart is not None, cart_id=cart["id"] if cart else None)


@router.get(
    "/validate",
    response_model=CartValidationResponse,
    summary="Validate cart for checkout",
    description="Checks every line against the live catalog (availability, price, stock) without changing the cart.",
)
async def validate_cart(shopper: Shopper, _: CartRateLimit) -> CartValidationResponse:
    """Validate the cart against current catalog state."""
    service = CartService()
    cart = await service.find_cart(shopper.owner)
    result = await service.validate_for_checkout(cart["id"] if cart else None)
    return CartValidationResponse(**result)
