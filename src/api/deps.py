"""FastAPI dependency injection functions."""

import json
import re
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, Request

from src.api.middleware.auth import AuthError, AuthErrorCode, decode_jwt
from src.api.middleware.error_handler import (
    AuthenticationError,
    AuthorizationError,
    ValidationError,
)
from src.core.config import get_settings
from src.core.rate_limiter import OperationClass, get_rate_limiter
from src.models.owner import GuestOwner, Owner, UserOwner
from src.schemas.auth import UserContext

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,128}$")


def _user_from_authorization(authorization: str) -> UserContext:
    """Verify a ``Bearer <token>`` header value.

    Raises:
        AuthenticationError: If the header is malformed or the token is invalid.
    """
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError("Invalid authorization header format. Expected: Bearer <token>")

    try:
        return decode_jwt(parts[1]).to_user_context()
    except AuthError as e:
        if e.code == AuthErrorCode.TOKEN_EXPIRED:
            raise AuthenticationError("Token has expired") from e
        raise AuthenticationError(e.message) from e
    except ValueError as e:
        # sub claim is not a UUID
        raise AuthenticationError("Invalid token subject") from e


async def get_current_user(
    authorization: Annotated[str, Header(description="Bearer token")] = "",
) -> UserContext:
    """Require a valid Supabase JWT in the Authorization header.

    Raises:
        AuthenticationError: 401 if token is missing, invalid, or expired.
    """
    if not authorization:
        raise AuthenticationError("Authorization header required")
    return _user_from_authorization(authorization)


async def get_optional_user(
    authorization: Annotated[str | None, Header()] = None,
) -> UserContext | None:
    """Return the user if an Authorization header is present.

    A header that is present but invalid is still rejected.
    """
    if not authorization:
        return None
    return _user_from_authorization(authorization)


async def require_admin(user: Annotated[UserContext, Depends(get_current_user)]) -> UserContext:
    """Require the configured admin role.

    Raises:
        AuthorizationError: 403 for signed-in users without the role.
    """
    if user.role != get_settings().admin_role:
        raise AuthorizationError("Admin access required")
    return user


# Type aliases for cleaner dependency injection
CurrentUser = Annotated[UserContext, Depends(get_current_user)]
OptionalUser = Annotated[UserContext | None, Depends(get_optional_user)]
AdminUser = Annotated[UserContext, Depends(require_admin)]


@dataclass
class ShopperContext:
    """Who is shopping: a signed-in user or an anonymous guest session.

    ``owner`` is the cart owner; ``user`` is only set when signed in.
    """

    owner: Owner
    user: UserContext | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def email(self) -> str | None:
        return self.user.email if self.user else None


async def get_shopper(
    user: OptionalUser,
    x_session_id: Annotated[str | None, Header(description="Anonymous shopper session ID")] = None,
) -> ShopperContext:
    """Resolve the cart owner for a request.

    A valid bearer token always wins; otherwise the ``X-Session-Id`` header
    identifies a guest.

    Raises:
        AuthenticationError: If neither is present.
        ValidationError: If the session ID is malformed.
    """
    if user:
        return ShopperContext(owner=UserOwner(user_id=str(user.user_id)), user=user)

    if not x_session_id:
        raise AuthenticationError("Sign in or provide an X-Session-Id header")
    if not SESSION_ID_PATTERN.match(x_session_id):
        raise ValidationError("Invalid session ID")
    return ShopperContext(owner=GuestOwner(session_id=x_session_id))


Shopper = Annotated[ShopperContext, Depends(get_shopper)]


def get_client_ip(request: Request) -> str | None:
    """Best-effort client address behind Cloudflare or a reverse proxy.

    Prefers ``cf-connecting-ip``, then the first ``x-forwarded-for`` hop,
    then ``x-real-ip``, then the socket peer.
    """
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()

    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return request.client.host if request.client else None


ClientIp = Annotated[str | None, Depends(get_client_ip)]


# Rate limiting dependencies


async def limit_cart_operations(shopper: Shopper) -> None:
    """Rate limit cart reads and mutations per cart owner."""
    await get_rate_limiter().enforce(OperationClass.CART, shopper.owner.key)


async def limit_checkout_operations(shopper: Shopper) -> None:
    """Rate limit checkout session creation per cart owner."""
    await get_rate_limiter().enforce(OperationClass.CHECKOUT, shopper.owner.key)


async def limit_catalog_reads(client_ip: ClientIp) -> None:
    """Rate limit catalog reads per client address."""
    await get_rate_limiter().enforce(OperationClass.CATALOG, client_ip)


async def limit_auth_operations(user: CurrentUser) -> None:
    """Rate limit sign-in follow-ups (cart merge, order linking) per user."""
    await get_rate_limiter().enforce(OperationClass.AUTH, f"user:{user.user_id}")


def webhook_event_key(payload: bytes, client_ip: str | None) -> str | None:
    """Pick the rate limit identity for a webhook body."""
    try:
        event = json.loads(payload)
    except ValueError:
        return client_ip
    event_id = event.get("id") if isinstance(event, dict) else None
    if isinstance(event_id, str) and event_id:
        return f"event:{event_id}"
    return client_ip


async def limit_webhook_deliveries(request: Request, client_ip: ClientIp) -> None:
    """Rate limit webhook deliveries per event ID, or per sender address when the body has none."""
    await get_rate_limiter().enforce(OperationClass.WEBHOOK, webhook_event_key(await request.body(), client_ip))


# Type aliases for rate limit dependencies
CartRateLimit = Annotated[None, Depends(limit_cart_operations)]
CheckoutRateLimit = Annotated[None, Depends(limit_checkout_operations)]
CatalogRateLimit = Annotated[None, Depends(limit_catalog_reads)]
AuthRateLimit = Annotated[None, Depends(limit_auth_operations)]
WebhookRateLimit = Annotated[None, Depends(limit_webhook_deliveries)]
