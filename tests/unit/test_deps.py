"""Unit tests for FastAPI dependency injection functions."""

from unittest.mock import MagicMock

import pytest

from src.api.deps import (
    get_client_ip,
    get_current_user,
    get_optional_user,
    get_shopper,
    require_admin,
    webhook_event_key,
)
from src.api.middleware.error_handler import (
    AuthenticationError,
    AuthorizationError,
    ValidationError,
)
from src.models.owner import GuestOwner, UserOwner
from src.schemas.auth import UserContext
from tests.fakes import issue_token

USER_ID = "550e8400-e29b-41d4-a716-446655440000"


def make_request(headers: dict[str, str], host: str | None = "10.0.0.9") -> MagicMock:
    request = MagicMock()
    request.headers = {key.lower(): value for key, value in headers.items()}
    request.client = MagicMock(host=host) if host else None
    return request


class TestGetCurrentUser:
    """Tests for get_current_user dependency."""

    @pytest.mark.asyncio
    async def test_extracts_user_context_correctly(self) -> None:
        """Test get_current_user extracts UserContext from valid token."""
        user = await get_current_user(f"Bearer {issue_token(USER_ID, email='shopper@example.com')}")

        assert isinstance(user, UserContext)
        assert str(user.user_id) == USER_ID
        assert user.email == "shopper@example.com"

    @pytest.mark.asyncio
    async def test_missing_header(self) -> None:
        with pytest.raises(AuthenticationError, match="Authorization header required"):
            await get_current_user("")

    @pytest.mark.asyncio
    async def test_malformed_header(self) -> None:
        with pytest.raises(AuthenticationError, match="Expected: Bearer <token>"):
            await get_current_user(f"Token {issue_token(USER_ID)}")

    @pytest.mark.asyncio
    async def test_expired_token(self) -> None:
        with pytest.raises(AuthenticationError, match="Token has expired"):
            await get_current_user(f"Bearer {issue_token(USER_ID, expires_in=-60)}")

    @pytest.mark.asyncio
    async def test_non_uuid_subject(self) -> None:
        with pytest.raises(AuthenticationError, match="Invalid token subject"):
            await get_current_user(f"Bearer {issue_token('not-a-uuid')}")


class TestGetOptionalUser:
    """Tests for get_optional_user dependency."""

    @pytest.mark.asyncio
    async def test_no_header_is_anonymous(self) -> None:
        assert await get_optional_user(None) is None

    @pytest.mark.asyncio
    async def test_invalid_header_is_rejected(self) -> None:
        with pytest.raises(AuthenticationError):
            await get_optional_user("Bearer garbage")


class TestRequireAdmin:
    """Tests for require_admin dependency."""

    @pytest.mark.asyncio
    async def test_admin_role_passes(self) -> None:
        user = UserContext(user_id=USER_ID, role="admin")

        assert await require_admin(user) is user

    @pytest.mark.asyncio
    async def test_other_roles_are_forbidden(self) -> None:
        with pytest.raises(AuthorizationError):
            await require_admin(UserContext(user_id=USER_ID, role="authenticated"))


class TestGetShopper:
    """Tests for cart owner resolution."""

    @pytest.mark.asyncio
    async def test_signed_in_user_wins_over_session(self) -> None:
        user = UserContext(user_id=USER_ID, email="shopper@example.com")

        shopper = await get_shopper(user, x_session_id="guest_session_1")

        assert shopper.owner == UserOwner(user_id=USER_ID)
        assert shopper.is_authenticated is True
        assert shopper.email == "shopper@example.com"

    @pytest.mark.asyncio
    async def test_guest_session(self) -> None:
        shopper = await get_shopper(None, x_session_id="guest_session_1")

        assert shopper.owner == GuestOwner(session_id="guest_session_1")
        assert shopper.owner.key == "guest:guest_session_1"
        assert shopper.is_authenticated is False
        assert shopper.email is None

    @pytest.mark.asyncio
    async def test_neither_identity(self) -> None:
        with pytest.raises(AuthenticationError):
            await get_shopper(None, x_session_id=None)

    @pytest.mark.parametrize("session_id", ["short", "has spaces in it", "semi;colon;value", "x" * 129])
    @pytest.mark.asyncio
    async def test_malformed_session_id(self, session_id: str) -> None:
        with pytest.raises(ValidationError):
            await get_shopper(None, x_session_id=session_id)


class TestGetClientIp:
    """Tests for client address resolution."""

    def test_prefers_cloudflare_header(self) -> None:
        request = make_request(
            {"CF-Connecting-IP": "198.51.100.1", "X-Forwarded-For": "203.0.113.5", "X-Real-IP": "192.0.2.1"}
        )

        assert get_client_ip(request) == "198.51.100.1"

    def test_first_forwarded_hop(self) -> None:
        request = make_request({"X-Forwarded-For": "203.0.113.5, 10.0.0.1", "X-Real-IP": "192.0.2.1"})

        assert get_client_ip(request) == "203.0.113.5"

    def test_real_ip(self) -> None:
        assert get_client_ip(make_request({"X-Real-IP": "192.0.2.1"})) == "192.0.2.1"

    def test_socket_peer(self) -> None:
        assert get_client_ip(make_request({})) == "10.0.0.9"
        assert get_client_ip(make_request({}, host=None)) is None


class TestWebhookEventKey:
    """Tests for webhook rate limit identity."""

    def test_keys_on_event_id(self) -> None:
        assert webhook_event_key(b'{"id": "evt_1", "type": "checkout.session.completed"}', "3.18.12.63") == "event:evt_1"

    @pytest.mark.parametrize("payload", [b"not json", b"[]", b'{"type": "ping"}', b'{"id": 7}'])
    def test_falls_back_to_sender_address(self, payload: bytes) -> None:
        assert webhook_event_key(payload, "3.18.12.63") == "3.18.12.63"
