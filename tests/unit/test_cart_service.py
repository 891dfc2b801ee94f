"""Unit tests for CartService."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from src.api.middleware.error_handler import ConflictError, NotFoundError, ValidationError
from src.core.locks import KeyedLocks
from src.models.owner import GuestOwner, UserOwner
from src.services.cart_service import CartService, calculate_totals
from src.services.catalog_service import CatalogService
from tests.fakes import FakeSupabase

USER_ID = "550e8400-e29b-41d4-a716-446655440000"
GUEST = GuestOwner(session_id="guest_session_1")
USER = UserOwner(user_id=USER_ID)


@pytest.fixture
def cart_service(fake_db: FakeSupabase) -> CartService:
    """Create CartService over the in-memory database."""
    return CartService(fake_db, CatalogService(fake_db), KeyedLocks())


@pytest.fixture
def mug(fake_db: FakeSupabase) -> dict:
    return fake_db.add_product(name="Mug", price=1250, inventory_qty=5)


@pytest.fixture
def poster(fake_db: FakeSupabase) -> dict:
    return fake_db.add_product(name="Poster", price=2500, inventory_qty=10)


class TestCalculateTotals:
    """Tests for calculate_totals."""

    def test_sums_price_times_quantity(self) -> None:
        totals = calculate_totals(
            [{"price": 1999, "quantity": 2}, {"price": 2999, "quantity": 1}]
        )

        assert totals == {"subtotal": 6997, "item_count": 3}

    def test_empty_cart(self) -> None:
        assert calculate_totals([]) == {"subtotal": 0, "item_count": 0}


class TestGetOrCreateCart:
    """Tests for get_or_create_cart."""

    @pytest.mark.asyncio
    async def test_guest_cart_expires(self, cart_service: CartService) -> None:
        cart = await cart_service.get_or_create_cart(GUEST)

        assert cart["session_id"] == "guest_session_1"
        assert "user_id" not in cart or cart["user_id"] is None
        expires_at = datetime.fromisoformat(cart["expires_at"])
        expected = datetime.now(timezone.utc) + timedelta(days=30)
        assert abs((expires_at - expected).total_seconds()) < 60

    @pytest.mark.asyncio
    async def test_user_cart_does_not_expire(self, cart_service: CartService) -> None:
        cart = await cart_service.get_or_create_cart(USER)

        assert cart["user_id"] == USER_ID
        assert cart.get("expires_at") is None

    @pytest.mark.asyncio
    async def test_returns_existing_cart(self, cart_service: CartService) -> None:
        first = await cart_service.get_or_create_cart(USER)
        second = await cart_service.get_or_create_cart(USER)

        assert first["id"] == second["id"]

    @pytest.mark.asyncio
    async def test_concurrent_calls_create_one_cart(
        self, cart_service: CartService, fake_db: FakeSupabase
    ) -> None:
        carts = await asyncio.gather(*(cart_service.get_or_create_cart(GUEST) for _ in range(5)))

        assert len({cart["id"] for cart in carts}) == 1
        assert len(fake_db.tables["carts"]) == 1

    @pytest.mark.asyncio
    async def test_unique_violation_rereads_cart(
        self, cart_service: CartService, fake_db: FakeSupabase
    ) -> None:
        """Test that a cart created by another process is picked up."""
        existing = {"id": "cart-other", "user_id": USER_ID, "session_id": None}
        fake_db.tables["carts"].append(existing)
        cart_service.find_cart = AsyncMock(side_effect=[None, existing])

        cart = await cart_service.get_or_create_cart(USER)

        assert cart["id"] == "cart-other"
        assert len(fake_db.tables["carts"]) == 1


class TestAddItem:
    """Tests for add_item."""

    @pytest.mark.asyncio
    async def test_adds_line_with_price_snapshot(self, cart_service: CartService, mug: dict) -> None:
        item = await cart_service.add_item(GUEST, mug["id"], 2)

        assert item["product_id"] == mug["id"]
        assert item["quantity"] == 2
        assert item["price"] == 1250

    @pytest.mark.asyncio
    async def test_adding_again_merges_quantity(
        self, cart_service: CartService, fake_db: FakeSupabase, mug: dict
    ) -> None:
        await cart_service.add_item(GUEST, mug["id"], 1)
        item = await cart_service.add_item(GUEST, mug["id"], 2)

        assert item["quantity"] == 3
        assert len(fake_db.tables["cart_items"]) == 1

    @pytest.mark.asyncio
    async def test_combined_quantity_cannot_exceed_inventory(
        self, cart_service: CartService, mug: dict
    ) -> None:
        await cart_service.add_item(GUEST, mug["id"], 4)

        with pytest.raises(ConflictError) as exc_info:
            await cart_service.add_item(GUEST, mug["id"], 2)

        assert exc_info.value.code == "insufficient_stock"
        assert exc_info.value.message == "Only 5 items available in stock"

    @pytest.mark.asyncio
    async def test_concurrent_adds_never_oversell(
        self, cart_service: CartService, fake_db: FakeSupabase, mug: dict
    ) -> None:
        results = await asyncio.gather(
            *(cart_service.add_item(GUEST, mug["id"], 2) for _ in range(3)),
            return_exceptions=True,
        )

        failures = [result for result in results if isinstance(result, ConflictError)]
        assert len(failures) == 1
        assert fake_db.tables["cart_items"][0]["quantity"] == 4

    @pytest.mark.asyncio
    async def test_rejects_inactive_product(self, cart_service: CartService, fake_db: FakeSupabase) -> None:
        retired = fake_db.add_product(name="Retired", active=False)

        with pytest.raises(ConflictError) as exc_info:
            await cart_service.add_item(GUEST, retired["id"])

        assert exc_info.value.code == "product_inactive"
        assert exc_info.value.message == "Product is no longer available"

    @pytest.mark.asyncio
    async def test_rejects_out_of_stock_product(self, cart_service: CartService, fake_db: FakeSupabase) -> None:
        sold_out = fake_db.add_product(name="Sold out", inventory_qty=0)

        with pytest.raises(ConflictError) as exc_info:
            await cart_service.add_item(GUEST, sold_out["id"])

        assert exc_info.value.code == "out_of_stock"

    @pytest.mark.asyncio
    async def test_rejects_unknown_product(self, cart_service: CartService) -> None:
        with pytest.raises(NotFoundError, match="Product not found"):
            await cart_service.add_item(GUEST, "00000000-0000-0000-0000-000000000000")

    @pytest.mark.parametrize("quantity", [0, -1, True, 1.5])
    @pytest.mark.asyncio
    async def test_rejects_bad_quantity(self, cart_service: CartService, mug: dict, quantity: object) -> None:
        with pytest.raises(ValidationError, match="Quantity must be a positive integer"):
            await cart_service.add_item(GUEST, mug["id"], quantity)


class TestUpdateAndRemove:
    """Tests for update_item_quantity, remove_item and clear_items."""

    @pytest.mark.asyncio
    async def test_sets_quantity(self, cart_service: CartService, mug: dict) -> None:
        await cart_service.add_item(USER, mug["id"], 1)

        item = await cart_service.update_item_quantity(USER, mug["id"], 3)

        assert item["quantity"] == 3

    @pytest.mark.asyncio
    async def test_zero_quantity_removes_line(
        self, cart_service: CartService, fake_db: FakeSupabase, mug: dict
    ) -> None:
        await cart_service.add_item(USER, mug["id"], 1)

        assert await cart_service.update_item_quantity(USER, mug["id"], 0) is None
        assert fake_db.tables["cart_items"] == []

    @pytest.mark.asyncio
    async def test_increase_beyond_inventory_is_rejected(self, cart_service: CartService, mug: dict) -> None:
        await cart_service.add_item(USER, mug["id"], 1)

        with pytest.raises(ConflictError, match="Only 5 items available in stock"):
            await cart_service.update_item_quantity(USER, mug["id"], 6)

    @pytest.mark.asyncio
    async def test_missing_line_is_not_found(self, cart_service: CartService, mug: dict, poster: dict) -> None:
        await cart_service.add_item(USER, mug["id"], 1)

        with pytest.raises(NotFoundError):
            await cart_service.update_item_quantity(USER, poster["id"], 2)

    @pytest.mark.asyncio
    async def test_remove_missing_item_is_not_an_error(self, cart_service: CartService, mug: dict) -> None:
        assert await cart_service.remove_item(GUEST, mug["id"]) is False

        await cart_service.add_item(GUEST, mug["id"], 1)
        assert await cart_service.remove_item(GUEST, mug["id"]) is True

    @pytest.mark.asyncio
    async def test_clear_items(self, cart_service: CartService, mug: dict, poster: dict) -> None:
        await cart_service.add_item(GUEST, mug["id"], 1)
        await cart_service.add_item(GUEST, poster["id"], 1)

        assert await cart_service.clear_items(GUEST) == 2
        assert await cart_service.get_item_count(GUEST) == 0


class TestGetCart:
    """Tests for the cart view."""

    @pytest.mark.asyncio
    async def test_empty_view_without_cart(self, cart_service: CartService) -> None:
        view = await cart_service.get_cart(GUEST)

        assert view == {"cart": None, "items": [], "subtotal": 0, "item_count": 0}

    @pytest.mark.asyncio
    async def test_view_joins_live_product_data(
        self, cart_service: CartService, fake_db: FakeSupabase, mug: dict, poster: dict
    ) -> None:
        await cart_service.add_item(GUEST, mug["id"], 2)
        await cart_service.add_item(GUEST, poster["id"], 1)
        fake_db.row("products", mug["id"])["price"] = 1500

        view = await cart_service.get_cart(GUEST)

        mug_line = next(item for item in view["items"] if item["product_id"] == mug["id"])
        assert mug_line["name"] == "Mug"
        assert mug_line["price"] == 1250
        assert mug_line["current_price"] == 1500
        assert mug_line["line_total"] == 2500
        assert view["subtotal"] == 5000
        assert view["item_count"] == 3


class TestMergeGuestIntoUser:
    """Tests for merge_guest_into_user."""

    @pytest.mark.asyncio
    async def test_transfers_guest_cart_when_user_has_none(
        self, cart_service: CartService, fake_db: FakeSupabase, mug: dict
    ) -> None:
        guest_cart = await cart_service.get_or_create_cart(GUEST)
        await cart_service.add_item(GUEST, mug["id"], 2)

        cart = await cart_service.merge_guest_into_user(GUEST.session_id, USER_ID)

        assert cart["id"] == guest_cart["id"]
        assert cart["user_id"] == USER_ID
        assert cart["session_id"] is None
        assert cart["expires_at"] is None
        assert await cart_service.find_cart(GUEST) is None

    @pytest.mark.asyncio
    async def test_sums_overlapping_lines(
        self, cart_service: CartService, fake_db: FakeSupabase, mug: dict, poster: dict
    ) -> None:
        await cart_service.add_item(GUEST, mug["id"], 2)
        await cart_service.add_item(GUEST, poster["id"], 1)
        user_cart = await cart_service.get_or_create_cart(USER)
        await cart_service.add_item(USER, mug["id"], 1)

        cart = await cart_service.merge_guest_into_user(GUEST.session_id, USER_ID)

        assert cart["id"] == user_cart["id"]
        quantities = {item["product_id"]: item["quantity"] for item in await cart_service.get_items(cart["id"])}
        assert quantities == {mug["id"]: 3, poster["id"]: 1}
        assert len(fake_db.tables["carts"]) == 1
        assert len(fake_db.tables["cart_items"]) == 2

    @pytest.mark.asyncio
    async def test_merged_quantity_may_exceed_inventory(
        self, cart_service: CartService, mug: dict
    ) -> None:
        await cart_service.add_item(GUEST, mug["id"], 4)
        await cart_service.add_item(USER, mug["id"], 4)

        cart = await cart_service.merge_guest_into_user(GUEST.session_id, USER_ID)

        items = await cart_service.get_items(cart["id"])
        assert items[0]["quantity"] == 8
        validation = await cart_service.validate_for_checkout(cart["id"])
        assert validation["errors"] == ["Only 5 of Mug available in stock"]

    @pytest.mark.asyncio
    async def test_no_guest_cart_is_a_no_op(self, cart_service: CartService) -> None:
        assert await cart_service.merge_guest_into_user("unknown_session", USER_ID) is None

    @pytest.mark.asyncio
    async def test_empty_guest_cart_leaves_user_cart_untouched(
        self, cart_service: CartService, fake_db: FakeSupabase, mug: dict
    ) -> None:
        await cart_service.get_or_create_cart(GUEST)
        await cart_service.add_item(USER, mug["id"], 1)
        before = dict(await cart_service.find_cart(USER))

        cart = await cart_service.merge_guest_into_user(GUEST.session_id, USER_ID)

        assert cart["updated_at"] == before["updated_at"]
        assert await cart_service.find_cart(GUEST) is None


class TestValidateForCheckout:
    """Tests for validate_for_checkout."""

    @pytest.mark.asyncio
    async def test_empty_cart_is_invalid(self, cart_service: CartService) -> None:
        cart = await cart_service.get_or_create_cart(GUEST)

        result = await cart_service.validate_for_checkout(cart["id"])

        assert result == {"valid": False, "errors": ["Cart is empty"], "valid_item_count": 0}

    @pytest.mark.asyncio
    async def test_missing_cart_is_empty(self, cart_service: CartService) -> None:
        result = await cart_service.validate_for_checkout(None)

        assert result["errors"] == ["Cart is empty"]

    @pytest.mark.asyncio
    async def test_valid_cart(self, cart_service: CartService, mug: dict, poster: dict) -> None:
        await cart_service.add_item(GUEST, mug["id"], 2)
        await cart_service.add_item(GUEST, poster["id"], 1)
        cart = await cart_service.find_cart(GUEST)

        result = await cart_service.validate_for_checkout(cart["id"])

        assert result == {"valid": True, "errors": [], "valid_item_count": 2}

    @pytest.mark.asyncio
    async def test_reports_price_drift(
        self, cart_service: CartService, fake_db: FakeSupabase, mug: dict, poster: dict
    ) -> None:
        await cart_service.add_item(GUEST, mug["id"], 1)
        await cart_service.add_item(GUEST, poster["id"], 1)
        fake_db.row("products", mug["id"])["price"] = 1500
        cart = await cart_service.find_cart(GUEST)

        result = await cart_service.validate_for_checkout(cart["id"])

        assert result["valid"] is False
        assert result["errors"] == ["Price for Mug has changed from $12.50 to $15.00"]
        assert result["valid_item_count"] == 1

    @pytest.mark.asyncio
    async def test_reports_inactive_and_missing_products(
        self, cart_service: CartService, fake_db: FakeSupabase, mug: dict, poster: dict
    ) -> None:
        await cart_service.add_item(GUEST, mug["id"], 1)
        await cart_service.add_item(GUEST, poster["id"], 1)
        fake_db.row("products", mug["id"])["active"] = False
        fake_db.tables["products"].remove(fake_db.row("products", poster["id"]))
        cart = await cart_service.find_cart(GUEST)

        result = await cart_service.validate_for_checkout(cart["id"])

        assert "Mug is no longer available" in result["errors"]
        assert "One or more products no longer exist" in result["errors"]
        assert result["valid_item_count"] == 0

    @pytest.mark.asyncio
    async def test_does_not_modify_cart(
        self, cart_service: CartService, fake_db: FakeSupabase, mug: dict
    ) -> None:
        await cart_service.add_item(GUEST, mug["id"], 1)
        fake_db.row("products", mug["id"])["price"] = 999
        snapshot = [dict(item) for item in fake_db.tables["cart_items"]]
        cart = await cart_service.find_cart(GUEST)

        await cart_service.validate_for_checkout(cart["id"])

        assert fake_db.tables["cart_items"] == snapshot


class TestCleanupExpiredCarts:
    """Tests for cleanup_expired_carts."""

    @pytest.mark.asyncio
    async def test_deletes_only_expired_guest_carts(
        self, cart_service: CartService, fake_db: FakeSupabase, mug: dict
    ) -> None:
        await cart_service.add_item(GUEST, mug["id"], 1)
        await cart_service.add_item(USER, mug["id"], 1)
        fresh = GuestOwner(session_id="guest_session_2")
        await cart_service.get_or_create_cart(fresh)

        later = datetime.now(timezone.utc) + timedelta(days=31)
        fake_db.tables["carts"][-1]["expires_at"] = (later + timedelta(days=1)).isoformat()

        result = await cart_service.cleanup_expired_carts(now=later)

        assert result == {"deleted_carts": 1, "deleted_items": 1}
        assert await cart_service.find_cart(GUEST) is None
        assert await cart_service.find_cart(USER) is not None
        assert await cart_service.find_cart(fresh) is not None
