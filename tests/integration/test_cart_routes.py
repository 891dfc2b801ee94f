"""Integration tests for cart API endpoints."""

from fastapi.testclient import TestClient

from tests.fakes import FakeSupabase, bearer

USER_ID = "550e8400-e29b-41d4-a716-446655440000"
GUEST_HEADERS = {"X-Session-Id": "guest_session_1"}


class TestCartIdentity:
    """Tests for owner resolution on cart endpoints."""

    def test_requires_token_or_session(self, client: TestClient) -> None:
        response = client.get("/api/v1/cart")

        assert response.status_code == 401
        assert response.json()["error"] == "authentication_error"

    def test_malformed_session_id(self, client: TestClient) -> None:
        response = client.get("/api/v1/cart", headers={"X-Session-Id": "bad id!"})

        assert response.status_code == 422

    def test_invalid_token_is_not_treated_as_guest(self, client: TestClient) -> None:
        response = client.get(
            "/api/v1/cart",
            headers={**GUEST_HEADERS, "Authorization": "Bearer garbage"},
        )

        assert response.status_code == 401

    def test_empty_cart(self, client: TestClient) -> None:
        response = client.get("/api/v1/cart", headers=GUEST_HEADERS)
        data = response.json()

        assert response.status_code == 200
        assert data["id"] is None
        assert data["items"] == []
        assert data["subtotal"] == 0


class TestCartItems:
    """Tests for adding, updating and removing items."""

    def test_add_item(self, client: TestClient, fake_db: FakeSupabase) -> None:
        mug = fake_db.add_product(name="Mug", price=1250, inventory_qty=5)

        response = client.post(
            "/api/v1/cart/items",
            json={"product_id": mug["id"], "quantity": 2},
            headers=GUEST_HEADERS,
        )
        data = response.json()

        assert response.status_code == 201
        assert data["item_count"] == 2
        assert data["subtotal"] == 2500
        assert data["items"][0]["name"] == "Mug"
        assert data["items"][0]["line_total"] == 2500
        assert data["expires_at"] is not None

    def test_add_beyond_stock(self, client: TestClient, fake_db: FakeSupabase) -> None:
        mug = fake_db.add_product(name="Mug", inventory_qty=3)
        client.post("/api/v1/cart/items", json={"product_id": mug["id"], "quantity": 2}, headers=GUEST_HEADERS)

        response = client.post(
            "/api/v1/cart/items",
            json={"product_id": mug["id"], "quantity": 2},
            headers=GUEST_HEADERS,
        )

        assert response.status_code == 409
        assert response.json()["error"] == "insufficient_stock"
        assert response.json()["message"] == "Only 3 items available in stock"

    def test_add_unknown_product(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/cart/items",
            json={"product_id": "00000000-0000-0000-0000-000000000000"},
            headers=GUEST_HEADERS,
        )

        assert response.status_code == 404

    def test_add_requires_positive_quantity(self, client: TestClient, fake_db: FakeSupabase) -> None:
        mug = fake_db.add_product(name="Mug")

        response = client.post(
            "/api/v1/cart/items",
            json={"product_id": mug["id"], "quantity": 0},
            headers=GUEST_HEADERS,
        )

        assert response.status_code == 422

    def test_update_remove_and_clear(self, client: TestClient, fake_db: FakeSupabase) -> None:
        mug = fake_db.add_product(name="Mug", price=1000)
        poster = fake_db.add_product(name="Poster", price=2000)
        client.post("/api/v1/cart/items", json={"product_id": mug["id"]}, headers=GUEST_HEADERS)
        client.post("/api/v1/cart/items", json={"product_id": poster["id"]}, headers=GUEST_HEADERS)

        response = client.patch(
            f"/api/v1/cart/items/{mug['id']}", json={"quantity": 3}, headers=GUEST_HEADERS
        )
        assert response.status_code == 200
        assert response.json()["subtotal"] == 5000

        response = client.delete(f"/api/v1/cart/items/{poster['id']}", headers=GUEST_HEADERS)
        assert response.json()["subtotal"] == 3000

        response = client.delete(f"/api/v1/cart/items/{poster['id']}", headers=GUEST_HEADERS)
        assert response.status_code == 200

        assert client.get("/api/v1/cart/count", headers=GUEST_HEADERS).json() == {"count": 3}

        response = client.delete("/api/v1/cart", headers=GUEST_HEADERS)
        assert response.json() == {"success": True}
        assert client.get("/api/v1/cart/count", headers=GUEST_HEADERS).json() == {"count": 0}

    def test_patch_to_zero_removes(self, client: TestClient, fake_db: FakeSupabase) -> None:
        mug = fake_db.add_product(name="Mug")
        client.post("/api/v1/cart/items", json={"product_id": mug["id"]}, headers=GUEST_HEADERS)

        response = client.patch(f"/api/v1/cart/items/{mug['id']}", json={"quantity": 0}, headers=GUEST_HEADERS)

        assert response.status_code == 200
        assert response.json()["items"] == []


class TestMergeAndValidate:
    """Tests for cart merge and validation endpoints."""

    def test_merge_guest_cart_on_sign_in(self, client: TestClient, fake_db: FakeSupabase) -> None:
        mug = fake_db.add_product(name="Mug", price=1250)
        client.post("/api/v1/cart/items", json={"product_id": mug["id"], "quantity": 2}, headers=GUEST_HEADERS)
        client.post("/api/v1/cart/items", json={"product_id": mug["id"]}, headers=bearer(USER_ID))

        response = client.post(
            "/api/v1/cart/merge",
            json={"session_id": "guest_session_1"},
            headers=bearer(USER_ID),
        )

        assert response.status_code == 200
        assert response.json()["merged"] is True
        cart = client.get("/api/v1/cart", headers=bearer(USER_ID)).json()
        assert cart["item_count"] == 3
        assert client.get("/api/v1/cart", headers=GUEST_HEADERS).json()["id"] is None

    def test_merge_without_guest_cart(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/cart/merge",
            json={"session_id": "guest_session_1"},
            headers=bearer(USER_ID),
        )

        assert response.json() == {"merged": False, "cart_id": None}

    def test_merge_requires_sign_in(self, client: TestClient) -> None:
        response = client.post("/api/v1/cart/merge", json={"session_id": "guest_session_1"}, headers=GUEST_HEADERS)

        assert response.status_code == 401

    def test_validate_reports_price_change(self, client: TestClient, fake_db: FakeSupabase) -> None:
        mug = fake_db.add_product(name="Mug", price=1250)
        client.post("/api/v1/cart/items", json={"product_id": mug["id"]}, headers=GUEST_HEADERS)
        fake_db.row("products", mug["id"])["price"] = 1500

        data = client.get("/api/v1/cart/validate", headers=GUEST_HEADERS).json()

        assert data == {
            "valid": False,
            "errors": ["Price for Mug has changed from $12.50 to $15.00"],
            "valid_item_count": 0,
        }

    def test_validate_empty_cart(self, client: TestClient) -> None:
        data = client.get("/api/v1/cart/validate", headers=GUEST_HEADERS).json()

        assert data["valid"] is False
        assert data["errors"] == ["Cart is empty"]
