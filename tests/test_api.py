import pytest
from fastapi.testclient import TestClient

from database import PRODUCTS
from main import create_app

ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


@pytest.fixture
def shopper(make_user):
    user = make_user()
    return {"X-User-Id": str(user["_id"]), "X-User-Role": "user"}


def test_root(client):
    assert client.get("/").json() == {"message": "Vape Shop API running"}


def test_health_reports_database_and_clover(client):
    body = client.get("/test").json()
    assert body["database"] == "✅ Available"
    assert body["clover_push"] == "off"


def test_unknown_route_uses_error_envelope(client):
    response = client.get("/api/nowhere")
    assert response.status_code == 404
    assert response.json()["success"] is False


class TestAccessControl:

    def test_admin_route_without_identity(self, client):
        response = client.post("/api/category/create", json={"name": "Vape"})
        assert response.status_code == 401
        assert response.json() == {"success": False, "message": "Not authenticated"}

    def test_admin_route_as_user(self, client, shopper):
        response = client.post("/api/category/create", json={"name": "Vape"}, headers=shopper)
        assert response.status_code == 403
        assert response.json() == {"success": False, "message": "Admin access required"}

    def test_user_route_as_admin(self, client):
        assert client.get("/api/order/userOrders", headers=ADMIN).status_code == 403

    def test_public_listing_needs_no_identity(self, client):
        assert client.get("/api/product/list").status_code == 200


class TestProducts:

    def test_add_product_via_form(self, client, db, images):
        response = client.post(
            "/api/product/add",
            headers=ADMIN,
            data={"productId": "P-1", "name": "Kiwi Ice", "price": "15", "variants": '[{"size": "10ml", "price": 15}]'},
            files={"image1": ("kiwi.jpg", b"\xff\xd8", "image/jpeg")},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["product"]["images"][0]["url"] == images.uploaded[0]["url"]
        assert db[PRODUCTS].count_documents({"productId": "P-1"}) == 1

    def test_add_product_lists_every_error(self, client):
        response = client.post("/api/product/add", headers=ADMIN, data={"price": "-1"})

        assert response.status_code == 400
        errors = response.json()["errors"]
        assert any(e.startswith("productId") for e in errors)
        assert any(e.startswith("name") for e in errors)
        assert any(e.startswith("price") for e in errors)
        assert any(e.startswith("images") for e in errors)

    def test_update_reports_notified_count(self, client, make_product, make_user):
        product = make_product(stockCount=0, inStock=False)
        make_user(notifications_waitlist={str(product["_id"]): True})

        response = client.post(f"/api/product/update/{product['_id']}", headers=ADMIN, data={"stockCount": "4"})

        assert response.status_code == 200
        assert response.json()["notified"] == 1
        assert response.json()["product"]["inStock"] is True

    def test_single_product_not_found(self, client):
        response = client.get("/api/product/000000000000000000000000")
        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "Product not found"}

    def test_remove_product(self, client, db, make_product):
        product = make_product()
        assert client.delete(f"/api/product/{product['_id']}", headers=ADMIN).json()["success"] is True
        assert db[PRODUCTS].count_documents({}) == 0

    def test_bulk_delete_requires_ids(self, client):
        response = client.post("/api/product/bulk-delete", headers=ADMIN, json={"ids": []})
        assert response.status_code == 400
        assert response.json()["message"] == "Validation failed"

    def test_export_then_import(self, client, db, make_product):
        make_product(productId="EX-1", name="Export Me", price=9.5)

        exported = client.get("/api/product/export", headers=ADMIN)
        assert exported.headers["content-type"].startswith("text/csv")
        assert "EX-1" in exported.text

        db[PRODUCTS].delete_many({})
        response = client.post("/api/product/import", headers=ADMIN,
                               files={"file": ("products.csv", exported.content, "text/csv")})

        assert response.json()["created"] == 1
        assert db[PRODUCTS].find_one({"productId": "EX-1"})["price"] == 9.5

    def test_import_without_file(self, client):
        response = client.post("/api/product/import", headers=ADMIN, data={"other": "x"})
        assert response.status_code == 400


class TestCategoriesApi:

    def test_create_and_list(self, client):
        created = client.post("/api/category/create", headers=ADMIN, json={"name": "Vape"})
        assert created.status_code == 201

        categories = client.get("/api/category/list").json()["categories"]
        assert [(c["name"], c["items"]) for c in categories] == [("Vape", 0)]

    def test_duplicate_name(self, client):
        client.post("/api/category/create", headers=ADMIN, json={"name": "Vape"})
        response = client.post("/api/category/create", headers=ADMIN, json={"name": "Vape"})
        assert response.status_code == 400


class TestOrdersApi:

    def order_body(self, product):
        return {
            "items": [{"productId": str(product["_id"]), "name": "Mango Ice", "quantity": 1, "price": 19.99}],
            "amount": 19.99,
            "address": {"street": "1 Main", "city": "Austin", "state": "TX", "zip": "73301", "country": "US"},
            "phone": "555",
        }

    def test_place_cod_and_list_mine(self, client, shopper, make_product):
        product = make_product()
        placed = client.post("/api/order/place-cod", headers=shopper, json=self.order_body(product))

        assert placed.status_code == 201
        assert placed.json()["order"]["payment"] is False
        orders = client.get("/api/order/userOrders", headers=shopper).json()["orders"]
        assert [o["_id"] for o in orders] == [placed.json()["order"]["_id"]]

    def test_invalid_status_value(self, client, shopper, make_product):
        order = client.post("/api/order/place-cod", headers=shopper, json=self.order_body(make_product())).json()["order"]

        response = client.put("/api/order/status", headers=ADMIN, json={"orderId": order["_id"], "status": "Lost"})

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid status value."

    def test_status_update(self, client, shopper, make_product):
        order = client.post("/api/order/place-cod", headers=shopper, json=self.order_body(make_product())).json()["order"]
        response = client.put("/api/order/status", headers=ADMIN, json={"orderId": order["_id"], "status": "Processing"})
        assert response.json()["order"]["status"] == "Processing"

    def test_malformed_body(self, client, shopper):
        response = client.post("/api/order/place-cod", headers=shopper, json={"items": "nope"})
        assert response.status_code == 400
        assert response.json()["errors"]

    def test_verify_unpaid_checkout(self, client, clover, shopper, make_product):
        clover.create_hosted_checkout_session.return_value = {"href": "https://pay.test", "checkoutSessionId": "S1"}
        placed = client.post("/api/order/place-clover", headers={**shopper, "Origin": "http://shop.test"},
                             json=self.order_body(make_product())).json()
        assert placed["session_url"] == "https://pay.test"

        clover.get_hosted_checkout_session.return_value = {"status": "OPEN"}
        response = client.post("/api/order/verify-clover", headers=shopper,
                               json={"orderId": placed["orderId"], "success": "true"})
        assert response.json() == {"success": False, "message": "Payment not completed"}


class TestCloverApi:

    def test_sync_products_reports_counts(self, client, clover):
        clover.list_remote_products.return_value = [{"id": "CLV1", "name": "Kiwi", "price": 1500}]
        body = client.post("/api/clover/sync-products", headers=ADMIN).json()
        assert (body["synced"], body["created"], body["failed"]) == (1, 1, 0)

    def test_remote_orders(self, client, clover):
        clover.list_remote_orders.return_value = [{"id": "O1", "state": "OPEN"}]
        assert client.get("/api/clover/orders", headers=ADMIN).json()["orders"] == [{"id": "O1", "state": "OPEN"}]


class TestWebhookApi:

    def test_secret_is_enforced(self, client, settings):
        settings.clover_webhook_secret = "s3cret"
        assert client.post("/api/clover/webhook", json={"verificationCode": "x"}).status_code == 401

        response = client.post("/api/clover/webhook", json={"verificationCode": "x"},
                               headers={"X-Clover-Auth": "s3cret"})
        assert response.json()["verified"] is True


class TestNotificationsApi:

    def test_waitlist_round_trip(self, client, shopper, make_product):
        product = make_product(stockCount=0)
        url = f"/api/user/waitlist/{product['_id']}"

        assert client.post(url, headers=shopper).status_code == 200
        assert client.get(url, headers=shopper).json()["subscribed"] is True
        assert client.delete(url, headers=shopper).status_code == 200
        assert client.get(url, headers=shopper).json()["subscribed"] is False

    def test_empty_inbox(self, client, shopper):
        body = client.get("/api/user/notifications", headers=shopper).json()
        assert body == {"success": True, "notifications": [], "unreadCount": 0}
