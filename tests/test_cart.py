import pytest

from morandi.errors import ValidationError
from morandi.services.cart import calculate_totals, validate_quantity


class TestTotals:
    def test_flat_shipping_below_threshold(self):
        totals = calculate_totals([{"product": {"price": 20}, "quantity": 1}])
        assert totals == {"subtotal": 20.0, "tax": 1.6, "shipping": 5.99, "total": 27.59, "itemCount": 1}

    def test_free_shipping_above_threshold(self):
        totals = calculate_totals([{"product": {"price": 100, "sale_price": 60}, "quantity": 2}])
        assert totals["subtotal"] == 120.0
        assert totals["shipping"] == 0.0
        assert totals["total"] == 129.6

    def test_empty_cart(self):
        assert calculate_totals([]) == {"subtotal": 0.0, "tax": 0.0, "shipping": 0.0, "total": 0.0, "itemCount": 0}

    def test_quantity_bounds(self):
        assert validate_quantity("3") == 3
        for bad in (0, 100, "x", None):
            with pytest.raises(ValidationError):
                validate_quantity(bad)


class TestGuestCart:
    async def test_cookie_cart(self, client, make_product):
        product = await make_product()
        resp = await client.post("/api/cart/items", json={"productId": product["id"], "quantity": 2})
        assert resp.status == 201
        assert "sessionId" in resp.cookies

        resp = await client.post("/api/cart/items", json={"productId": product["id"], "quantity": 1})
        assert (await resp.json())["item"]["quantity"] == 3

        resp = await client.get("/api/cart")
        body = await resp.json()
        assert len(body["items"]) == 1
        assert body["items"][0]["product"]["name"] == "Organic Cotton Sheet"
        assert body["totals"] == {"subtotal": 300.0, "tax": 24.0, "shipping": 0.0, "total": 324.0, "itemCount": 3}

        resp = await client.get("/api/cart/count")
        assert (await resp.json())["count"] == 3

    async def test_update_and_remove(self, client, make_product):
        product = await make_product()
        resp = await client.post("/api/cart/items", json={"productId": product["id"], "quantity": 1})
        item_id = (await resp.json())["item"]["id"]

        resp = await client.put(f"/api/cart/items/{item_id}", json={"quantity": 4})
        assert (await resp.json())["item"]["quantity"] == 4

        resp = await client.put(f"/api/cart/items/{item_id}", json={"quantity": 11})
        assert resp.status == 400
        assert (await resp.json())["code"] == "INSUFFICIENT_STOCK"

        resp = await client.delete(f"/api/cart/items/{item_id}")
        assert resp.status == 200
        resp = await client.delete(f"/api/cart/items/{item_id}")
        assert resp.status == 404
        assert (await resp.json())["code"] == "CART_ITEM_NOT_FOUND"

    async def test_stock_and_quantity_checks(self, client, make_product):
        product = await make_product(stock_quantity=2)
        resp = await client.post("/api/cart/items", json={"productId": product["id"], "quantity": 3})
        assert resp.status == 400
        assert (await resp.json())["code"] == "INSUFFICIENT_STOCK"

        resp = await client.post("/api/cart/items", json={"productId": product["id"], "quantity": 0})
        assert resp.status == 400

        resp = await client.post("/api/cart/items", json={"productId": "missing", "quantity": 1})
        assert resp.status == 404
        assert (await resp.json())["code"] == "PRODUCT_NOT_FOUND"

    async def test_clear(self, client, make_product):
        product = await make_product()
        await client.post("/api/cart/items", json={"productId": product["id"], "quantity": 1})
        resp = await client.post("/api/cart/clear")
        assert (await resp.json())["removed"] == 1
        resp = await client.get("/api/cart/count")
        assert (await resp.json())["count"] == 0


class TestUserCart:
    async def test_user_cart_is_separate_from_guest_cart(self, client, customer, make_product):
        product = await make_product()
        await client.post("/api/cart/items", json={"productId": product["id"], "quantity": 1})
        resp = await client.get("/api/cart/count", headers=customer["headers"])
        assert (await resp.json())["count"] == 0

    async def test_merge_guest_cart(self, client, customer, make_product):
        sheet = await make_product(stock_quantity=5)
        towel = await make_product(name="Bath Towel", sku="T-1", category_id="cat-bath")

        await client.post("/api/cart/items", json={"productId": sheet["id"], "quantity": 2}, headers=customer["headers"])
        await client.post("/api/cart/items", json={"productId": sheet["id"], "quantity": 4})
        await client.post("/api/cart/items", json={"productId": towel["id"], "quantity": 1})

        resp = await client.post("/api/cart/merge", headers=customer["headers"])
        assert resp.status == 200
        body = await resp.json()
        assert body["mergedItems"] == 2
        quantities = {item["product_id"]: item["quantity"] for item in body["items"]}
        assert quantities == {sheet["id"]: 5, towel["id"]: 1}

        resp = await client.get("/api/cart/count")
        assert (await resp.json())["count"] == 0

    async def test_merge_requires_login(self, client):
        resp = await client.post("/api/cart/merge")
        assert resp.status == 401
