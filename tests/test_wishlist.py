class TestWishlist:
    async def test_requires_login(self, client):
        resp = await client.get("/api/wishlist")
        assert resp.status == 401

    async def test_add_list_and_check(self, client, customer, make_product):
        product = await make_product()
        resp = await client.post("/api/wishlist/items", json={"productId": product["id"]}, headers=customer["headers"])
        assert resp.status == 201

        resp = await client.post("/api/wishlist/items", json={"productId": product["id"]}, headers=customer["headers"])
        assert resp.status == 409
        assert (await resp.json())["code"] == "ALREADY_IN_WISHLIST"

        resp = await client.get("/api/wishlist", headers=customer["headers"])
        body = await resp.json()
        assert body["items"][0]["product"]["name"] == "Organic Cotton Sheet"
        assert body["pagination"]["limit"] == 20

        resp = await client.get(f"/api/wishlist/check/{product['id']}", headers=customer["headers"])
        assert (await resp.json())["inWishlist"] is True
        resp = await client.get("/api/wishlist/check/other", headers=customer["headers"])
        assert (await resp.json())["inWishlist"] is False

        resp = await client.get("/api/wishlist/count", headers=customer["headers"])
        assert (await resp.json())["count"] == 1

    async def test_unknown_product(self, client, customer):
        resp = await client.post("/api/wishlist/items", json={"productId": "missing"}, headers=customer["headers"])
        assert resp.status == 404

    async def test_remove(self, client, customer, make_product):
        product = await make_product()
        await client.post("/api/wishlist/items", json={"productId": product["id"]}, headers=customer["headers"])
        resp = await client.delete("/api/wishlist/items", json={"productId": product["id"]}, headers=customer["headers"])
        assert resp.status == 200
        resp = await client.delete("/api/wishlist/items", json={"productId": product["id"]}, headers=customer["headers"])
        assert resp.status == 404
        assert (await resp.json())["code"] == "NOT_IN_WISHLIST"

    async def test_move_to_cart(self, client, customer, make_product):
        product = await make_product(stock_quantity=3)
        await client.post("/api/wishlist/items", json={"productId": product["id"]}, headers=customer["headers"])
        resp = await client.post(
            "/api/wishlist/items/move",
            json={"productId": product["id"], "quantity": 5},
            headers=customer["headers"],
        )
        assert resp.status == 200
        assert (await resp.json())["cartItem"]["quantity"] == 3

        resp = await client.get("/api/wishlist/count", headers=customer["headers"])
        assert (await resp.json())["count"] == 0
        resp = await client.get("/api/cart/count", headers=customer["headers"])
        assert (await resp.json())["count"] == 3

    async def test_move_out_of_stock_product(self, client, customer, make_product):
        product = await make_product(stock_quantity=0)
        await client.post("/api/wishlist/items", json={"productId": product["id"]}, headers=customer["headers"])
        resp = await client.post("/api/wishlist/items/move", json={"productId": product["id"]}, headers=customer["headers"])
        assert resp.status == 400
        assert (await resp.json())["code"] == "PRODUCT_UNAVAILABLE"
        resp = await client.get("/api/wishlist/count", headers=customer["headers"])
        assert (await resp.json())["count"] == 1

    async def test_clear(self, client, customer, make_product):
        first = await make_product()
        second = await make_product(name="Bath Towel", sku="T-1")
        for product in (first, second):
            await client.post("/api/wishlist/items", json={"productId": product["id"]}, headers=customer["headers"])
        resp = await client.delete("/api/wishlist/clear", headers=customer["headers"])
        assert (await resp.json())["removed"] == 2
