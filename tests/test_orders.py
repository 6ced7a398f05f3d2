import asyncio

import pytest
from conftest import checkout, csrf_headers, paid_order, register_user

from morandi.errors import ConflictError, PaymentGatewayError, ValidationError


async def _set_status(client, admin, order_id, **payload):
    resp = await client.put(
        f"/api/orders/admin/{order_id}/status",
        json=payload,
        headers=await csrf_headers(client, admin["headers"]),
    )
    assert resp.status == 200, await resp.text()
    return await resp.json()


class TestOrderHistory:
    async def test_list_and_detail(self, client, gateway, customer, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])

        resp = await client.get("/api/orders", headers=customer["headers"])
        body = await resp.json()
        assert [row["id"] for row in body["orders"]] == [order["id"]]
        assert body["orders"][0]["items"][0]["quantity"] == 2
        assert body["pagination"]["total"] == 1

        resp = await client.get("/api/orders", params={"status": "cancelled"}, headers=customer["headers"])
        assert (await resp.json())["orders"] == []

        resp = await client.get(f"/api/orders/{order['id']}", headers=customer["headers"])
        detail = (await resp.json())["order"]
        assert detail["order_number"] == order["order_number"]
        assert detail["items"][0]["product_name"] == "Organic Cotton Sheet"

    async def test_orders_are_private(self, client, gateway, customer, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])
        other = await register_user(client, "ravi@example.com", first_name="Ravi")
        resp = await client.get(f"/api/orders/{order['id']}", headers=other["headers"])
        assert resp.status == 404
        assert (await resp.json())["code"] == "ORDER_NOT_FOUND"

    async def test_requires_login(self, client):
        resp = await client.get("/api/orders")
        assert resp.status == 401

    async def test_simple_order(self, client, customer):
        resp = await client.post(
            "/api/orders",
            json={
                "items": [{"productId": "p-1", "name": "Cushion", "price": 50, "quantity": 2}],
                "shippingAddress": {"city": "Pune"},
            },
            headers=await csrf_headers(client, customer["headers"]),
        )
        assert resp.status == 201
        order = (await resp.json())["order"]
        assert order["subtotal"] == 100.0
        assert order["total_amount"] == 118.0
        assert order["billing_address"] == {"city": "Pune"}

    async def test_invoice(self, client, gateway, customer, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])
        resp = await client.get(f"/api/orders/{order['id']}/invoice", headers=customer["headers"])
        invoice = (await resp.json())["invoice"]
        assert invoice["invoice_number"] == f"INV-{order['order_number']}"
        assert invoice["items"] == [
            {"name": "Organic Cotton Sheet", "sku": "SHEET-001", "quantity": 2, "unit_price": 100.0, "total_price": 200.0}
        ]
        assert invoice["total_amount"] == 236.0

    async def test_reorder_fills_cart(self, client, gateway, customer, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])
        resp = await client.post(
            f"/api/orders/{order['id']}/reorder",
            json={},
            headers=await csrf_headers(client, customer["headers"]),
        )
        body = await resp.json()
        assert body["message"] == "1 item(s) added to cart"
        assert body["skipped"] == []
        assert body["cart"]["totals"]["itemCount"] == 2


class TestCancellation:
    async def test_cancel_cod_order_restocks(self, client, server, customer, make_product):
        product = await make_product()
        resp = await checkout(client, product, customer["headers"], payment_method="cod")
        order = (await resp.json())["order"]
        assert (await server.catalog.get_product(product["id"]))["stock_quantity"] == 8

        resp = await client.post(
            f"/api/orders/{order['id']}/cancel",
            json={"reason": "Ordered by mistake"},
            headers=await csrf_headers(client, customer["headers"]),
        )
        assert resp.status == 200
        cancelled = (await resp.json())["order"]
        assert cancelled["status"] == "cancelled"
        assert cancelled["cancellation_reason"] == "Ordered by mistake"
        assert cancelled["stock_reserved"] is False
        assert (await server.catalog.get_product(product["id"]))["stock_quantity"] == 10

    async def test_cancel_paid_order_refunds(self, client, server, gateway, customer, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])
        resp = await client.post(
            f"/api/orders/{order['id']}/cancel",
            json={},
            headers=await csrf_headers(client, customer["headers"]),
        )
        cancelled = (await resp.json())["order"]
        assert cancelled["status"] == "cancelled"
        assert cancelled["payment_status"] == "refunded"
        assert gateway.refunds[0]["amount"] == 23600
        assert (await server.catalog.get_product(product["id"]))["stock_quantity"] == 10

    async def test_shipped_order_cannot_be_cancelled(self, client, gateway, customer, admin, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])
        await _set_status(client, admin, order["id"], status="shipped")
        resp = await client.post(
            f"/api/orders/{order['id']}/cancel",
            json={},
            headers=await csrf_headers(client, customer["headers"]),
        )
        assert resp.status == 400
        assert (await resp.json())["code"] == "ORDER_NOT_CANCELLABLE"


class TestAdminOrders:
    async def test_status_update_with_tracking(self, client, server, gateway, customer, admin, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])
        body = await _set_status(
            client,
            admin,
            order["id"],
            status="shipped",
            location="Bengaluru hub",
            trackingNumber="AWB123",
            courierName="Delhivery",
        )
        assert body["order"]["status"] == "shipped"
        assert body["order"]["shipped_at"]
        assert body["tracking"]["courier_tracking_url"] == "https://www.delhivery.com/track/package/AWB123"

        resp = await client.get(f"/api/orders/{order['id']}/tracking", headers=customer["headers"])
        tracking = await resp.json()
        assert tracking["order"]["status"] == "shipped"
        assert tracking["tracking"]["tracking_number"] == "AWB123"
        assert [row["status"] for row in tracking["timeline"]] == ["pending", "confirmed", "shipped"]
        assert tracking["timeline"][-1]["location"] == "Bengaluru hub"

        notifications = await server.storage.find("order_notifications", order_id=order["id"])
        assert notifications[0]["message"] == f"Your order {order['order_number']} is now shipped"

    async def test_patch_status_and_invalid_status(self, client, gateway, customer, admin, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])
        resp = await client.patch(
            f"/api/orders/{order['id']}/status",
            json={"status": "processing"},
            headers=await csrf_headers(client, admin["headers"]),
        )
        assert (await resp.json())["order"]["status"] == "processing"

        resp = await client.patch(
            f"/api/orders/{order['id']}/status",
            json={"status": "lost"},
            headers=await csrf_headers(client, admin["headers"]),
        )
        assert resp.status == 400
        assert (await resp.json())["code"] == "INVALID_STATUS"

    async def test_customer_cannot_update_status(self, client, gateway, customer, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])
        resp = await client.put(
            f"/api/orders/admin/{order['id']}/status",
            json={"status": "shipped"},
            headers=await csrf_headers(client, customer["headers"]),
        )
        assert resp.status == 403

    async def test_admin_list_and_analytics(self, client, gateway, customer, admin, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])
        await checkout(client, product, customer["headers"], quantity=1)

        resp = await client.get("/api/orders/admin/all", headers=admin["headers"])
        assert (await resp.json())["pagination"]["total"] == 2

        resp = await client.get(
            "/api/orders/admin/all",
            params={"search": order["order_number"].lower()},
            headers=admin["headers"],
        )
        assert [row["id"] for row in (await resp.json())["orders"]] == [order["id"]]

        resp = await client.get("/api/orders/admin/analytics", headers=admin["headers"])
        analytics = (await resp.json())["analytics"]
        assert analytics["totalOrders"] == 2
        assert analytics["paidOrders"] == 1
        assert analytics["totalRevenue"] == 236.0
        assert analytics["averageOrderValue"] == 236.0
        assert analytics["statusDistribution"] == {"confirmed": 1, "pending": 1}

    async def test_couriers(self, client):
        resp = await client.get("/api/orders/couriers")
        assert [c["id"] for c in (await resp.json())["couriers"]] == ["delhivery", "bluedart"]


class TestRefunds:
    async def test_partial_then_full_refund(self, client, server, gateway, customer, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])
        url = "/api/orders/payment/refund"

        resp = await client.post(
            url,
            json={"order_id": order["id"], "amount": 100, "reason": "Damaged"},
            headers=await csrf_headers(client, customer["headers"]),
        )
        body = await resp.json()
        assert body["amount"] == 100.0
        assert body["order"]["payment_status"] == "partially_refunded"

        resp = await client.post(
            url,
            json={"order_id": order["id"], "amount": 500},
            headers=await csrf_headers(client, customer["headers"]),
        )
        assert resp.status == 400
        assert (await resp.json())["code"] == "INVALID_REFUND_AMOUNT"

        resp = await client.post(url, json={"order_id": order["id"]}, headers=await csrf_headers(client, customer["headers"]))
        body = await resp.json()
        assert body["amount"] == 136.0
        assert body["order"]["payment_status"] == "refunded"
        assert body["order"]["status"] == "cancelled"
        assert (await server.catalog.get_product(product["id"]))["stock_quantity"] == 8

    async def test_unpaid_order_is_not_refundable(self, client, customer, make_product):
        product = await make_product()
        resp = await checkout(client, product, customer["headers"])
        order = (await resp.json())["order"]
        resp = await client.post(
            "/api/orders/payment/refund",
            json={"order_id": order["id"]},
            headers=await csrf_headers(client, customer["headers"]),
        )
        assert resp.status == 409
        assert (await resp.json())["code"] == "NOT_REFUNDABLE"


class TestReturns:
    async def test_lookups(self, client):
        resp = await client.get("/api/orders/returns/reasons")
        assert "Item damaged" in (await resp.json())["reasons"]
        resp = await client.get("/api/orders/returns/refund-methods")
        assert (await resp.json())["methods"][0]["id"] == "original_payment_method"

    async def test_return_requires_delivery(self, client, gateway, customer, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])
        resp = await client.post(
            f"/api/orders/{order['id']}/return",
            json={"reason": "Item damaged"},
            headers=await csrf_headers(client, customer["headers"]),
        )
        assert resp.status == 400
        assert (await resp.json())["code"] == "ORDER_NOT_RETURNABLE"

    async def test_return_flow(self, client, server, gateway, customer, admin, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])
        await _set_status(client, admin, order["id"], status="delivered")

        resp = await client.get(f"/api/orders/{order['id']}/return", headers=customer["headers"])
        assert resp.status == 404

        resp = await client.post(
            f"/api/orders/{order['id']}/return",
            json={"reason": "Item damaged", "description": "Torn seam"},
            headers=await csrf_headers(client, customer["headers"]),
        )
        assert resp.status == 201
        request = (await resp.json())["returnRequest"]
        assert request["status"] == "pending"
        assert request["refund_amount"] == 236.0

        resp = await client.post(
            f"/api/orders/{order['id']}/return",
            json={"reason": "Item damaged"},
            headers=await csrf_headers(client, customer["headers"]),
        )
        assert resp.status == 409
        assert (await resp.json())["code"] == "RETURN_EXISTS"

        resp = await client.get("/api/orders/returns/list", headers=customer["headers"])
        assert [row["id"] for row in (await resp.json())["returns"]] == [request["id"]]

        resp = await client.put(
            f"/api/orders/admin/returns/{request['id']}/status",
            json={"status": "approved", "adminNotes": "Photos checked"},
            headers=await csrf_headers(client, admin["headers"]),
        )
        assert resp.status == 200
        processed = (await resp.json())["returnRequest"]
        assert processed["status"] == "processed"
        assert processed["refund_reference"] == "rfnd_test_1"
        assert processed["admin_notes"] == "Photos checked"

        stored = await server.storage.get("orders", order["id"])
        assert stored["status"] == "returned"
        assert stored["payment_status"] == "refunded"

    async def test_reject_return(self, client, gateway, customer, admin, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])
        await _set_status(client, admin, order["id"], status="delivered")
        resp = await client.post(
            f"/api/orders/{order['id']}/return",
            json={"reason": "Changed my mind", "refundMethod": "store_credit"},
            headers=await csrf_headers(client, customer["headers"]),
        )
        request = (await resp.json())["returnRequest"]

        resp = await client.put(
            f"/api/orders/admin/returns/{request['id']}/status",
            json={"status": "rejected"},
            headers=await csrf_headers(client, admin["headers"]),
        )
        assert (await resp.json())["returnRequest"]["status"] == "rejected"
        assert gateway.refunds == []


async def _delivered_return(client, gateway, customer, admin, make_product):
    product = await make_product()
    order = await paid_order(client, gateway, product, customer["headers"])
    await _set_status(client, admin, order["id"], status="delivered")
    resp = await client.post(
        f"/api/orders/{order['id']}/return",
        json={"reason": "Item damaged"},
        headers=await csrf_headers(client, customer["headers"]),
    )
    assert resp.status == 201, await resp.text()
    return order, (await resp.json())["returnRequest"]


class TestReturnTransitions:
    async def test_processed_return_cannot_be_approved_again(self, client, gateway, customer, admin, make_product):
        _, request = await _delivered_return(client, gateway, customer, admin, make_product)
        url = f"/api/orders/admin/returns/{request['id']}/status"
        resp = await client.put(url, json={"status": "approved"}, headers=await csrf_headers(client, admin["headers"]))
        assert (await resp.json())["returnRequest"]["status"] == "processed"

        resp = await client.put(url, json={"status": "approved"}, headers=await csrf_headers(client, admin["headers"]))
        assert resp.status == 400
        assert (await resp.json())["code"] == "INVALID_STATUS_TRANSITION"
        assert len(gateway.refunds) == 1

    async def test_completed_and_rejected_are_final(self, client, gateway, customer, admin, make_product):
        _, request = await _delivered_return(client, gateway, customer, admin, make_product)
        url = f"/api/orders/admin/returns/{request['id']}/status"
        for status in ("approved", "completed"):
            resp = await client.put(url, json={"status": status}, headers=await csrf_headers(client, admin["headers"]))
            assert resp.status == 200, await resp.text()

        for status in ("approved", "pending", "rejected"):
            resp = await client.put(url, json={"status": status}, headers=await csrf_headers(client, admin["headers"]))
            assert resp.status == 400
            assert (await resp.json())["code"] == "INVALID_STATUS_TRANSITION"
        assert len(gateway.refunds) == 1

    async def test_failed_refund_leaves_return_pending(self, client, server, gateway, customer, admin, make_product):
        order, request = await _delivered_return(client, gateway, customer, admin, make_product)
        gateway.refund_error = PaymentGatewayError("Payment gateway unavailable")
        admin_claims = {"userId": admin["user"]["id"], "role": "admin"}
        with pytest.raises(PaymentGatewayError):
            await server.returns.update_return_status(request["id"], "approved", admin_claims)

        assert (await server.returns.get_order_return(order["id"]))["status"] == "pending"
        assert await server.payments.refunded_amount(order["id"]) == 0.0

        gateway.refund_error = None
        processed = await server.returns.update_return_status(request["id"], "approved", admin_claims)
        assert processed["status"] == "processed"


class TestConcurrentMoneyMovement:
    async def test_concurrent_cancels_refund_and_restock_once(self, client, server, gateway, customer, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])
        assert (await server.catalog.get_product(product["id"]))["stock_quantity"] == 8
        user = {"userId": customer["user"]["id"], "role": "user"}

        gateway.delay = 0.05
        results = await asyncio.gather(
            server.orders.cancel_order(order["id"], user),
            server.orders.cancel_order(order["id"], user),
            return_exceptions=True,
        )

        cancelled = [result for result in results if isinstance(result, dict)]
        failures = [result for result in results if isinstance(result, Exception)]
        assert len(cancelled) == 1
        assert cancelled[0]["status"] == "cancelled"
        assert len(failures) == 1
        assert isinstance(failures[0], (ConflictError, ValidationError))
        assert [refund["amount"] for refund in gateway.refunds] == [23600]
        assert (await server.catalog.get_product(product["id"]))["stock_quantity"] == 10

    async def test_concurrent_full_refunds_pay_out_once(self, client, server, gateway, customer, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])

        gateway.delay = 0.05
        results = await asyncio.gather(
            server.payments.refund_payment(order["id"], None),
            server.payments.refund_payment(order["id"], None),
            return_exceptions=True,
        )

        refunded = [result for result in results if isinstance(result, dict)]
        failures = [result for result in results if isinstance(result, Exception)]
        assert len(refunded) == 1
        assert refunded[0]["amount"] == 236.0
        assert len(failures) == 1
        assert failures[0].code == "INVALID_REFUND_AMOUNT"
        assert len(gateway.refunds) == 1
        assert await server.payments.refunded_amount(order["id"]) == 236.0

    async def test_failed_gateway_refund_releases_the_amount(self, client, server, gateway, customer, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])

        gateway.refund_error = PaymentGatewayError("Payment gateway unavailable")
        with pytest.raises(PaymentGatewayError):
            await server.payments.refund_payment(order["id"], 100)
        assert await server.payments.refunded_amount(order["id"]) == 0.0
        assert (await server.storage.get("orders", order["id"]))["payment_status"] == "paid"

        gateway.refund_error = None
        result = await server.payments.refund_payment(order["id"], None)
        assert result["amount"] == 236.0

    async def test_failed_cancel_refund_allows_retry(self, client, server, gateway, customer, make_product):
        product = await make_product()
        order = await paid_order(client, gateway, product, customer["headers"])
        user = {"userId": customer["user"]["id"], "role": "user"}

        gateway.refund_error = PaymentGatewayError("Payment gateway unavailable")
        with pytest.raises(PaymentGatewayError):
            await server.orders.cancel_order(order["id"], user)
        stored = await server.storage.get("orders", order["id"])
        assert stored["cancelling"] is False
        assert stored["status"] == "confirmed"

        gateway.refund_error = None
        cancelled = await server.orders.cancel_order(order["id"], user)
        assert cancelled["status"] == "cancelled"
        assert (await server.catalog.get_product(product["id"]))["stock_quantity"] == 10

    async def test_double_return_approval_refunds_once(self, client, server, gateway, customer, admin, make_product):
        order, request = await _delivered_return(client, gateway, customer, admin, make_product)
        admin_claims = {"userId": admin["user"]["id"], "role": "admin"}

        gateway.delay = 0.05
        results = await asyncio.gather(
            server.returns.update_return_status(request["id"], "approved", admin_claims),
            server.returns.update_return_status(request["id"], "approved", admin_claims),
            return_exceptions=True,
        )

        processed = [result for result in results if isinstance(result, dict)]
        failures = [result for result in results if isinstance(result, Exception)]
        assert [result["status"] for result in processed] == ["processed"]
        assert len(failures) == 1
        assert failures[0].code == "INVALID_STATUS_TRANSITION"
        assert len(gateway.refunds) == 1
        assert await server.payments.refunded_amount(order["id"]) == 236.0
