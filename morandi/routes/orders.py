from aiohttp import web

from ..errors import NotFoundError, ValidationError
from ..middleware.auth import current_user, require_admin, require_user
from ..utils.helpers import to_float
from .base import BaseRoutes


class OrderRoutes(BaseRoutes):
    """Checkout, payment, order history, tracking and returns."""

    prefix = "/api/orders"

    def register(self, router: web.UrlDispatcher) -> None:
        router.add_post(self.path("/checkout/init"), self.checkout_init)
        router.add_get(self.path("/shipping/methods"), self.shipping_methods)
        router.add_post(self.path("/shipping/calculate"), self.shipping_calculate)
        router.add_get(self.path("/payment/methods"), self.payment_methods)
        router.add_post(self.path("/payment/verify"), self.payment_verify)
        router.add_post(self.path("/payment/refund"), self.payment_refund)
        router.add_get(self.path("/couriers"), self.couriers)

        router.add_get(self.path("/returns/list"), self.list_returns)
        router.add_get(self.path("/returns/reasons"), self.return_reasons)
        router.add_get(self.path("/returns/refund-methods"), self.refund_methods)

        router.add_get(self.path("/admin/all"), self.admin_all)
        router.add_get(self.path("/admin/analytics"), self.admin_analytics)
        router.add_put(self.path("/admin/returns/{return_id}/status"), self.admin_return_status)
        router.add_put(self.path("/admin/{order_id}/status"), self.admin_status)

        router.add_get(self.path(), self.list_orders)
        router.add_post(self.path(), self.create_order)
        router.add_get(self.path("/{order_id}"), self.get_order)
        router.add_patch(self.path("/{order_id}/status"), self.admin_status)
        router.add_get(self.path("/{order_id}/tracking"), self.tracking)
        router.add_post(self.path("/{order_id}/cancel"), self.cancel)
        router.add_post(self.path("/{order_id}/return"), self.create_return)
        router.add_get(self.path("/{order_id}/return"), self.get_return)
        router.add_post(self.path("/{order_id}/reorder"), self.reorder)
        router.add_get(self.path("/{order_id}/invoice"), self.invoice)

    async def checkout_init(self, request: web.Request):
        payload = await self.safe_json(request)
        result = await self.server.checkout.initialize_checkout(payload, current_user(request))
        return self.ok(status=201, message="Checkout initialized", **result)

    async def shipping_methods(self, request: web.Request):
        return self.ok(methods=await self.server.checkout.get_shipping_methods())

    async def shipping_calculate(self, request: web.Request):
        payload = await self.safe_json(request)
        items = payload.get("items")
        method_id = str(payload.get("shipping_method_id") or payload.get("shippingMethodId") or "")
        if not isinstance(items, list) or not method_id:
            raise ValidationError("items and shipping_method_id are required")
        amount = await self.server.checkout.calculate_shipping(items, method_id)
        return self.ok(shipping_amount=amount)

    async def payment_methods(self, request: web.Request):
        return self.ok(methods=self.server.payments.get_payment_methods())

    async def payment_verify(self, request: web.Request):
        payload = await self.safe_json(request)
        result = await self.server.checkout.verify_payment(payload, current_user(request))
        return self.ok(message="Payment verified successfully", **result)

    async def payment_refund(self, request: web.Request):
        user = require_user(request)
        payload = await self.safe_json(request)
        order_id = str(payload.get("order_id") or "")
        if not order_id:
            raise ValidationError("order_id is required")
        amount = to_float(payload.get("amount"), default=None)
        result = await self.server.payments.refund_payment(order_id, amount, str(payload.get("reason") or ""), user)
        return self.ok(message="Refund processed successfully", **result)

    async def couriers(self, request: web.Request):
        return self.ok(couriers=self.server.tracking.available_couriers())

    async def list_orders(self, request: web.Request):
        user = require_user(request)
        result = await self.server.orders.list_user_orders(
            user["userId"],
            self.query_int(request, "page", 1),
            self.query_int(request, "limit", 10),
            request.query.get("status", ""),
        )
        return self.ok(**result)

    async def create_order(self, request: web.Request):
        user = require_user(request)
        payload = await self.safe_json(request)
        result = await self.server.checkout.create_simple_order(payload, user)
        return self.ok(status=201, message="Order created successfully", **result)

    async def get_order(self, request: web.Request):
        user = require_user(request)
        order = await self.server.orders.get_order_details(request.match_info["order_id"], user)
        return self.ok(order=order)

    async def tracking(self, request: web.Request):
        user = require_user(request)
        order = await self.server.orders.get_owned_order(request.match_info["order_id"], user)
        return self.ok(**await self.server.tracking.get_order_tracking(order["id"]))

    async def cancel(self, request: web.Request):
        user = require_user(request)
        payload = await self.safe_json(request)
        order = await self.server.orders.cancel_order(request.match_info["order_id"], user, str(payload.get("reason") or ""))
        return self.ok(message="Order cancelled successfully", order=order)

    async def create_return(self, request: web.Request):
        user = require_user(request)
        payload = await self.safe_json(request)
        order = await self.server.orders.get_owned_order(request.match_info["order_id"], user)
        created = await self.server.returns.create_return_request(order, user["userId"], payload)
        return self.ok(status=201, message="Return request created successfully", returnRequest=created)

    async def get_return(self, request: web.Request):
        user = require_user(request)
        order = await self.server.orders.get_owned_order(request.match_info["order_id"], user)
        found = await self.server.returns.get_order_return(order["id"])
        if found is None:
            raise NotFoundError("No return request found for this order", code="RETURN_NOT_FOUND")
        return self.ok(returnRequest=found)

    async def list_returns(self, request: web.Request):
        user = require_user(request)
        return self.ok(returns=await self.server.returns.get_user_returns(user["userId"]))

    async def return_reasons(self, request: web.Request):
        return self.ok(reasons=self.server.returns.return_reasons())

    async def refund_methods(self, request: web.Request):
        return self.ok(methods=self.server.returns.refund_methods())

    async def reorder(self, request: web.Request):
        user = require_user(request)
        result = await self.server.orders.reorder(request.match_info["order_id"], user)
        return self.ok(message=f"{len(result['added'])} item(s) added to cart", **result)

    async def invoice(self, request: web.Request):
        user = require_user(request)
        return self.ok(invoice=await self.server.orders.invoice(request.match_info["order_id"], user))

    async def admin_all(self, request: web.Request):
        require_admin(request)
        result = await self.server.orders.admin_list(
            request.query.get("status", ""),
            request.query.get("search", ""),
            self.query_int(request, "page", 1),
            self.query_int(request, "limit", 20),
        )
        return self.ok(**result)

    async def admin_status(self, request: web.Request):
        admin = require_admin(request)
        payload = await self.safe_json(request)
        result = await self.server.orders.admin_update_status(request.match_info["order_id"], payload, admin)
        return self.ok(message="Order status updated successfully", **result)

    async def admin_analytics(self, request: web.Request):
        require_admin(request)
        analytics = await self.server.orders.analytics(request.query.get("startDate"), request.query.get("endDate"))
        return self.ok(analytics=analytics)

    async def admin_return_status(self, request: web.Request):
        admin = require_admin(request)
        payload = await self.safe_json(request)
        updated = await self.server.returns.update_return_status(
            request.match_info["return_id"],
            str(payload.get("status") or ""),
            admin,
            payload.get("adminNotes"),
            to_float(payload.get("refundAmount"), default=None),
        )
        return self.ok(message="Return status updated successfully", returnRequest=updated)


def setup(server):
    OrderRoutes(server).register(server.app.router)
