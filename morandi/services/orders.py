from collections import Counter
from typing import Any, Optional

from ..errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from ..utils.constants import Collections, OrderStatus, PaymentStatus
from ..utils.helpers import money, paginate, parse_datetime, to_float, utc_now_iso
from ..utils.logger import logger
from .cart import CartService
from .catalog import CatalogService
from .payments import PaymentService
from .storage import ShopStorage
from .tracking import OrderTrackingService


def _newest_first(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(rows, key=lambda row: str(row.get("created_at") or ""), reverse=True)


class OrderService:
    def __init__(
        self,
        storage: ShopStorage,
        catalog: CatalogService,
        cart: CartService,
        payments: PaymentService,
        tracking: OrderTrackingService,
    ):
        self.storage = storage
        self.catalog = catalog
        self.cart = cart
        self.payments = payments
        self.tracking = tracking

    async def _items_by_order(self) -> dict[str, list[dict[str, Any]]]:
        grouped: dict[str, list[dict[str, Any]]] = {}
        for item in await self.storage.load(Collections.ORDER_ITEMS):
            grouped.setdefault(str(item.get("order_id")), []).append(item)
        return grouped

    async def get_owned_order(self, order_id: str, user: dict[str, Any]) -> dict[str, Any]:
        order = await self.storage.get(Collections.ORDERS, order_id)
        if order is None:
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
        if user.get("role") != "admin" and order.get("user_id") != user.get("userId"):
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
        return order

    async def list_user_orders(self, user_id: str, page: int, limit: int, status: str = "") -> dict[str, Any]:
        orders = await self.storage.find(Collections.ORDERS, user_id=user_id)
        if status:
            orders = [order for order in orders if order.get("status") == status]
        items = await self._items_by_order()
        page_rows, pagination = paginate(_newest_first(orders), page, limit)
        rows = [dict(order, items=items.get(order["id"], [])) for order in page_rows]
        return {"orders": rows, "pagination": pagination}

    async def get_order_details(self, order_id: str, user: dict[str, Any]) -> dict[str, Any]:
        order = await self.get_owned_order(order_id, user)
        items = await self.storage.find(Collections.ORDER_ITEMS, order_id=order_id)
        return dict(order, items=items)

    async def cancel_order(self, order_id: str, user: dict[str, Any], reason: str = "") -> dict[str, Any]:
        await self.get_owned_order(order_id, user)
        async with self.storage.transaction(Collections.ORDERS):
            order = await self.storage.get(Collections.ORDERS, order_id)
            if order.get("status") not in OrderStatus.CANCELLABLE:
                raise ValidationError(
                    f"Order cannot be cancelled in status {order.get('status')}",
                    code="ORDER_NOT_CANCELLABLE",
                )
            if order.get("cancelling"):
                raise ConflictError("Order is already being cancelled", code="CANCELLATION_IN_PROGRESS")
            order = await self.storage.update(Collections.ORDERS, order_id, {"cancelling": True})

        refundable = {PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED}
        if order.get("payment_status") in refundable and order.get("razorpay_payment_id"):
            try:
                await self.payments.refund_payment(order_id, None, reason or "Order cancelled", user)
            except Exception:
                await self.storage.update(Collections.ORDERS, order_id, {"cancelling": False})
                raise

        async with self.storage.transaction(Collections.ORDERS, Collections.PRODUCTS, Collections.ORDER_STATUS_HISTORY):
            order = await self.storage.get(Collections.ORDERS, order_id)
            if order.get("stock_reserved"):
                for item in await self.storage.find(Collections.ORDER_ITEMS, order_id=order_id):
                    if item.get("product_id") and await self.storage.get(Collections.PRODUCTS, item["product_id"]):
                        await self.catalog.adjust_stock(item["product_id"], int(item["quantity"]))
            await self.storage.update(
                Collections.ORDERS,
                order_id,
                {"stock_reserved": False, "cancelling": False, "cancellation_reason": reason or None},
            )
            updated = await self.tracking.update_order_status(
                order_id,
                OrderStatus.CANCELLED,
                reason or "Cancelled by customer",
                created_by=user.get("userId"),
            )
        return updated

    async def reorder(self, order_id: str, user: dict[str, Any]) -> dict[str, Any]:
        await self.get_owned_order(order_id, user)
        added, skipped = [], []
        for item in await self.storage.find(Collections.ORDER_ITEMS, order_id=order_id):
            product_id = item.get("product_id")
            line = await self.cart.add_or_increment(user["userId"], product_id, int(item["quantity"])) if product_id else None
            (added if line is not None else skipped).append(
                {"product_id": product_id, "product_name": item.get("product_name"), "quantity": item.get("quantity")}
            )
        return {"added": added, "skipped": skipped, "cart": await self.cart.get_cart(user_id=user["userId"])}

    async def invoice(self, order_id: str, user: dict[str, Any]) -> dict[str, Any]:
        order = await self.get_order_details(order_id, user)
        return {
            "invoice_number": f"INV-{order.get('order_number')}",
            "order_number": order.get("order_number"),
            "issued_at": utc_now_iso(),
            "order_date": order.get("created_at"),
            "status": order.get("status"),
            "payment_status": order.get("payment_status"),
            "payment_method": order.get("payment_method"),
            "billing_address": order.get("billing_address"),
            "shipping_address": order.get("shipping_address"),
            "items": [
                {
                    "name": item.get("product_name"),
                    "sku": item.get("product_sku"),
                    "quantity": item.get("quantity"),
                    "unit_price": item.get("unit_price"),
                    "total_price": item.get("total_price"),
                }
                for item in order["items"]
            ],
            "subtotal": order.get("subtotal"),
            "tax_amount": order.get("tax_amount"),
            "shipping_amount": order.get("shipping_amount"),
            "discount_amount": order.get("discount_amount", 0.0),
            "total_amount": order.get("total_amount"),
            "currency": order.get("currency"),
        }

    async def admin_list(self, status: str, search: str, page: int, limit: int) -> dict[str, Any]:
        orders = await self.storage.load(Collections.ORDERS)
        if status:
            orders = [order for order in orders if order.get("status") == status]
        search = search.strip().lower()
        if search:
            orders = [
                order
                for order in orders
                if search in str(order.get("order_number") or "").lower()
                or search in str(order.get("user_id") or "").lower()
                or search in str(order.get("guest_email") or "").lower()
            ]
        page_rows, pagination = paginate(_newest_first(orders), page, limit)
        return {"orders": page_rows, "pagination": pagination}

    async def admin_update_status(self, order_id: str, payload: dict[str, Any], admin: dict[str, Any]) -> dict[str, Any]:
        status = str(payload.get("status") or "").strip()
        order = await self.tracking.update_order_status(
            order_id,
            status,
            payload.get("description"),
            payload.get("location"),
            created_by=admin.get("userId"),
        )

        tracking: Optional[dict[str, Any]] = None
        if payload.get("trackingNumber") and payload.get("courierName"):
            tracking = await self.tracking.create_order_tracking(
                order_id,
                str(payload["trackingNumber"]),
                str(payload["courierName"]),
                payload.get("estimatedDelivery"),
            )

        await self.tracking.send_order_notification(
            order_id,
            "email",
            f"Your order {order.get('order_number')} is now {status.replace('_', ' ')}",
            recipient=order.get("guest_email") or order.get("user_id"),
        )
        logger.info(f"Admin {admin.get('email')} set order {order.get('order_number')} to {status}")
        return {"order": order, "tracking": tracking}

    async def analytics(self, start_date: Optional[str] = None, end_date: Optional[str] = None) -> dict[str, Any]:
        start = parse_datetime(start_date)
        end = parse_datetime(end_date)
        orders = []
        for order in await self.storage.load(Collections.ORDERS):
            created = parse_datetime(order.get("created_at"))
            if start and (created is None or created < start):
                continue
            if end and (created is None or created > end):
                continue
            orders.append(order)

        paid = [order for order in orders if order.get("payment_status") == PaymentStatus.PAID]
        revenue = money(sum(to_float(order.get("total_amount"), default=0.0) or 0.0 for order in paid))
        return {
            "totalOrders": len(orders),
            "paidOrders": len(paid),
            "totalRevenue": revenue,
            "averageOrderValue": money(revenue / len(paid)) if paid else 0.0,
            "statusDistribution": dict(Counter(str(order.get("status")) for order in orders)),
            "paymentStatusDistribution": dict(Counter(str(order.get("payment_status")) for order in orders)),
        }
