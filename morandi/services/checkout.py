import secrets
import string
import time
from typing import Any, Optional

from ..errors import ConflictError, NotFoundError, PermissionDenied, ShopError, ValidationError
from ..utils.constants import (
    CHECKOUT_TAX_RATE,
    CURRENCY,
    DEFAULT_ITEM_WEIGHT_KG,
    PRICE_TOLERANCE,
    Collections,
    OrderStatus,
    PaymentStatus,
)
from ..utils.helpers import money, to_float, to_int, utc_now_iso
from ..utils.logger import logger
from .catalog import CatalogService
from .payments import PaymentService, RazorpayClient
from .storage import ShopStorage
from .tracking import OrderTrackingService

REQUIRED_CHECKOUT_FIELDS = ("items", "shipping_address", "shipping_method_id", "payment_method")
REQUIRED_ADDRESS_FIELDS = (
    "first_name",
    "last_name",
    "address_line_1",
    "city",
    "state",
    "postal_code",
    "country",
    "phone",
)
CHECKOUT_PAYMENT_METHODS = ("razorpay", "cod")
ORDER_COLLECTIONS = (
    Collections.ORDERS,
    Collections.ORDER_ITEMS,
    Collections.PRODUCTS,
    Collections.PAYMENT_TRANSACTIONS,
    Collections.ORDER_STATUS_HISTORY,
)


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(5))
    return f"MOR{int(time.time() * 1000)}{suffix}"


class CheckoutService:
    """Turns a validated basket into an order and settles its payment."""

    def __init__(
        self,
        storage: ShopStorage,
        catalog: CatalogService,
        gateway: RazorpayClient,
        payments: PaymentService,
        tracking: OrderTrackingService,
    ):
        self.storage = storage
        self.catalog = catalog
        self.gateway = gateway
        self.payments = payments
        self.tracking = tracking

    async def get_shipping_methods(self) -> list[dict[str, Any]]:
        methods = await self.storage.find(Collections.SHIPPING_METHODS, is_active=True)
        return sorted(methods, key=lambda row: to_float(row.get("base_rate"), default=0.0) or 0.0)

    async def calculate_shipping(self, items: list[dict[str, Any]], shipping_method_id: str) -> float:
        method = await self.storage.get(Collections.SHIPPING_METHODS, shipping_method_id)
        if method is None or not method.get("is_active", True):
            raise ValidationError("Invalid shipping method", code="INVALID_SHIPPING_METHOD")

        total_weight = sum(DEFAULT_ITEM_WEIGHT_KG * int(item.get("quantity") or 0) for item in items)
        base_rate = to_float(method.get("base_rate"), default=0.0) or 0.0
        weight_rate = to_float(method.get("weight_rate"), default=0.0) or 0.0
        return money(max(0.0, base_rate + total_weight * weight_rate))

    async def validate_items(self, items: Any) -> list[dict[str, Any]]:
        if not isinstance(items, list) or not items:
            raise ValidationError("At least one item is required")

        validated = []
        for raw in items:
            if not isinstance(raw, dict):
                raise ValidationError("Invalid order item")
            product_id = str(raw.get("product_id") or "").strip()
            quantity = to_int(raw.get("quantity"), default=0) or 0
            unit_price = to_float(raw.get("unit_price"), default=None)
            if not product_id or quantity < 1 or unit_price is None:
                raise ValidationError("Each item needs product_id, quantity and unit_price")

            product = await self.storage.get(Collections.PRODUCTS, product_id)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found", code="PRODUCT_NOT_FOUND")
            if not product.get("is_active", True):
                raise ValidationError(f"Product {product.get('name')} is not available", code="PRODUCT_INACTIVE")
            stock = to_int(product.get("stock_quantity"), default=0) or 0
            if stock < quantity:
                raise ValidationError(
                    f"Insufficient stock for {product.get('name')}",
                    code="INSUFFICIENT_STOCK",
                    details={"productId": product_id, "available": stock},
                )
            current_price = CatalogService.effective_price(product)
            if abs(current_price - unit_price) > PRICE_TOLERANCE:
                raise ValidationError(
                    f"Price mismatch for {product.get('name')}",
                    code="PRICE_MISMATCH",
                    details={"productId": product_id, "currentPrice": current_price},
                )

            validated.append(
                {
                    "product_id": product_id,
                    "product_name": product.get("name"),
                    "product_sku": product.get("sku"),
                    "quantity": quantity,
                    "unit_price": money(current_price),
                    "total_price": money(current_price * quantity),
                }
            )
        return validated

    @staticmethod
    def _validate_checkout_payload(payload: dict[str, Any]) -> None:
        missing = [field for field in REQUIRED_CHECKOUT_FIELDS if not payload.get(field)]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        address = payload.get("shipping_address")
        if not isinstance(address, dict):
            raise ValidationError("shipping_address must be an object")
        missing_address = [field for field in REQUIRED_ADDRESS_FIELDS if not str(address.get(field) or "").strip()]
        if missing_address:
            raise ValidationError(f"Missing shipping address fields: {', '.join(missing_address)}")

        if payload.get("payment_method") not in CHECKOUT_PAYMENT_METHODS:
            raise ValidationError(f"Unsupported payment method: {payload.get('payment_method')}", code="INVALID_PAYMENT_METHOD")

    async def _reserve_stock(self, items: list[dict[str, Any]]) -> None:
        for item in items:
            await self.catalog.adjust_stock(item["product_id"], -int(item["quantity"]))

    async def initialize_checkout(self, payload: dict[str, Any], user: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        self._validate_checkout_payload(payload)
        items = await self.validate_items(payload.get("items"))

        subtotal = money(sum(item["total_price"] for item in items))
        tax_amount = money(subtotal * CHECKOUT_TAX_RATE)
        shipping_amount = await self.calculate_shipping(items, str(payload["shipping_method_id"]))
        total_amount = money(subtotal + tax_amount + shipping_amount)
        order_number = generate_order_number()
        payment_method = payload["payment_method"]
        shipping_address = payload["shipping_address"]

        gateway_order: Optional[dict[str, Any]] = None
        if payment_method == "razorpay":
            gateway_order = await self.gateway.create_order(
                total_amount,
                CURRENCY,
                receipt=f"order_{int(time.time() * 1000)}",
                notes={"order_number": order_number, "customer_email": (user or {}).get("email") or payload.get("email")},
            )

        order = {
            "order_number": order_number,
            "user_id": (user or {}).get("userId"),
            "guest_email": None if user else payload.get("email"),
            "status": OrderStatus.PENDING,
            "payment_status": PaymentStatus.PENDING,
            "payment_method": payment_method,
            "currency": CURRENCY,
            "subtotal": subtotal,
            "tax_amount": tax_amount,
            "shipping_amount": shipping_amount,
            "discount_amount": 0.0,
            "total_amount": total_amount,
            "shipping_address": shipping_address,
            "billing_address": payload.get("billing_address") or shipping_address,
            "shipping_method_id": payload["shipping_method_id"],
            "razorpay_order_id": (gateway_order or {}).get("id"),
            "notes": payload.get("notes"),
        }

        async with self.storage.transaction(*ORDER_COLLECTIONS):
            created = await self.storage.insert(Collections.ORDERS, order)
            order_items = await self.storage.insert_many(
                Collections.ORDER_ITEMS,
                [dict(item, order_id=created["id"]) for item in items],
            )
            await self.tracking.add_history(created["id"], OrderStatus.PENDING, created_by=order["user_id"])
            if payment_method == "cod":
                await self._reserve_stock(order_items)
                created = await self.storage.update(
                    Collections.ORDERS,
                    created["id"],
                    {"status": OrderStatus.CONFIRMED, "stock_reserved": True, "confirmed_at": utc_now_iso()},
                )
                await self.tracking.add_history(created["id"], OrderStatus.CONFIRMED, "Cash on delivery order confirmed")

        logger.info(f"Checkout initialised for order {order_number} ({payment_method}, {total_amount:.2f} {CURRENCY})")
        result: dict[str, Any] = {"order": created, "items": order_items}
        if gateway_order is not None:
            result["razorpay"] = {
                "order_id": gateway_order.get("id"),
                "amount": gateway_order.get("amount"),
                "currency": gateway_order.get("currency", CURRENCY),
                "key_id": self.gateway.key_id,
            }
        return result

    async def verify_payment(self, payload: dict[str, Any], user: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        required = ("razorpay_order_id", "razorpay_payment_id", "razorpay_signature", "order_id")
        missing = [field for field in required if not payload.get(field)]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        order = await self.storage.get(Collections.ORDERS, payload["order_id"])
        if order is None:
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
        if order.get("user_id") and order.get("user_id") != (user or {}).get("userId"):
            raise PermissionDenied("You can only pay for your own orders")
        if order.get("payment_status") == PaymentStatus.PAID:
            raise ConflictError("Order is already paid", code="ALREADY_PAID")
        if order.get("razorpay_order_id") != payload["razorpay_order_id"]:
            raise ValidationError("Payment does not belong to this order", code="ORDER_MISMATCH")

        if not self.gateway.verify_signature(
            payload["razorpay_order_id"],
            payload["razorpay_payment_id"],
            payload["razorpay_signature"],
        ):
            logger.warning(f"Invalid payment signature for order {order.get('order_number')}")
            raise ValidationError("Invalid payment signature", code="INVALID_SIGNATURE")

        payment = await self.gateway.fetch_payment(payload["razorpay_payment_id"])
        if payment.get("status") != "captured":
            raise ValidationError("Payment not captured", code="PAYMENT_NOT_CAPTURED")

        return await self.process_successful_payment(order["id"], payment)

    async def process_successful_payment(self, order_id: str, payment: dict[str, Any]) -> dict[str, Any]:
        payment_id = str(payment.get("id") or "")
        try:
            async with self.storage.transaction(*ORDER_COLLECTIONS):
                order = await self.storage.get(Collections.ORDERS, order_id)
                if order is None:
                    raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
                # Re-read under the lock: a concurrent verify may have settled it already.
                if order.get("payment_status") == PaymentStatus.PAID:
                    raise ConflictError("Order is already paid", code="ALREADY_PAID")

                items = await self.storage.find(Collections.ORDER_ITEMS, order_id=order_id)
                await self._reserve_stock(items)
                order = await self.storage.update(
                    Collections.ORDERS,
                    order_id,
                    {
                        "status": OrderStatus.CONFIRMED,
                        "payment_status": PaymentStatus.PAID,
                        "razorpay_payment_id": payment_id,
                        "stock_reserved": True,
                        "paid_at": utc_now_iso(),
                        "confirmed_at": utc_now_iso(),
                    },
                )
                await self.payments.record_transaction(order, order["total_amount"], "payment", "completed", payment)
                await self.tracking.add_history(order_id, OrderStatus.CONFIRMED, "Payment received")
        except ShopError as exc:
            if exc.code != "INSUFFICIENT_STOCK":
                raise
            # Money was captured but the goods are gone; the rollback already restored stock.
            await self._refund_unfulfillable(order_id, payment_id)
            raise ConflictError(exc.message, code="INSUFFICIENT_STOCK", details=exc.details) from exc

        logger.info(f"Payment {payment_id} settled order {order.get('order_number')}")
        return {"order": order, "items": items}

    async def _refund_unfulfillable(self, order_id: str, payment_id: str) -> None:
        order = await self.storage.get(Collections.ORDERS, order_id)
        logger.error(f"Order {order.get('order_number')} cannot be fulfilled after payment {payment_id}; refunding")
        refund = await self.gateway.refund_payment(
            payment_id,
            order["total_amount"],
            {"reason": "Out of stock", "order_id": order_id},
        )
        order = await self.storage.update(
            Collections.ORDERS,
            order_id,
            {
                "status": OrderStatus.CANCELLED,
                "payment_status": PaymentStatus.REFUNDED,
                "razorpay_payment_id": payment_id,
                "cancelled_at": utc_now_iso(),
            },
        )
        await self.payments.record_transaction(order, order["total_amount"], "payment", "completed", {"id": payment_id})
        await self.payments.record_transaction(order, -order["total_amount"], "refund", "completed", refund)
        await self.tracking.add_history(order_id, OrderStatus.CANCELLED, "Out of stock, payment refunded")

    async def create_simple_order(self, payload: dict[str, Any], user: dict[str, Any]) -> dict[str, Any]:
        items = payload.get("items")
        shipping_address = payload.get("shippingAddress")
        if not isinstance(items, list) or not items or not shipping_address:
            raise ValidationError("Items and shipping address are required")

        order_items = []
        for raw in items:
            if not isinstance(raw, dict):
                raise ValidationError("Invalid order item")
            price = to_float(raw.get("price"), default=None)
            quantity = to_int(raw.get("quantity"), default=0) or 0
            if price is None or price < 0 or quantity < 1:
                raise ValidationError("Each item needs a price and a positive quantity")
            order_items.append(
                {
                    "product_id": raw.get("product_id") or raw.get("productId"),
                    "product_name": raw.get("name") or raw.get("product_name"),
                    "quantity": quantity,
                    "unit_price": money(price),
                    "total_price": money(price * quantity),
                }
            )

        subtotal = money(sum(item["total_price"] for item in order_items))
        tax_amount = money(subtotal * CHECKOUT_TAX_RATE)
        order = {
            "order_number": generate_order_number(),
            "user_id": user["userId"],
            "status": OrderStatus.PENDING,
            "payment_status": PaymentStatus.PENDING,
            "payment_method": payload.get("paymentMethod") or "razorpay",
            "currency": CURRENCY,
            "subtotal": subtotal,
            "tax_amount": tax_amount,
            "shipping_amount": 0.0,
            "discount_amount": 0.0,
            "total_amount": money(subtotal + tax_amount),
            "shipping_address": shipping_address,
            "billing_address": payload.get("billingAddress") or shipping_address,
        }
        async with self.storage.transaction(Collections.ORDERS, Collections.ORDER_ITEMS, Collections.ORDER_STATUS_HISTORY):
            created = await self.storage.insert(Collections.ORDERS, order)
            created_items = await self.storage.insert_many(
                Collections.ORDER_ITEMS,
                [dict(item, order_id=created["id"]) for item in order_items],
            )
            await self.tracking.add_history(created["id"], OrderStatus.PENDING, created_by=user["userId"])
        return {"order": created, "items": created_items}
