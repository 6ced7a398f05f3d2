from datetime import timedelta
from typing import Any, Optional

from ..errors import NotFoundError, ValidationError
from ..utils.constants import COURIERS, NOTIFICATION_TYPES, TRACKING_ETA_DAYS, Collections, OrderStatus
from ..utils.helpers import utc_now, utc_now_iso
from ..utils.logger import logger
from .storage import ShopStorage

STATUS_TIMESTAMPS = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

STATUS_DESCRIPTIONS = {
    OrderStatus.PENDING: "Order placed",
    OrderStatus.CONFIRMED: "Order confirmed",
    OrderStatus.PROCESSING: "Order is being prepared",
    OrderStatus.SHIPPED: "Order shipped",
    OrderStatus.OUT_FOR_DELIVERY: "Out for delivery",
    OrderStatus.DELIVERED: "Order delivered",
    OrderStatus.CANCELLED: "Order cancelled",
    OrderStatus.RETURNED: "Order returned",
    OrderStatus.REFUNDED: "Order refunded",
}


class OrderTrackingService:
    def __init__(self, storage: ShopStorage):
        self.storage = storage

    @staticmethod
    def available_couriers() -> list[dict[str, Any]]:
        return [{"id": courier["id"], "name": courier["name"]} for courier in COURIERS.values()]

    @staticmethod
    def courier_tracking_url(courier_name: str, tracking_number: str) -> Optional[str]:
        courier = COURIERS.get(str(courier_name or "").strip().lower().replace(" ", ""))
        if courier is None:
            return None
        return courier["tracking_url"].format(tracking_number=tracking_number)

    async def add_history(
        self,
        order_id: str,
        status: str,
        description: Optional[str] = None,
        location: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> dict[str, Any]:
        return await self.storage.insert(
            Collections.ORDER_STATUS_HISTORY,
            {
                "order_id": order_id,
                "status": status,
                "description": description or STATUS_DESCRIPTIONS.get(status, status),
                "location": location,
                "created_by": created_by,
            },
        )

    async def update_order_status(
        self,
        order_id: str,
        status: str,
        description: Optional[str] = None,
        location: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> dict[str, Any]:
        if status not in OrderStatus.ALL:
            raise ValidationError(f"Invalid status. Must be one of: {', '.join(OrderStatus.ALL)}", code="INVALID_STATUS")

        async with self.storage.transaction(Collections.ORDERS, Collections.ORDER_STATUS_HISTORY):
            order = await self.storage.get(Collections.ORDERS, order_id)
            if order is None:
                raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
            changes: dict[str, Any] = {"status": status}
            timestamp_field = STATUS_TIMESTAMPS.get(status)
            if timestamp_field:
                changes[timestamp_field] = utc_now_iso()
            updated = await self.storage.update(Collections.ORDERS, order_id, changes)
            await self.add_history(order_id, status, description, location, created_by)

        logger.info(f"Order {order.get('order_number')} moved to {status}")
        return updated

    async def create_order_tracking(
        self,
        order_id: str,
        tracking_number: str,
        courier_name: str,
        estimated_delivery: Optional[str] = None,
    ) -> dict[str, Any]:
        if not tracking_number or not courier_name:
            raise ValidationError("Tracking number and courier name are required")
        record = {
            "order_id": order_id,
            "tracking_number": tracking_number,
            "courier_name": courier_name,
            "courier_tracking_url": self.courier_tracking_url(courier_name, tracking_number),
            "status": "in_transit",
            "estimated_delivery": estimated_delivery
            or (utc_now() + timedelta(days=TRACKING_ETA_DAYS)).date().isoformat(),
        }
        existing = await self.storage.first(Collections.ORDER_TRACKING, order_id=order_id)
        if existing is not None:
            return await self.storage.update(Collections.ORDER_TRACKING, existing["id"], record)
        return await self.storage.insert(Collections.ORDER_TRACKING, record)

    async def get_order_timeline(self, order_id: str) -> list[dict[str, Any]]:
        rows = await self.storage.find(Collections.ORDER_STATUS_HISTORY, order_id=order_id)
        return sorted(rows, key=lambda row: str(row.get("created_at") or ""))

    async def get_order_tracking(self, order_id: str) -> dict[str, Any]:
        order = await self.storage.get(Collections.ORDERS, order_id)
        if order is None:
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
        tracking = await self.storage.first(Collections.ORDER_TRACKING, order_id=order_id)
        return {
            "order": {
                "id": order["id"],
                "order_number": order.get("order_number"),
                "status": order.get("status"),
                "payment_status": order.get("payment_status"),
            },
            "tracking": tracking,
            "timeline": await self.get_order_timeline(order_id),
        }

    async def send_order_notification(
        self,
        order_id: str,
        notification_type: str,
        message: str,
        recipient: Optional[str] = None,
    ) -> dict[str, Any]:
        if notification_type not in NOTIFICATION_TYPES:
            raise ValidationError(f"Unsupported notification type: {notification_type}")
        notification = await self.storage.insert(
            Collections.ORDER_NOTIFICATIONS,
            {
                "order_id": order_id,
                "notification_type": notification_type,
                "recipient": recipient,
                "message": message,
                "status": "sent",
                "sent_at": utc_now_iso(),
            },
        )
        logger.info(f"Queued {notification_type} notification for order {order_id}")
        return notification
