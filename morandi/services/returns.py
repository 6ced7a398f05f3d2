from typing import Any, Optional

from ..errors import ConflictError, NotFoundError, ValidationError
from ..utils.constants import REFUND_METHODS, RETURN_REASONS, Collections, OrderStatus, ReturnStatus
from ..utils.helpers import money, to_float, utc_now_iso
from ..utils.logger import logger
from .payments import PaymentService
from .storage import ShopStorage
from .tracking import OrderTrackingService

RETURN_TRANSITIONS = {
    ReturnStatus.PENDING: (ReturnStatus.APPROVED, ReturnStatus.REJECTED),
    ReturnStatus.APPROVED: (ReturnStatus.PROCESSED,),
    ReturnStatus.PROCESSED: (ReturnStatus.COMPLETED,),
}


class OrderReturnService:
    def __init__(self, storage: ShopStorage, payments: PaymentService, tracking: OrderTrackingService):
        self.storage = storage
        self.payments = payments
        self.tracking = tracking

    @staticmethod
    def return_reasons() -> list[str]:
        return list(RETURN_REASONS)

    @staticmethod
    def refund_methods() -> list[dict[str, str]]:
        return [dict(method) for method in REFUND_METHODS]

    async def create_return_request(self, order: dict[str, Any], user_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        if order.get("status") not in OrderStatus.RETURNABLE:
            raise ValidationError("Only shipped or delivered orders can be returned", code="ORDER_NOT_RETURNABLE")

        reason = str(payload.get("reason") or "").strip()
        if not reason:
            raise ValidationError("Return reason is required")

        refund_method = str(payload.get("refund_method") or payload.get("refundMethod") or "original_payment_method")
        if refund_method not in {method["id"] for method in REFUND_METHODS}:
            raise ValidationError(f"Unsupported refund method: {refund_method}")

        order_total = to_float(order.get("total_amount"), default=0.0) or 0.0
        refund_amount = to_float(payload.get("refund_amount", payload.get("refundAmount")), default=None)
        if refund_amount is None:
            refund_amount = order_total
        if refund_amount <= 0 or refund_amount > order_total:
            raise ValidationError("Refund amount must be positive and at most the order total", code="INVALID_REFUND_AMOUNT")

        async with self.storage.transaction(Collections.ORDER_RETURNS):
            if await self.storage.first(Collections.ORDER_RETURNS, order_id=order["id"]) is not None:
                raise ConflictError("A return request already exists for this order", code="RETURN_EXISTS")
            created = await self.storage.insert(
                Collections.ORDER_RETURNS,
                {
                    "order_id": order["id"],
                    "order_number": order.get("order_number"),
                    "user_id": user_id,
                    "reason": reason,
                    "description": payload.get("description"),
                    "items": payload.get("items") if isinstance(payload.get("items"), list) else [],
                    "refund_amount": money(refund_amount),
                    "refund_method": refund_method,
                    "status": ReturnStatus.PENDING,
                },
            )
        logger.info(f"Return requested for order {order.get('order_number')}")
        return created

    async def get_order_return(self, order_id: str) -> Optional[dict[str, Any]]:
        return await self.storage.first(Collections.ORDER_RETURNS, order_id=order_id)

    async def get_user_returns(self, user_id: str) -> list[dict[str, Any]]:
        rows = await self.storage.find(Collections.ORDER_RETURNS, user_id=user_id)
        return sorted(rows, key=lambda row: str(row.get("created_at") or ""), reverse=True)

    async def update_return_status(
        self,
        return_id: str,
        status: str,
        admin: dict[str, Any],
        admin_notes: Optional[str] = None,
        refund_amount: Optional[float] = None,
    ) -> dict[str, Any]:
        if status not in ReturnStatus.ALL:
            raise ValidationError(f"Invalid status. Must be one of: {', '.join(ReturnStatus.ALL)}")

        changes: dict[str, Any] = {"status": status, "processed_by": admin.get("userId")}
        if admin_notes:
            changes["admin_notes"] = admin_notes
        if refund_amount is not None:
            changes["refund_amount"] = money(refund_amount)

        async with self.storage.transaction(Collections.ORDER_RETURNS):
            request = await self.storage.get(Collections.ORDER_RETURNS, return_id)
            if request is None:
                raise NotFoundError("Return request not found", code="RETURN_NOT_FOUND")
            current = request.get("status") or ReturnStatus.PENDING
            if status not in RETURN_TRANSITIONS.get(current, ()):
                raise ValidationError(
                    f"Cannot move a return from {current} to {status}",
                    code="INVALID_STATUS_TRANSITION",
                )
            if status != ReturnStatus.APPROVED:
                return await self.storage.update(Collections.ORDER_RETURNS, return_id, changes)
            # Claim the approval before any money moves.
            await self.storage.update(Collections.ORDER_RETURNS, return_id, {"status": ReturnStatus.APPROVED})

        amount = to_float(changes.get("refund_amount", request.get("refund_amount")), default=0.0) or 0.0
        if amount > 0:
            if request.get("refund_method") == "original_payment_method":
                try:
                    result = await self.payments.refund_payment(
                        request["order_id"], amount, f"Return: {request.get('reason')}"
                    )
                except Exception:
                    await self.storage.update(Collections.ORDER_RETURNS, return_id, {"status": current})
                    raise
                changes["refund_reference"] = (result.get("refund") or {}).get("id")
            changes["status"] = ReturnStatus.PROCESSED
            changes["refunded_at"] = utc_now_iso()
            await self.tracking.update_order_status(
                request["order_id"],
                OrderStatus.RETURNED,
                "Return approved and refund issued",
                created_by=admin.get("userId"),
            )

        return await self.storage.update(Collections.ORDER_RETURNS, return_id, changes)
