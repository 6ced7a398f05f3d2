import asyncio
import hashlib
import hmac
from typing import Any, Optional

import aiohttp

from ..config import Settings
from ..errors import ConflictError, NotFoundError, PaymentGatewayError, PermissionDenied, ValidationError
from ..utils.constants import PAYMENT_METHODS, Collections, OrderStatus, PaymentStatus
from ..utils.helpers import money, to_float, utc_now_iso
from ..utils.logger import logger
from .storage import ShopStorage


class RazorpayClient:
    """Thin async client for the Razorpay orders, payments and refunds API."""

    def __init__(self, settings: Settings):
        self.key_id = settings.razorpay_key_id
        self.key_secret = settings.razorpay_key_secret
        self.api_url = settings.razorpay_api_url
        self.timeout_seconds = settings.gateway_timeout_seconds
        self.max_retries = settings.gateway_max_retries

    @property
    def enabled(self) -> bool:
        return bool(self.key_id and self.key_secret)

    async def _request(self, method: str, endpoint: str, data: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        if not self.enabled:
            raise PaymentGatewayError("Payment gateway is not configured", code="GATEWAY_NOT_CONFIGURED", status=503)

        url = f"{self.api_url}/{endpoint.lstrip('/')}"
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        auth = aiohttp.BasicAuth(self.key_id, self.key_secret)

        try:
            async with aiohttp.ClientSession(timeout=timeout, auth=auth) as session:
                kwargs: dict[str, Any] = {}
                if data is not None:
                    kwargs["json"] = data

                retries = max(0, self.max_retries)
                for attempt in range(retries + 1):
                    async with session.request(method.upper(), url, **kwargs) as response:
                        if response.status in (429, 502, 503, 504) and attempt < retries:
                            retry_after = to_float(response.headers.get("Retry-After"), default=0.5) or 0.5
                            await asyncio.sleep(min(max(retry_after, 0.2), 5.0))
                            continue

                        try:
                            payload = await response.json(content_type=None)
                        except (aiohttp.ContentTypeError, ValueError):
                            payload = {"raw": await response.text()}

                        if response.status < 200 or response.status >= 300:
                            logger.error(f"Razorpay error {response.status} at {url}: {str(payload)[:300]}")
                            description = ""
                            if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
                                description = str(payload["error"].get("description") or "")
                            raise PaymentGatewayError(description or "Payment gateway request failed")
                        return payload if isinstance(payload, dict) else {"data": payload}
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error(f"Razorpay request to {url} failed: {exc}")
            raise PaymentGatewayError("Payment gateway unavailable") from exc

        raise PaymentGatewayError("Payment gateway request failed")

    async def create_order(
        self,
        amount: float,
        currency: str,
        receipt: str,
        notes: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            "orders",
            {
                "amount": int(round(amount * 100)),
                "currency": currency,
                "receipt": receipt,
                "notes": notes or {},
            },
        )

    async def fetch_payment(self, payment_id: str) -> dict[str, Any]:
        return await self._request("GET", f"payments/{payment_id}")

    async def refund_payment(
        self,
        payment_id: str,
        amount: float,
        notes: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"payments/{payment_id}/refund",
            {"amount": int(round(amount * 100)), "notes": notes or {}},
        )

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not self.key_secret or not signature:
            return False
        expected = hmac.new(
            self.key_secret.encode("utf-8"),
            f"{order_id}|{payment_id}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, str(signature))


class PaymentService:
    def __init__(self, storage: ShopStorage, gateway: RazorpayClient):
        self.storage = storage
        self.gateway = gateway

    def get_payment_methods(self) -> list[dict[str, Any]]:
        methods = [dict(method) for method in PAYMENT_METHODS]
        for method in methods:
            if method["id"] == "razorpay":
                method["enabled"] = self.gateway.enabled
        return methods

    async def record_transaction(
        self,
        order: dict[str, Any],
        amount: float,
        transaction_type: str,
        status: str,
        gateway_payload: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        return await self.storage.insert(
            Collections.PAYMENT_TRANSACTIONS,
            {
                "order_id": order["id"],
                "transaction_type": transaction_type,
                "payment_method": order.get("payment_method"),
                "amount": money(amount),
                "currency": order.get("currency"),
                "status": status,
                "gateway_transaction_id": (gateway_payload or {}).get("id"),
                "gateway_response": gateway_payload or {},
            },
        )

    async def refunded_amount(self, order_id: str, settled_only: bool = False) -> float:
        """Sum of refunds on an order; pending rows count unless ``settled_only``."""
        rows = await self.storage.find(
            Collections.PAYMENT_TRANSACTIONS,
            order_id=order_id,
            transaction_type="refund",
        )
        if settled_only:
            rows = [row for row in rows if row.get("status") == "completed"]
        return money(sum(abs(to_float(row.get("amount"), default=0.0) or 0.0) for row in rows))

    async def refund_payment(
        self,
        order_id: str,
        amount: Optional[float] = None,
        reason: str = "",
        user: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        async with self.storage.transaction(Collections.ORDERS, Collections.PAYMENT_TRANSACTIONS):
            order = await self.storage.get(Collections.ORDERS, order_id)
            if order is None:
                raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
            if user is not None and user.get("role") != "admin" and order.get("user_id") != user.get("userId"):
                raise PermissionDenied("You can only refund your own orders")
            if order.get("payment_status") not in {PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED}:
                raise ConflictError("Order has no captured payment to refund", code="NOT_REFUNDABLE")

            payment_id = str(order.get("razorpay_payment_id") or "")
            if not payment_id:
                raise ValidationError("No payment found for this order", code="PAYMENT_NOT_FOUND")

            total = to_float(order.get("total_amount"), default=0.0) or 0.0
            remaining = money(total - await self.refunded_amount(order_id))
            refund_amount = money(amount if amount is not None else remaining)
            if refund_amount <= 0 or refund_amount > remaining:
                raise ValidationError(
                    f"Refund amount must be between 0 and {remaining:.2f}",
                    code="INVALID_REFUND_AMOUNT",
                )
            # The pending row holds the amount while the gateway call runs unlocked.
            pending = await self.record_transaction(order, -refund_amount, "refund", "pending")

        try:
            refund = await self.gateway.refund_payment(
                payment_id,
                refund_amount,
                {"reason": reason or "Customer request", "order_id": order_id},
            )
        except Exception:
            await self.storage.delete(Collections.PAYMENT_TRANSACTIONS, pending["id"])
            raise

        async with self.storage.transaction(Collections.ORDERS, Collections.PAYMENT_TRANSACTIONS):
            await self.storage.update(
                Collections.PAYMENT_TRANSACTIONS,
                pending["id"],
                {"status": "completed", "gateway_transaction_id": refund.get("id"), "gateway_response": refund},
            )
            full_refund = await self.refunded_amount(order_id, settled_only=True) >= money(total)
            changes: dict[str, Any] = {
                "payment_status": PaymentStatus.REFUNDED if full_refund else PaymentStatus.PARTIALLY_REFUNDED,
            }
            if full_refund:
                changes["status"] = OrderStatus.CANCELLED
                changes["cancelled_at"] = utc_now_iso()
            updated = await self.storage.update(Collections.ORDERS, order_id, changes)
        logger.info(f"Refunded {refund_amount:.2f} for order {order.get('order_number')}")
        return {"refund": refund, "order": updated, "amount": refund_amount}
