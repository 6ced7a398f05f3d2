from typing import Any, Optional

from ..errors import NotFoundError, ValidationError
from ..utils.constants import (
    CART_FLAT_SHIPPING,
    CART_FREE_SHIPPING_THRESHOLD,
    CART_MAX_QUANTITY,
    CART_TAX_RATE,
    Collections,
)
from ..utils.helpers import money, to_int
from .catalog import CatalogService
from .storage import ShopStorage


def calculate_totals(items: list[dict[str, Any]]) -> dict[str, Any]:
    subtotal = sum(CatalogService.effective_price(item.get("product") or {}) * int(item["quantity"]) for item in items)
    tax = subtotal * CART_TAX_RATE
    if subtotal <= 0 or subtotal > CART_FREE_SHIPPING_THRESHOLD:
        shipping = 0.0
    else:
        shipping = CART_FLAT_SHIPPING
    return {
        "subtotal": money(subtotal),
        "tax": money(tax),
        "shipping": money(shipping),
        "total": money(subtotal + tax + shipping),
        "itemCount": sum(int(item["quantity"]) for item in items),
    }


def validate_quantity(value: Any) -> int:
    quantity = to_int(value, default=None)
    if quantity is None or quantity < 1 or quantity > CART_MAX_QUANTITY:
        raise ValidationError(f"Quantity must be between 1 and {CART_MAX_QUANTITY}")
    return quantity


class CartService:
    """Shopping carts for signed-in users and for guest browser sessions."""

    def __init__(self, storage: ShopStorage, catalog: CatalogService):
        self.storage = storage
        self.catalog = catalog

    async def find_cart(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> Optional[dict[str, Any]]:
        if user_id:
            return await self.storage.first(Collections.CARTS, user_id=user_id)
        if session_id:
            return await self.storage.first(Collections.CARTS, session_id=session_id, user_id=None)
        return None

    async def get_or_create_cart(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> dict[str, Any]:
        if not user_id and not session_id:
            raise ValidationError("A user or a cart session is required")
        async with self.storage.transaction(Collections.CARTS):
            cart = await self.find_cart(user_id, session_id)
            if cart is not None:
                return cart
            return await self.storage.insert(
                Collections.CARTS,
                {"user_id": user_id or None, "session_id": None if user_id else session_id},
            )

    async def cart_items(self, cart_id: str) -> list[dict[str, Any]]:
        items = await self.storage.find(Collections.CART_ITEMS, cart_id=cart_id)
        products = {row["id"]: row for row in await self.storage.load(Collections.PRODUCTS)}
        decorated = []
        for item in sorted(items, key=lambda row: str(row.get("created_at") or "")):
            product = products.get(item.get("product_id"))
            if product is None:
                continue
            row = dict(item)
            row["product"] = CatalogService.public_product(product)
            decorated.append(row)
        return decorated

    async def get_cart(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> dict[str, Any]:
        cart = await self.get_or_create_cart(user_id, session_id)
        items = await self.cart_items(cart["id"])
        return {"cart": cart, "items": items, "totals": calculate_totals(items)}

    async def count(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> int:
        cart = await self.find_cart(user_id, session_id)
        if cart is None:
            return 0
        items = await self.storage.find(Collections.CART_ITEMS, cart_id=cart["id"])
        return sum(int(item.get("quantity") or 0) for item in items)

    async def _available_product(self, product_id: str) -> dict[str, Any]:
        product = await self.storage.get(Collections.PRODUCTS, product_id)
        if product is None or not product.get("is_active", True):
            raise NotFoundError("Product not found or inactive", code="PRODUCT_NOT_FOUND")
        return product

    async def add_item(
        self,
        product_id: str,
        quantity: Any,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> dict[str, Any]:
        quantity = validate_quantity(quantity)
        cart = await self.get_or_create_cart(user_id, session_id)
        async with self.storage.transaction(Collections.CART_ITEMS):
            product = await self._available_product(product_id)
            existing = await self.storage.first(Collections.CART_ITEMS, cart_id=cart["id"], product_id=product_id)
            new_quantity = quantity + (int(existing["quantity"]) if existing else 0)
            if new_quantity > CART_MAX_QUANTITY:
                raise ValidationError(f"Quantity must be between 1 and {CART_MAX_QUANTITY}")
            if new_quantity > (to_int(product.get("stock_quantity"), default=0) or 0):
                raise ValidationError("Insufficient stock", code="INSUFFICIENT_STOCK")
            if existing is not None:
                return await self.storage.update(Collections.CART_ITEMS, existing["id"], {"quantity": new_quantity})
            return await self.storage.insert(
                Collections.CART_ITEMS,
                {"cart_id": cart["id"], "product_id": product_id, "quantity": new_quantity},
            )

    async def _owned_item(self, item_id: str, user_id: Optional[str], session_id: Optional[str]) -> dict[str, Any]:
        cart = await self.find_cart(user_id, session_id)
        item = await self.storage.get(Collections.CART_ITEMS, item_id)
        if cart is None or item is None or item.get("cart_id") != cart["id"]:
            raise NotFoundError("Cart item not found", code="CART_ITEM_NOT_FOUND")
        return item

    async def update_item(
        self,
        item_id: str,
        quantity: Any,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> dict[str, Any]:
        quantity = validate_quantity(quantity)
        item = await self._owned_item(item_id, user_id, session_id)
        product = await self._available_product(item["product_id"])
        if quantity > (to_int(product.get("stock_quantity"), default=0) or 0):
            raise ValidationError("Insufficient stock", code="INSUFFICIENT_STOCK")
        return await self.storage.update(Collections.CART_ITEMS, item_id, {"quantity": quantity})

    async def remove_item(self, item_id: str, user_id: Optional[str] = None, session_id: Optional[str] = None) -> None:
        item = await self._owned_item(item_id, user_id, session_id)
        await self.storage.delete(Collections.CART_ITEMS, item["id"])

    async def clear(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> int:
        cart = await self.find_cart(user_id, session_id)
        if cart is None:
            return 0
        return await self.storage.delete_where(Collections.CART_ITEMS, cart_id=cart["id"])

    async def add_or_increment(self, user_id: str, product_id: str, quantity: int) -> Optional[dict[str, Any]]:
        """Put ``quantity`` of a product in a user's cart, capped at stock and the per-line maximum."""
        cart = await self.get_or_create_cart(user_id=user_id)
        async with self.storage.transaction(Collections.CART_ITEMS):
            product = await self.storage.get(Collections.PRODUCTS, product_id)
            if product is None or not product.get("is_active", True):
                return None
            stock = to_int(product.get("stock_quantity"), default=0) or 0
            existing = await self.storage.first(Collections.CART_ITEMS, cart_id=cart["id"], product_id=product_id)
            current = int(existing["quantity"]) if existing else 0
            new_quantity = min(current + quantity, stock, CART_MAX_QUANTITY)
            if new_quantity <= 0:
                return None
            if existing is not None:
                return await self.storage.update(Collections.CART_ITEMS, existing["id"], {"quantity": new_quantity})
            return await self.storage.insert(
                Collections.CART_ITEMS,
                {"cart_id": cart["id"], "product_id": product_id, "quantity": new_quantity},
            )

    async def merge(self, user_id: str, session_id: Optional[str]) -> dict[str, Any]:
        guest_cart = await self.find_cart(session_id=session_id) if session_id else None
        merged = 0
        if guest_cart is not None:
            for item in await self.storage.find(Collections.CART_ITEMS, cart_id=guest_cart["id"]):
                if await self.add_or_increment(user_id, item["product_id"], int(item["quantity"])) is not None:
                    merged += 1
            await self.storage.delete_where(Collections.CART_ITEMS, cart_id=guest_cart["id"])
            await self.storage.delete(Collections.CARTS, guest_cart["id"])
        result = await self.get_cart(user_id=user_id)
        result["mergedItems"] = merged
        return result
