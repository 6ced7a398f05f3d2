from typing import Any

from ..errors import ConflictError, NotFoundError, ValidationError
from ..utils.constants import CART_MAX_QUANTITY, Collections
from ..utils.helpers import paginate, to_int
from .cart import CartService
from .catalog import CatalogService
from .storage import ShopStorage


class WishlistService:
    def __init__(self, storage: ShopStorage, cart: CartService):
        self.storage = storage
        self.cart = cart

    async def list_items(self, user_id: str, page: int, limit: int) -> dict[str, Any]:
        entries = await self.storage.find(Collections.WISHLIST, user_id=user_id)
        entries.sort(key=lambda row: str(row.get("created_at") or ""), reverse=True)
        products = {row["id"]: row for row in await self.storage.load(Collections.PRODUCTS)}
        page_rows, pagination = paginate(entries, page, limit)
        items = []
        for entry in page_rows:
            product = products.get(entry.get("product_id"))
            items.append(dict(entry, product=CatalogService.public_product(product) if product else None))
        return {"items": items, "pagination": pagination}

    async def add(self, user_id: str, product_id: str) -> dict[str, Any]:
        if not product_id:
            raise ValidationError("productId is required")
        product = await self.storage.get(Collections.PRODUCTS, product_id)
        if product is None or not product.get("is_active", True):
            raise NotFoundError("Product not found or inactive", code="PRODUCT_NOT_FOUND")
        async with self.storage.transaction(Collections.WISHLIST):
            if await self.storage.first(Collections.WISHLIST, user_id=user_id, product_id=product_id):
                raise ConflictError("Product already in wishlist", code="ALREADY_IN_WISHLIST")
            return await self.storage.insert(Collections.WISHLIST, {"user_id": user_id, "product_id": product_id})

    async def remove(self, user_id: str, product_id: str) -> None:
        if not product_id:
            raise ValidationError("productId is required")
        if not await self.storage.delete_where(Collections.WISHLIST, user_id=user_id, product_id=product_id):
            raise NotFoundError("Product not in wishlist", code="NOT_IN_WISHLIST")

    async def move_to_cart(self, user_id: str, product_id: str, quantity: Any = 1) -> dict[str, Any]:
        quantity = to_int(quantity, default=1) or 1
        if quantity < 1 or quantity > CART_MAX_QUANTITY:
            raise ValidationError(f"Quantity must be between 1 and {CART_MAX_QUANTITY}")
        entry = await self.storage.first(Collections.WISHLIST, user_id=user_id, product_id=product_id)
        if entry is None:
            raise NotFoundError("Product not in wishlist", code="NOT_IN_WISHLIST")

        line = await self.cart.add_or_increment(user_id, product_id, quantity)
        if line is None:
            raise ValidationError("Product is unavailable", code="PRODUCT_UNAVAILABLE")
        await self.storage.delete(Collections.WISHLIST, entry["id"])
        return line

    async def contains(self, user_id: str, product_id: str) -> bool:
        return await self.storage.first(Collections.WISHLIST, user_id=user_id, product_id=product_id) is not None

    async def count(self, user_id: str) -> int:
        return len(await self.storage.find(Collections.WISHLIST, user_id=user_id))

    async def clear(self, user_id: str) -> int:
        return await self.storage.delete_where(Collections.WISHLIST, user_id=user_id)
