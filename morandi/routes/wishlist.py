from aiohttp import web

from ..middleware.auth import require_user
from .base import BaseRoutes


class WishlistRoutes(BaseRoutes):
    prefix = "/api/wishlist"

    def register(self, router: web.UrlDispatcher) -> None:
        router.add_get(self.path(), self.list_items)
        router.add_get(self.path("/count"), self.count)
        router.add_get(self.path("/check/{product_id}"), self.check)
        router.add_post(self.path("/items"), self.add)
        router.add_delete(self.path("/items"), self.remove)
        router.add_post(self.path("/items/move"), self.move_to_cart)
        router.add_delete(self.path("/clear"), self.clear)

    async def list_items(self, request: web.Request):
        user = require_user(request)
        result = await self.server.wishlist.list_items(
            user["userId"],
            self.query_int(request, "page", 1),
            self.query_int(request, "limit", 20),
        )
        return self.ok(**result)

    async def count(self, request: web.Request):
        user = require_user(request)
        return self.ok(count=await self.server.wishlist.count(user["userId"]))

    async def check(self, request: web.Request):
        user = require_user(request)
        found = await self.server.wishlist.contains(user["userId"], request.match_info["product_id"])
        return self.ok(inWishlist=found)

    async def add(self, request: web.Request):
        user = require_user(request)
        payload = await self.safe_json(request)
        item = await self.server.wishlist.add(user["userId"], str(payload.get("productId") or ""))
        return self.ok(status=201, message="Product added to wishlist", item=item)

    async def remove(self, request: web.Request):
        user = require_user(request)
        payload = await self.safe_json(request)
        await self.server.wishlist.remove(user["userId"], str(payload.get("productId") or ""))
        return self.ok(message="Product removed from wishlist")

    async def move_to_cart(self, request: web.Request):
        user = require_user(request)
        payload = await self.safe_json(request)
        line = await self.server.wishlist.move_to_cart(
            user["userId"],
            str(payload.get("productId") or ""),
            payload.get("quantity", 1),
        )
        return self.ok(message="Product moved to cart", cartItem=line)

    async def clear(self, request: web.Request):
        user = require_user(request)
        removed = await self.server.wishlist.clear(user["userId"])
        return self.ok(message="Wishlist cleared", removed=removed)


def setup(server):
    WishlistRoutes(server).register(server.app.router)
