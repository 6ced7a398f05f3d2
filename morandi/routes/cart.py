from typing import Optional

from aiohttp import web

from ..middleware.auth import current_user, require_user
from .base import CART_SESSION_COOKIE, BaseRoutes


class CartRoutes(BaseRoutes):
    """Guest carts ride on the ``sessionId`` cookie, signed-in users on their token."""

    prefix = "/api/cart"

    def register(self, router: web.UrlDispatcher) -> None:
        router.add_get(self.path(), self.get_cart)
        router.add_get(self.path("/count"), self.count)
        router.add_post(self.path("/items"), self.add_item)
        router.add_put(self.path("/items/{item_id}"), self.update_item)
        router.add_delete(self.path("/items/{item_id}"), self.remove_item)
        router.add_post(self.path("/clear"), self.clear)
        router.add_post(self.path("/merge"), self.merge)

    def _owner(self, request: web.Request) -> tuple[Optional[str], Optional[str], bool]:
        user = current_user(request)
        if user is not None:
            return user["userId"], None, False
        session_id, created = self.cart_session(request)
        return None, session_id, created

    def _respond(self, session_id: Optional[str], created: bool, status: int = 200, **payload) -> web.Response:
        response = self.ok(status=status, **payload)
        self.remember_cart_session(response, session_id, created)
        return response

    async def get_cart(self, request: web.Request):
        user_id, session_id, created = self._owner(request)
        result = await self.server.cart.get_cart(user_id, session_id)
        return self._respond(session_id, created, **result)

    async def count(self, request: web.Request):
        user_id, session_id, created = self._owner(request)
        return self._respond(session_id, created, count=await self.server.cart.count(user_id, session_id))

    async def add_item(self, request: web.Request):
        user_id, session_id, created = self._owner(request)
        payload = await self.safe_json(request)
        item = await self.server.cart.add_item(
            str(payload.get("productId") or ""),
            payload.get("quantity", 1),
            user_id,
            session_id,
        )
        return self._respond(session_id, created, status=201, item=item, message="Item added to cart")

    async def update_item(self, request: web.Request):
        user_id, session_id, created = self._owner(request)
        payload = await self.safe_json(request)
        item = await self.server.cart.update_item(request.match_info["item_id"], payload.get("quantity"), user_id, session_id)
        return self._respond(session_id, created, item=item, message="Cart item updated")

    async def remove_item(self, request: web.Request):
        user_id, session_id, created = self._owner(request)
        await self.server.cart.remove_item(request.match_info["item_id"], user_id, session_id)
        return self._respond(session_id, created, message="Item removed from cart")

    async def clear(self, request: web.Request):
        user_id, session_id, created = self._owner(request)
        removed = await self.server.cart.clear(user_id, session_id)
        return self._respond(session_id, created, removed=removed, message="Cart cleared")

    async def merge(self, request: web.Request):
        user = require_user(request)
        result = await self.server.cart.merge(user["userId"], request.cookies.get(CART_SESSION_COOKIE))
        response = self.ok(message="Cart merged successfully", **result)
        response.del_cookie(CART_SESSION_COOKIE, path="/")
        return response


def setup(server):
    CartRoutes(server).register(server.app.router)
