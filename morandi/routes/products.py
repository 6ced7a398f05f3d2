from aiohttp import web

from ..middleware.auth import require_admin
from ..utils.constants import Collections
from ..utils.helpers import to_int
from .base import BaseRoutes


class ProductRoutes(BaseRoutes):
    prefix = "/api/products"

    def register(self, router: web.UrlDispatcher) -> None:
        router.add_get(self.path(), self.list_products)
        router.add_get(self.path("/featured/list"), self.featured)
        router.add_get(self.path("/search/suggestions"), self.suggestions)
        router.add_get(self.path("/related/{product_id}"), self.related)
        router.add_get(self.path("/category/{slug}"), self.by_category)
        router.add_get(self.path("/{slug}"), self.get_product)
        router.add_post(self.path(), self.upsert_product)
        router.add_delete(self.path("/{product_id}"), self.delete_product)
        router.add_post(self.path("/{product_id}/stock"), self.update_stock)

    async def list_products(self, request: web.Request):
        result = await self.server.catalog.list_products(self.query_filters(request))
        return self.ok(**result)

    async def get_product(self, request: web.Request):
        product = await self.server.catalog.get_product_by_slug(request.match_info["slug"])
        return self.ok(product=product)

    async def by_category(self, request: web.Request):
        result = await self.server.catalog.products_by_category(request.match_info["slug"], self.query_filters(request))
        return self.ok(**result)

    async def featured(self, request: web.Request):
        return self.ok(products=await self.server.catalog.featured_products())

    async def related(self, request: web.Request):
        return self.ok(products=await self.server.catalog.related_products(request.match_info["product_id"]))

    async def suggestions(self, request: web.Request):
        return self.ok(suggestions=await self.server.catalog.search_suggestions(request.query.get("q", "")))

    async def upsert_product(self, request: web.Request):
        require_admin(request)
        payload = await self.safe_json(request)
        existed = bool(payload.get("id")) and await self.server.storage.get(Collections.PRODUCTS, payload["id"]) is not None
        product = await self.server.catalog.upsert_product(payload)
        return self.ok(status=200 if existed else 201, product=product)

    async def delete_product(self, request: web.Request):
        require_admin(request)
        product = await self.server.catalog.delete_product(request.match_info["product_id"])
        return self.ok(product=product)

    async def update_stock(self, request: web.Request):
        require_admin(request)
        payload = await self.safe_json(request)
        product = await self.server.catalog.update_stock(
            request.match_info["product_id"],
            quantity=to_int(payload.get("quantity"), default=None),
            delta=to_int(payload.get("delta"), default=None),
        )
        return self.ok(product=product)


def setup(server):
    ProductRoutes(server).register(server.app.router)
