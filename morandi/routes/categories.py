from aiohttp import web

from .base import BaseRoutes


class CategoryRoutes(BaseRoutes):
    prefix = "/api/categories"

    def register(self, router: web.UrlDispatcher) -> None:
        router.add_get(self.path(), self.list_categories)
        router.add_get(self.path("/{slug}"), self.get_category)
        router.add_get(self.path("/{slug}/products"), self.category_products)

    async def list_categories(self, request: web.Request):
        return self.ok(categories=await self.server.catalog.category_tree())

    async def get_category(self, request: web.Request):
        return self.ok(category=await self.server.catalog.get_category(request.match_info["slug"]))

    async def category_products(self, request: web.Request):
        slug = request.match_info["slug"]
        category = await self.server.catalog.get_category(slug)
        result = await self.server.catalog.products_by_category(slug, self.query_filters(request))
        return self.ok(category=category, **result)


def setup(server):
    CategoryRoutes(server).register(server.app.router)
