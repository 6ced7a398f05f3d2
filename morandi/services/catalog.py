from typing import Any, Optional

from ..errors import NotFoundError, ValidationError
from ..utils.constants import Collections
from ..utils.helpers import money, paginate, slugify, to_bool, to_float, to_int, utc_now_iso
from ..utils.logger import logger
from .storage import ShopStorage

SORTS = {
    "price_asc": (lambda p: CatalogService.effective_price(p), False),
    "price_desc": (lambda p: CatalogService.effective_price(p), True),
    "name_asc": (lambda p: str(p.get("name") or "").lower(), False),
    "name_desc": (lambda p: str(p.get("name") or "").lower(), True),
    "popularity": (lambda p: (to_int(p.get("sales_count"), default=0) or 0, str(p.get("created_at") or "")), True),
}


def _category_order(row: dict[str, Any]) -> tuple[int, str]:
    return to_int(row.get("sort_order"), default=0) or 0, str(row.get("name") or "")


class CatalogService:
    """Products and their category tree."""

    def __init__(self, storage: ShopStorage):
        self.storage = storage

    @staticmethod
    def effective_price(product: dict[str, Any]) -> float:
        sale_price = to_float(product.get("sale_price"), default=None)
        if sale_price is not None and sale_price > 0:
            return sale_price
        return to_float(product.get("price"), default=0.0) or 0.0

    @staticmethod
    def public_product(product: dict[str, Any], category: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        public = dict(product)
        public["effective_price"] = CatalogService.effective_price(product)
        public["in_stock"] = (to_int(product.get("stock_quantity"), default=0) or 0) > 0
        if category is not None:
            public["category"] = {"id": category.get("id"), "name": category.get("name"), "slug": category.get("slug")}
        return public

    @staticmethod
    def normalize_product(payload: dict[str, Any], existing: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        base = dict(existing or {})
        name = str(payload.get("name", base.get("name", "")) or "").strip()
        if not name:
            raise ValidationError("Product name is required")

        price = to_float(payload.get("price", base.get("price")), default=None)
        if price is None or price < 0:
            raise ValidationError("Product price must be a non-negative number")
        sale_price = to_float(payload.get("sale_price", base.get("sale_price")), default=None)
        if sale_price is not None and (sale_price <= 0 or sale_price >= price):
            sale_price = None

        tags = payload.get("tags", base.get("tags", []))
        images = payload.get("images", base.get("images", []))
        attributes = payload.get("attributes", base.get("attributes", {}))

        base.update(
            {
                "name": name,
                "slug": slugify(str(payload.get("slug") or base.get("slug") or name)),
                "description": str(payload.get("description", base.get("description", "")) or ""),
                "short_description": str(payload.get("short_description", base.get("short_description", "")) or ""),
                "sku": str(payload.get("sku", base.get("sku", "")) or ""),
                "price": money(price),
                "sale_price": money(sale_price) if sale_price is not None else None,
                "stock_quantity": max(0, to_int(payload.get("stock_quantity", base.get("stock_quantity")), default=0) or 0),
                "category_id": payload.get("category_id", base.get("category_id")),
                "weight": to_float(payload.get("weight", base.get("weight")), default=None),
                "tags": [str(tag) for tag in tags] if isinstance(tags, list) else [],
                "images": [str(image) for image in images] if isinstance(images, list) else [],
                "attributes": attributes if isinstance(attributes, dict) else {},
                "is_active": to_bool(payload.get("is_active", base.get("is_active", True))),
                "is_featured": to_bool(payload.get("is_featured", base.get("is_featured", False))),
                "sales_count": to_int(base.get("sales_count"), default=0) or 0,
            }
        )
        return base

    async def _categories_by_id(self) -> dict[str, dict[str, Any]]:
        return {str(row["id"]): row for row in await self.storage.load(Collections.CATEGORIES)}

    async def _category_ids_for(self, slug: str, include_children: bool = True) -> Optional[set[str]]:
        categories = await self.storage.load(Collections.CATEGORIES)
        target = next((row for row in categories if row.get("slug") == slug), None)
        if target is None:
            return None
        ids = {str(target["id"])}
        if include_children:
            ids.update(str(row["id"]) for row in categories if row.get("parent_id") == target["id"])
        return ids

    async def _active_products(self) -> list[dict[str, Any]]:
        return await self.storage.find(Collections.PRODUCTS, lambda row: bool(row.get("is_active", True)))

    async def _decorate(self, products: list[dict[str, Any]]) -> list[dict[str, Any]]:
        categories = await self._categories_by_id()
        return [self.public_product(product, categories.get(str(product.get("category_id")))) for product in products]

    @staticmethod
    def _sort(products: list[dict[str, Any]], sort: str) -> list[dict[str, Any]]:
        if sort in SORTS:
            key, reverse = SORTS[sort]
            return sorted(products, key=key, reverse=reverse)
        return sorted(products, key=lambda p: str(p.get("created_at") or ""), reverse=True)

    @staticmethod
    def _matches_search(product: dict[str, Any], search: str) -> bool:
        haystack = " ".join(
            [
                str(product.get("name") or ""),
                str(product.get("description") or ""),
                str(product.get("short_description") or ""),
                " ".join(str(tag) for tag in product.get("tags") or []),
            ]
        ).lower()
        return all(term in haystack for term in search.lower().split())

    async def list_products(self, filters: dict[str, Any]) -> dict[str, Any]:
        page = to_int(filters.get("page"), default=1) or 1
        limit = to_int(filters.get("limit"), default=12) or 12
        products = await self._active_products()

        category = str(filters.get("category") or "").strip()
        if category:
            ids = await self._category_ids_for(category) or set()
            products = [p for p in products if str(p.get("category_id")) in ids]

        subcategory = str(filters.get("subcategory") or "").strip()
        if subcategory:
            ids = await self._category_ids_for(subcategory, include_children=False) or set()
            products = [p for p in products if str(p.get("category_id")) in ids]

        min_price = to_float(filters.get("minPrice"), default=None)
        if min_price is not None:
            products = [p for p in products if self.effective_price(p) >= min_price]
        max_price = to_float(filters.get("maxPrice"), default=None)
        if max_price is not None:
            products = [p for p in products if self.effective_price(p) <= max_price]

        material = str(filters.get("material") or "").strip().lower()
        if material:
            products = [
                p for p in products if material in str((p.get("attributes") or {}).get("material") or "").lower()
            ]
        if to_bool(filters.get("organicCertified")):
            products = [p for p in products if to_bool((p.get("attributes") or {}).get("organic_certified"))]
        if to_bool(filters.get("featured")):
            products = [p for p in products if p.get("is_featured")]

        search = str(filters.get("search") or "").strip()
        if search:
            products = [p for p in products if self._matches_search(p, search)]

        products = self._sort(products, str(filters.get("sort") or ""))
        page_rows, pagination = paginate(products, page, limit)
        return {"products": await self._decorate(page_rows), "pagination": pagination}

    async def get_product(self, product_id: str) -> dict[str, Any]:
        product = await self.storage.get(Collections.PRODUCTS, product_id)
        if product is None:
            raise NotFoundError("Product not found", code="PRODUCT_NOT_FOUND")
        return product

    async def get_product_by_slug(self, slug: str) -> dict[str, Any]:
        product = await self.storage.first(Collections.PRODUCTS, slug=slug)
        if product is None or not product.get("is_active", True):
            raise NotFoundError("Product not found", code="PRODUCT_NOT_FOUND")
        return (await self._decorate([product]))[0]

    async def products_by_category(self, slug: str, filters: dict[str, Any]) -> dict[str, Any]:
        ids = await self._category_ids_for(slug)
        if ids is None:
            raise NotFoundError("Category not found", code="CATEGORY_NOT_FOUND")
        page = to_int(filters.get("page"), default=1) or 1
        limit = to_int(filters.get("limit"), default=12) or 12
        products = [p for p in await self._active_products() if str(p.get("category_id")) in ids]
        products = self._sort(products, str(filters.get("sort") or ""))
        page_rows, pagination = paginate(products, page, limit)
        return {"products": await self._decorate(page_rows), "pagination": pagination}

    async def featured_products(self, limit: int = 8) -> list[dict[str, Any]]:
        products = [p for p in await self._active_products() if p.get("is_featured")]
        return await self._decorate(self._sort(products, "")[:limit])

    async def related_products(self, product_id: str, limit: int = 4) -> list[dict[str, Any]]:
        product = await self.get_product(product_id)
        related = [
            p
            for p in await self._active_products()
            if p.get("category_id") == product.get("category_id") and p.get("id") != product.get("id")
        ]
        return await self._decorate(self._sort(related, "")[:limit])

    async def search_suggestions(self, query: str, limit: int = 5) -> list[dict[str, Any]]:
        query = query.strip().lower()
        if len(query) < 2:
            return []
        suggestions = []
        for product in self._sort(await self._active_products(), "name_asc"):
            name = str(product.get("name") or "")
            short_description = str(product.get("short_description") or "")
            if query in name.lower() or query in short_description.lower():
                suggestions.append({"name": name, "slug": product.get("slug"), "short_description": short_description})
            if len(suggestions) >= limit:
                break
        return suggestions

    async def category_tree(self) -> list[dict[str, Any]]:
        categories = [row for row in await self.storage.load(Collections.CATEGORIES) if row.get("is_active", True)]
        tree = []
        for parent in sorted((row for row in categories if not row.get("parent_id")), key=_category_order):
            node = dict(parent)
            node["subcategories"] = sorted(
                (dict(row) for row in categories if row.get("parent_id") == parent["id"]),
                key=_category_order,
            )
            tree.append(node)
        return tree

    async def get_category(self, slug: str) -> dict[str, Any]:
        categories = await self.storage.load(Collections.CATEGORIES)
        category = next((row for row in categories if row.get("slug") == slug and row.get("is_active", True)), None)
        if category is None:
            raise NotFoundError("Category not found", code="CATEGORY_NOT_FOUND")
        node = dict(category)
        node["subcategories"] = sorted(
            (dict(row) for row in categories if row.get("parent_id") == category["id"] and row.get("is_active", True)),
            key=_category_order,
        )
        return node

    async def upsert_product(self, payload: dict[str, Any]) -> dict[str, Any]:
        product_id = str(payload.get("id") or "").strip()
        existing = await self.storage.get(Collections.PRODUCTS, product_id) if product_id else None
        product = self.normalize_product(payload, existing)

        clash = await self.storage.first(
            Collections.PRODUCTS,
            lambda row: row.get("slug") == product["slug"] and row.get("id") != product.get("id"),
        )
        if clash is not None:
            raise ValidationError("A product with this slug already exists", code="DUPLICATE_SLUG")

        if existing is not None:
            return await self.storage.update(Collections.PRODUCTS, existing["id"], product)
        if product_id:
            product["id"] = product_id
        created = await self.storage.insert(Collections.PRODUCTS, product)
        logger.info(f"Created product {created['name']} ({created['id']})")
        return created

    async def delete_product(self, product_id: str) -> dict[str, Any]:
        await self.get_product(product_id)
        return await self.storage.update(Collections.PRODUCTS, product_id, {"is_active": False})

    async def update_stock(self, product_id: str, quantity: Optional[int] = None, delta: Optional[int] = None) -> dict[str, Any]:
        if quantity is None and delta is None:
            raise ValidationError("quantity or delta is required")
        async with self.storage.transaction(Collections.PRODUCTS):
            product = await self.get_product(product_id)
            current = to_int(product.get("stock_quantity"), default=0) or 0
            stock = quantity if quantity is not None else current + int(delta or 0)
            return await self.storage.update(Collections.PRODUCTS, product_id, {"stock_quantity": max(0, stock)})

    async def adjust_stock(self, product_id: str, delta: int) -> dict[str, Any]:
        """Apply ``delta`` to stock; refuses to go below zero."""
        product = await self.get_product(product_id)
        current = to_int(product.get("stock_quantity"), default=0) or 0
        if current + delta < 0:
            raise ValidationError(
                f"Insufficient stock for {product.get('name')}",
                code="INSUFFICIENT_STOCK",
                details={"productId": product_id, "available": current},
            )
        sales_count = to_int(product.get("sales_count"), default=0) or 0
        changes: dict[str, Any] = {"stock_quantity": current + delta, "sales_count": max(0, sales_count - delta)}
        if delta < 0:
            changes["last_sold_at"] = utc_now_iso()
        return await self.storage.update(Collections.PRODUCTS, product_id, changes)
