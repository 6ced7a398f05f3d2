from typing import Any

from aiohttp import web

from ..middleware.auth import require_admin
from ..utils.constants import Collections, PaymentStatus
from ..utils.helpers import money, to_float, to_int
from .base import BaseRoutes

LOW_STOCK_THRESHOLD = 5


class AdminRoutes(BaseRoutes):
    """Moderation and store overview; every handler requires the admin role."""

    prefix = "/api/admin"

    def register(self, router: web.UrlDispatcher) -> None:
        router.add_get(self.path("/dashboard"), self.dashboard)
        router.add_put(self.path("/users/{user_id}/role"), self.set_user_role)
        router.add_get(self.path("/reviews"), self.list_reviews)
        router.add_get(self.path("/reviews/analytics"), self.review_analytics)
        router.add_get(self.path("/reviews/reports"), self.list_reports)
        router.add_put(self.path("/reviews/reports/{report_id}"), self.update_report)
        router.add_post(self.path("/reviews/bulk-approve"), self.bulk_approve)
        router.add_put(self.path("/reviews/{review_id}/approve"), self.approve_review)
        router.add_put(self.path("/reviews/{review_id}/reject"), self.reject_review)

    async def dashboard(self, request: web.Request):
        require_admin(request)
        storage = self.server.storage
        orders = await storage.load(Collections.ORDERS)
        products = [row for row in await storage.load(Collections.PRODUCTS) if row.get("is_active", True)]
        pending_reviews = await storage.find(Collections.REVIEWS, status="pending")

        paid = [order for order in orders if order.get("payment_status") == PaymentStatus.PAID]
        revenue = money(sum(to_float(order.get("total_amount"), default=0.0) or 0.0 for order in paid))
        status_counts: dict[str, int] = {}
        for order in orders:
            status = str(order.get("status") or "pending")
            status_counts[status] = status_counts.get(status, 0) + 1

        def stock(row: dict[str, Any]) -> int:
            return to_int(row.get("stock_quantity"), default=0) or 0

        top_products = sorted(products, key=lambda row: to_int(row.get("sales_count"), default=0) or 0, reverse=True)[:5]
        low_stock = sorted((row for row in products if stock(row) <= LOW_STOCK_THRESHOLD), key=stock)

        return self.ok(
            summary={
                "revenue": revenue,
                "totalOrders": len(orders),
                "paidOrders": len(paid),
                "ordersByStatus": status_counts,
                "totalProducts": len(products),
                "pendingReviews": len(pending_reviews),
            },
            topProducts=[
                {"id": row["id"], "name": row.get("name"), "sales_count": row.get("sales_count", 0)}
                for row in top_products
            ],
            lowStockProducts=[
                {"id": row["id"], "name": row.get("name"), "stock_quantity": stock(row)} for row in low_stock
            ],
        )

    async def set_user_role(self, request: web.Request):
        require_admin(request)
        payload = await self.safe_json(request)
        user = await self.server.accounts.set_role(request.match_info["user_id"], str(payload.get("role") or ""))
        return self.ok(message="User role updated", user=user)

    async def list_reviews(self, request: web.Request):
        require_admin(request)
        result = await self.server.reviews.list_by_status(
            request.query.get("status", "pending"),
            self.query_int(request, "page", 1),
            self.query_int(request, "limit", 20),
        )
        return self.ok(**result)

    async def approve_review(self, request: web.Request):
        admin = require_admin(request)
        payload = await self.safe_json(request)
        review = await self.server.reviews.approve(request.match_info["review_id"], admin, payload.get("adminNotes"))
        return self.ok(message="Review approved successfully", review=review)

    async def reject_review(self, request: web.Request):
        admin = require_admin(request)
        payload = await self.safe_json(request)
        review = await self.server.reviews.reject(request.match_info["review_id"], admin, str(payload.get("rejectionReason") or ""))
        return self.ok(message="Review rejected successfully", review=review)

    async def bulk_approve(self, request: web.Request):
        admin = require_admin(request)
        payload = await self.safe_json(request)
        approved = await self.server.reviews.bulk_approve(payload.get("reviewIds"), admin)
        return self.ok(message=f"{approved} review(s) approved successfully", approvedCount=approved)

    async def review_analytics(self, request: web.Request):
        require_admin(request)
        return self.ok(analytics=await self.server.reviews.admin_analytics())

    async def list_reports(self, request: web.Request):
        require_admin(request)
        return self.ok(reports=await self.server.reviews.list_reports(request.query.get("status", "")))

    async def update_report(self, request: web.Request):
        admin = require_admin(request)
        payload = await self.safe_json(request)
        report = await self.server.reviews.update_report_status(
            request.match_info["report_id"],
            str(payload.get("status") or ""),
            admin,
            payload.get("adminNotes"),
        )
        return self.ok(message="Report status updated successfully", report=report)


def setup(server):
    AdminRoutes(server).register(server.app.router)
