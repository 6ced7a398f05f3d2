from aiohttp import web

from ..middleware.auth import require_user
from .base import BaseRoutes


class ReviewRoutes(BaseRoutes):
    prefix = "/api/reviews"

    def register(self, router: web.UrlDispatcher) -> None:
        router.add_get(self.path("/products/{product_id}/reviews"), self.product_reviews)
        router.add_get(self.path("/products/{product_id}/reviews/analytics"), self.product_analytics)
        router.add_get(self.path("/products/{product_id}/can-review"), self.can_review)
        router.add_post(self.path("/uploads"), self.upload_images)
        router.add_post(self.path(), self.create_review)
        router.add_put(self.path("/{review_id}"), self.update_review)
        router.add_delete(self.path("/{review_id}"), self.delete_review)
        router.add_post(self.path("/{review_id}/vote"), self.vote)
        router.add_post(self.path("/{review_id}/report"), self.report)

    async def product_reviews(self, request: web.Request):
        result = await self.server.reviews.list_product_reviews(request.match_info["product_id"], self.query_filters(request))
        return self.ok(**result)

    async def product_analytics(self, request: web.Request):
        analytics = await self.server.reviews.product_analytics(request.match_info["product_id"])
        return self.ok(analytics=analytics)

    async def can_review(self, request: web.Request):
        user = require_user(request)
        result = await self.server.reviews.can_review(user["userId"], request.match_info["product_id"])
        return self.ok(**result)

    async def upload_images(self, request: web.Request):
        require_user(request)
        files = await self.server.uploads.save_from_request(request)
        return self.ok(status=201, files=files, urls=[item["url"] for item in files])

    async def create_review(self, request: web.Request):
        user = require_user(request)
        payload = await self.safe_json(request)
        review = await self.server.reviews.create_review(user, payload)
        return self.ok(status=201, message="Review submitted and awaiting moderation", review=review)

    async def update_review(self, request: web.Request):
        user = require_user(request)
        payload = await self.safe_json(request)
        review = await self.server.reviews.update_review(request.match_info["review_id"], user, payload)
        return self.ok(message="Review updated successfully", review=review)

    async def delete_review(self, request: web.Request):
        user = require_user(request)
        await self.server.reviews.delete_review(request.match_info["review_id"], user)
        return self.ok(message="Review deleted successfully")

    async def vote(self, request: web.Request):
        user = require_user(request)
        payload = await self.safe_json(request)
        review = await self.server.reviews.vote(request.match_info["review_id"], user["userId"], str(payload.get("voteType") or ""))
        return self.ok(message="Vote recorded", review=review)

    async def report(self, request: web.Request):
        user = require_user(request)
        payload = await self.safe_json(request)
        report = await self.server.reviews.report(
            request.match_info["review_id"],
            user["userId"],
            str(payload.get("reportReason") or ""),
            payload.get("reportDescription"),
        )
        return self.ok(status=201, message="Review reported successfully", report=report)


def setup(server):
    ReviewRoutes(server).register(server.app.router)
