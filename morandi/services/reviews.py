from datetime import timedelta
from typing import Any, Optional

from ..errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from ..utils.constants import REVIEW_EDIT_WINDOW_DAYS, Collections, OrderStatus, ReportStatus
from ..utils.helpers import paginate, parse_datetime, to_int, utc_now, utc_now_iso
from ..utils.logger import logger
from .storage import ShopStorage

PURCHASED_STATUSES = {
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
}
REVIEW_STATUSES = ("pending", "approved", "rejected")
REVIEW_SORT_KEYS = {
    "helpful": lambda review: (int(review.get("helpful_count") or 0), str(review.get("created_at") or "")),
    "rating": lambda review: (int(review["rating"]), str(review.get("created_at") or "")),
    "date": lambda review: str(review.get("created_at") or ""),
}


def _validate_rating(value: Any) -> int:
    rating = to_int(value, default=None)
    if rating is None or rating < 1 or rating > 5:
        raise ValidationError("Rating must be between 1 and 5")
    return rating


def _validate_text(value: Any, field: str, minimum: int, maximum: int) -> str:
    text = str(value or "").strip()
    if len(text) < minimum or len(text) > maximum:
        raise ValidationError(f"{field} must be between {minimum} and {maximum} characters")
    return text


def _image_urls(value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError("imageUrls must be a list")
    return [str(url) for url in value if str(url).strip()][:5]


def _rating_summary(reviews: list[dict[str, Any]]) -> tuple[float, dict[str, int]]:
    distribution = {str(star): 0 for star in range(1, 6)}
    for review in reviews:
        distribution[str(review["rating"])] += 1
    average = round(sum(review["rating"] for review in reviews) / len(reviews), 2) if reviews else 0.0
    return average, distribution


class ReviewService:
    """Product reviews, votes, reports and their moderation."""

    def __init__(self, storage: ShopStorage):
        self.storage = storage

    async def _get_review(self, review_id: str) -> dict[str, Any]:
        review = await self.storage.get(Collections.REVIEWS, review_id)
        if review is None:
            raise NotFoundError("Review not found", code="REVIEW_NOT_FOUND")
        return review

    async def _approved_for(self, product_id: str) -> list[dict[str, Any]]:
        return await self.storage.find(Collections.REVIEWS, product_id=product_id, status="approved")

    async def list_product_reviews(self, product_id: str, filters: dict[str, Any]) -> dict[str, Any]:
        page = to_int(filters.get("page"), default=1) or 1
        limit = to_int(filters.get("limit"), default=10) or 10
        approved = await self._approved_for(product_id)
        reviews = list(approved)

        rating = to_int(filters.get("rating"), default=None)
        if rating:
            reviews = [review for review in reviews if review["rating"] == rating]
        search = str(filters.get("search") or "").strip().lower()
        if search:
            reviews = [
                review
                for review in reviews
                if search in review["title"].lower() or search in review["review_text"].lower()
            ]

        sort_by = str(filters.get("sortBy") or "date")
        descending = str(filters.get("sortOrder") or "desc").lower() != "asc"
        reviews.sort(key=REVIEW_SORT_KEYS.get(sort_by, REVIEW_SORT_KEYS["date"]), reverse=descending)

        page_rows, pagination = paginate(reviews, page, limit)
        average, distribution = _rating_summary(approved)
        return {
            "reviews": page_rows,
            "totalCount": pagination["total"],
            "averageRating": average,
            "ratingDistribution": distribution,
            "currentPage": pagination["page"],
            "totalPages": pagination["totalPages"],
            "hasNextPage": pagination["page"] < pagination["totalPages"],
            "hasPreviousPage": pagination["page"] > 1,
        }

    async def has_purchased(self, user_id: str, product_id: str) -> bool:
        orders = await self.storage.find(
            Collections.ORDERS,
            lambda row: row.get("status") in PURCHASED_STATUSES,
            user_id=user_id,
        )
        order_ids = {order["id"] for order in orders}
        if not order_ids:
            return False
        item = await self.storage.first(
            Collections.ORDER_ITEMS,
            lambda row: row.get("order_id") in order_ids,
            product_id=product_id,
        )
        return item is not None

    async def can_review(self, user_id: str, product_id: str) -> dict[str, Any]:
        has_purchase = await self.has_purchased(user_id, product_id)
        has_review = await self.storage.first(Collections.REVIEWS, user_id=user_id, product_id=product_id) is not None
        reason = None
        if not has_purchase:
            reason = "You can only review products you have purchased"
        elif has_review:
            reason = "You have already reviewed this product"
        return {
            "canReview": has_purchase and not has_review,
            "hasPurchase": has_purchase,
            "hasReview": has_review,
            "reason": reason,
        }

    async def create_review(self, user: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
        product_id = str(payload.get("productId") or "").strip()
        if not product_id:
            raise ValidationError("productId is required")
        rating = _validate_rating(payload.get("rating"))
        title = _validate_text(payload.get("title"), "Title", 3, 255)
        review_text = _validate_text(payload.get("reviewText"), "Review text", 10, 2000)
        image_urls = _image_urls(payload.get("imageUrls"))

        if await self.storage.get(Collections.PRODUCTS, product_id) is None:
            raise NotFoundError("Product not found", code="PRODUCT_NOT_FOUND")

        eligibility = await self.can_review(user["userId"], product_id)
        if not eligibility["canReview"]:
            raise PermissionDenied(eligibility["reason"], code="REVIEW_NOT_ALLOWED")

        review = await self.storage.insert(
            Collections.REVIEWS,
            {
                "product_id": product_id,
                "user_id": user["userId"],
                "user_email": user.get("email"),
                "rating": rating,
                "title": title,
                "review_text": review_text,
                "image_urls": image_urls,
                "is_verified_purchase": eligibility["hasPurchase"],
                "is_approved": False,
                "status": "pending",
                "is_edited": False,
                "helpful_count": 0,
                "unhelpful_count": 0,
                "report_count": 0,
            },
        )
        logger.info(f"Review {review['id']} submitted for product {product_id}")
        return review

    async def update_review(self, review_id: str, user: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
        review = await self._get_review(review_id)
        if review.get("user_id") != user["userId"]:
            raise PermissionDenied("You can only edit your own reviews")
        created = parse_datetime(review.get("created_at"))
        if created is not None and utc_now() - created > timedelta(days=REVIEW_EDIT_WINDOW_DAYS):
            raise PermissionDenied(
                f"Reviews can only be edited within {REVIEW_EDIT_WINDOW_DAYS} days",
                code="EDIT_WINDOW_EXPIRED",
            )

        changes: dict[str, Any] = {"is_edited": True, "edited_at": utc_now_iso()}
        if "rating" in payload:
            changes["rating"] = _validate_rating(payload.get("rating"))
        if "title" in payload:
            changes["title"] = _validate_text(payload.get("title"), "Title", 3, 255)
        if "reviewText" in payload:
            changes["review_text"] = _validate_text(payload.get("reviewText"), "Review text", 10, 2000)
        if "imageUrls" in payload:
            changes["image_urls"] = _image_urls(payload.get("imageUrls"))
        return await self.storage.update(Collections.REVIEWS, review_id, changes)

    async def delete_review(self, review_id: str, user: dict[str, Any]) -> None:
        review = await self._get_review(review_id)
        if review.get("user_id") != user["userId"] and user.get("role") != "admin":
            raise PermissionDenied("You can only delete your own reviews")
        async with self.storage.transaction(Collections.REVIEWS, Collections.REVIEW_VOTES, Collections.REVIEW_REPORTS):
            await self.storage.delete_where(Collections.REVIEW_VOTES, review_id=review_id)
            await self.storage.delete_where(Collections.REVIEW_REPORTS, review_id=review_id)
            await self.storage.delete(Collections.REVIEWS, review_id)

    async def vote(self, review_id: str, user_id: str, vote_type: str) -> dict[str, Any]:
        if vote_type not in {"helpful", "unhelpful"}:
            raise ValidationError("voteType must be 'helpful' or 'unhelpful'")
        await self._get_review(review_id)

        async with self.storage.transaction(Collections.REVIEWS, Collections.REVIEW_VOTES):
            existing = await self.storage.first(Collections.REVIEW_VOTES, review_id=review_id, user_id=user_id)
            if existing is None:
                await self.storage.insert(
                    Collections.REVIEW_VOTES,
                    {"review_id": review_id, "user_id": user_id, "vote_type": vote_type},
                )
            elif existing.get("vote_type") != vote_type:
                await self.storage.update(Collections.REVIEW_VOTES, existing["id"], {"vote_type": vote_type})

            votes = await self.storage.find(Collections.REVIEW_VOTES, review_id=review_id)
            return await self.storage.update(
                Collections.REVIEWS,
                review_id,
                {
                    "helpful_count": sum(1 for vote in votes if vote["vote_type"] == "helpful"),
                    "unhelpful_count": sum(1 for vote in votes if vote["vote_type"] == "unhelpful"),
                },
            )

    async def report(self, review_id: str, user_id: str, reason: str, description: Optional[str] = None) -> dict[str, Any]:
        reason = str(reason or "").strip()
        if not reason:
            raise ValidationError("reportReason is required")
        review = await self._get_review(review_id)

        async with self.storage.transaction(Collections.REVIEWS, Collections.REVIEW_REPORTS):
            if await self.storage.first(Collections.REVIEW_REPORTS, review_id=review_id, reporter_id=user_id):
                raise ConflictError("You have already reported this review", code="ALREADY_REPORTED")
            created = await self.storage.insert(
                Collections.REVIEW_REPORTS,
                {
                    "review_id": review_id,
                    "reporter_id": user_id,
                    "report_reason": reason,
                    "report_description": description,
                    "status": ReportStatus.PENDING,
                },
            )
            await self.storage.update(
                Collections.REVIEWS,
                review_id,
                {"report_count": int(review.get("report_count") or 0) + 1},
            )
        return created

    async def product_analytics(self, product_id: str) -> dict[str, Any]:
        approved = await self._approved_for(product_id)
        average, distribution = _rating_summary(approved)
        return {
            "totalReviews": len(approved),
            "averageRating": average,
            "ratingDistribution": distribution,
            "verifiedPurchases": sum(1 for review in approved if review.get("is_verified_purchase")),
            "withImages": sum(1 for review in approved if review.get("image_urls")),
            "helpfulVotes": sum(int(review.get("helpful_count") or 0) for review in approved),
        }

    async def list_by_status(self, status: str, page: int, limit: int) -> dict[str, Any]:
        reviews = await self.storage.load(Collections.REVIEWS)
        if status != "all":
            if status not in REVIEW_STATUSES:
                raise ValidationError(f"Invalid status. Must be one of: {', '.join(REVIEW_STATUSES)}, all")
            reviews = [review for review in reviews if review.get("status") == status]
        reviews.sort(key=lambda review: str(review.get("created_at") or ""), reverse=True)
        page_rows, pagination = paginate(reviews, page, limit)
        return {"reviews": page_rows, "pagination": pagination}

    async def approve(self, review_id: str, admin: dict[str, Any], admin_notes: Optional[str] = None) -> dict[str, Any]:
        await self._get_review(review_id)
        return await self.storage.update(
            Collections.REVIEWS,
            review_id,
            {
                "status": "approved",
                "is_approved": True,
                "approved_by": admin.get("userId"),
                "approved_at": utc_now_iso(),
                "admin_notes": admin_notes,
                "rejection_reason": None,
            },
        )

    async def reject(self, review_id: str, admin: dict[str, Any], rejection_reason: str) -> dict[str, Any]:
        if not str(rejection_reason or "").strip():
            raise ValidationError("rejectionReason is required")
        await self._get_review(review_id)
        return await self.storage.update(
            Collections.REVIEWS,
            review_id,
            {
                "status": "rejected",
                "is_approved": False,
                "approved_by": admin.get("userId"),
                "rejection_reason": rejection_reason,
            },
        )

    async def bulk_approve(self, review_ids: Any, admin: dict[str, Any]) -> int:
        if not isinstance(review_ids, list) or not review_ids:
            raise ValidationError("reviewIds must be a non-empty list")
        wanted = {str(review_id) for review_id in review_ids}
        return await self.storage.update_where(
            Collections.REVIEWS,
            {"status": "approved", "is_approved": True, "approved_by": admin.get("userId"), "approved_at": utc_now_iso()},
            lambda review: str(review.get("id")) in wanted,
        )

    async def admin_analytics(self) -> dict[str, Any]:
        reviews = await self.storage.load(Collections.REVIEWS)
        approved = [review for review in reviews if review.get("status") == "approved"]
        pending = [review for review in reviews if review.get("status") == "pending"]
        rejected = [review for review in reviews if review.get("status") == "rejected"]
        average, distribution = _rating_summary(approved)
        review_rate = (len(approved) / len(reviews) * 100) if reviews else 0.0
        return {
            "totalReviews": len(reviews),
            "pendingReviews": len(pending),
            "approvedReviews": len(approved),
            "rejectedReviews": len(rejected),
            "averageRating": average,
            "ratingDistribution": distribution,
            "reviewRate": f"{review_rate:.2f}",
        }

    async def list_reports(self, status: str = "") -> list[dict[str, Any]]:
        reports = await self.storage.load(Collections.REVIEW_REPORTS)
        if status:
            reports = [report for report in reports if report.get("status") == status]
        reviews = {review["id"]: review for review in await self.storage.load(Collections.REVIEWS)}
        rows = [dict(report, review=reviews.get(report.get("review_id"))) for report in reports]
        return sorted(rows, key=lambda row: str(row.get("created_at") or ""), reverse=True)

    async def update_report_status(
        self,
        report_id: str,
        status: str,
        admin: dict[str, Any],
        admin_notes: Optional[str] = None,
    ) -> dict[str, Any]:
        if status not in ReportStatus.ALL:
            raise ValidationError(f"Invalid status. Must be one of: {', '.join(ReportStatus.ALL)}")
        report = await self.storage.update(
            Collections.REVIEW_REPORTS,
            report_id,
            {"status": status, "reviewed_by": admin.get("userId"), "admin_notes": admin_notes},
        )
        if report is None:
            raise NotFoundError("Report not found", code="REPORT_NOT_FOUND")
        return report
