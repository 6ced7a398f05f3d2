from typing import Any, Optional

from ..errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from ..utils.constants import Collections, Roles
from ..utils.helpers import paginate, parse_datetime, reading_time, slugify, to_bool, to_int, utc_now, utc_now_iso
from ..utils.logger import logger
from .storage import ShopStorage

POST_STATUSES = ("draft", "published", "archived")
POST_SORT_FIELDS = ("created_at", "published_at", "title", "view_count")
EVENT_TYPES = ("view", "like", "share", "comment")


class BlogService:
    """Blog posts, comments, promotional blocks, newsletter and content analytics."""

    def __init__(self, storage: ShopStorage):
        self.storage = storage

    async def list_posts(self, filters: dict[str, Any]) -> dict[str, Any]:
        page = to_int(filters.get("page"), default=1) or 1
        limit = to_int(filters.get("limit"), default=10) or 10
        posts = await self.storage.load(Collections.BLOG_POSTS)

        status = str(filters.get("status") or "").strip()
        if status:
            posts = [post for post in posts if post.get("status") == status]
        category_id = str(filters.get("categoryId") or "").strip()
        if category_id:
            posts = [post for post in posts if category_id in (post.get("category_ids") or [])]
        author_id = str(filters.get("authorId") or "").strip()
        if author_id:
            posts = [post for post in posts if post.get("author_id") == author_id]
        if filters.get("isFeatured") not in (None, ""):
            featured = to_bool(filters.get("isFeatured"))
            posts = [post for post in posts if bool(post.get("is_featured")) == featured]
        tags = filters.get("tags")
        if isinstance(tags, str):
            tags = [tag.strip() for tag in tags.split(",") if tag.strip()]
        if tags:
            posts = [post for post in posts if set(tags) & set(post.get("tags") or [])]
        search = str(filters.get("search") or "").strip().lower()
        if search:
            posts = [
                post
                for post in posts
                if search in str(post.get("title") or "").lower() or search in str(post.get("content") or "").lower()
            ]

        sort_by = str(filters.get("sortBy") or "created_at")
        if sort_by not in POST_SORT_FIELDS:
            sort_by = "created_at"
        descending = str(filters.get("sortOrder") or "desc").lower() != "asc"
        if sort_by == "view_count":
            posts.sort(key=lambda post: int(post.get("view_count") or 0), reverse=descending)
        else:
            posts.sort(key=lambda post: str(post.get(sort_by) or ""), reverse=descending)

        page_rows, pagination = paginate(posts, page, limit)
        return {"posts": page_rows, "pagination": pagination}

    async def get_post(self, post_id: str) -> dict[str, Any]:
        post = await self.storage.get(Collections.BLOG_POSTS, post_id)
        if post is None:
            raise NotFoundError("Blog post not found", code="POST_NOT_FOUND")
        return post

    async def get_post_by_slug(
        self,
        slug: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> dict[str, Any]:
        post = await self.storage.first(Collections.BLOG_POSTS, slug=slug, status="published")
        if post is None:
            raise NotFoundError("Blog post not found", code="POST_NOT_FOUND")
        await self.track_event(post["id"], "blog_post", "view", user_id, session_id)
        return await self.storage.update(
            Collections.BLOG_POSTS,
            post["id"],
            {"view_count": int(post.get("view_count") or 0) + 1},
        )

    @staticmethod
    def _can_edit(post: dict[str, Any], user: dict[str, Any]) -> bool:
        return user.get("role") == Roles.ADMIN or post.get("author_id") == user.get("userId")

    async def _ensure_unique_slug(self, slug: str, post_id: Optional[str] = None) -> None:
        clash = await self.storage.first(
            Collections.BLOG_POSTS,
            lambda post: post.get("slug") == slug and post.get("id") != post_id,
        )
        if clash is not None:
            raise ConflictError("A post with this slug already exists", code="DUPLICATE_SLUG")

    async def create_post(self, payload: dict[str, Any], user: dict[str, Any]) -> dict[str, Any]:
        title = str(payload.get("title") or "").strip()
        content = str(payload.get("content") or "").strip()
        if not title or not content:
            raise ValidationError("Title and content are required")
        status = str(payload.get("status") or "draft")
        if status not in POST_STATUSES:
            raise ValidationError(f"Invalid status. Must be one of: {', '.join(POST_STATUSES)}")

        slug = slugify(payload.get("slug") or title)
        await self._ensure_unique_slug(slug)
        published_at = payload.get("publishedAt") or (utc_now_iso() if status == "published" else None)
        post = await self.storage.insert(
            Collections.BLOG_POSTS,
            {
                "title": title,
                "slug": slug,
                "excerpt": payload.get("excerpt"),
                "content": content,
                "featured_image": payload.get("featuredImage"),
                "author_id": user["userId"],
                "status": status,
                "published_at": published_at,
                "meta_title": payload.get("metaTitle"),
                "meta_description": payload.get("metaDescription"),
                "tags": [str(tag) for tag in payload.get("tags") or []],
                "category_ids": [str(category) for category in payload.get("categoryIds") or []],
                "reading_time": reading_time(content),
                "is_featured": to_bool(payload.get("isFeatured")),
                "view_count": 0,
            },
        )
        logger.info(f"Blog post {post['slug']} created by {user.get('email')}")
        return post

    async def update_post(self, post_id: str, payload: dict[str, Any], user: dict[str, Any]) -> dict[str, Any]:
        post = await self.get_post(post_id)
        if not self._can_edit(post, user):
            raise PermissionDenied("You can only edit your own posts")

        changes: dict[str, Any] = {}
        if payload.get("title"):
            changes["title"] = str(payload["title"]).strip()
        if payload.get("slug"):
            changes["slug"] = slugify(payload["slug"])
            await self._ensure_unique_slug(changes["slug"], post_id)
        if "excerpt" in payload:
            changes["excerpt"] = payload.get("excerpt")
        if payload.get("content"):
            changes["content"] = str(payload["content"])
            changes["reading_time"] = reading_time(changes["content"])
        if "featuredImage" in payload:
            changes["featured_image"] = payload.get("featuredImage")
        if payload.get("status"):
            if payload["status"] not in POST_STATUSES:
                raise ValidationError(f"Invalid status. Must be one of: {', '.join(POST_STATUSES)}")
            changes["status"] = payload["status"]
            if payload["status"] == "published" and not post.get("published_at"):
                changes["published_at"] = utc_now_iso()
        if payload.get("publishedAt"):
            changes["published_at"] = payload["publishedAt"]
        if payload.get("metaTitle"):
            changes["meta_title"] = payload["metaTitle"]
        if payload.get("metaDescription"):
            changes["meta_description"] = payload["metaDescription"]
        if isinstance(payload.get("tags"), list):
            changes["tags"] = [str(tag) for tag in payload["tags"]]
        if isinstance(payload.get("categoryIds"), list):
            changes["category_ids"] = [str(category) for category in payload["categoryIds"]]
        if "isFeatured" in payload:
            changes["is_featured"] = to_bool(payload.get("isFeatured"))
        return await self.storage.update(Collections.BLOG_POSTS, post_id, changes)

    async def delete_post(self, post_id: str, user: dict[str, Any]) -> None:
        post = await self.get_post(post_id)
        if not self._can_edit(post, user):
            raise PermissionDenied("You can only delete your own posts")
        async with self.storage.transaction(Collections.BLOG_POSTS, Collections.BLOG_COMMENTS):
            await self.storage.delete_where(Collections.BLOG_COMMENTS, post_id=post_id)
            await self.storage.delete(Collections.BLOG_POSTS, post_id)

    async def list_categories(self) -> list[dict[str, Any]]:
        categories = await self.storage.find(Collections.BLOG_CATEGORIES, is_active=True)
        return sorted(categories, key=lambda row: (int(row.get("sort_order") or 0), str(row.get("name") or "")))

    async def create_category(self, payload: dict[str, Any]) -> dict[str, Any]:
        name = str(payload.get("name") or "").strip()
        if not name:
            raise ValidationError("Category name is required")
        slug = slugify(payload.get("slug") or name)
        if await self.storage.first(Collections.BLOG_CATEGORIES, slug=slug):
            raise ConflictError("A category with this slug already exists", code="DUPLICATE_SLUG")
        return await self.storage.insert(
            Collections.BLOG_CATEGORIES,
            {
                "name": name,
                "slug": slug,
                "description": payload.get("description"),
                "color": payload.get("color"),
                "sort_order": to_int(payload.get("sortOrder"), default=0) or 0,
                "is_active": True,
            },
        )

    async def list_comments(self, post_id: str) -> list[dict[str, Any]]:
        comments = await self.storage.find(Collections.BLOG_COMMENTS, post_id=post_id, is_approved=True)
        comments.sort(key=lambda row: str(row.get("created_at") or ""))
        threads = []
        for comment in comments:
            if comment.get("parent_id"):
                continue
            replies = [reply for reply in comments if reply.get("parent_id") == comment["id"]]
            threads.append(dict(comment, replies=replies))
        return threads

    async def create_comment(
        self,
        post_id: str,
        payload: dict[str, Any],
        user: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict[str, Any]:
        post = await self.get_post(post_id)
        if post.get("status") != "published":
            raise ValidationError("Comments are only allowed on published posts")
        content = str(payload.get("content") or "").strip()
        if not content:
            raise ValidationError("Comment content is required")
        if user is None and not (payload.get("authorName") and payload.get("authorEmail")):
            raise ValidationError("authorName and authorEmail are required for guest comments")

        parent_id = payload.get("parentId")
        if parent_id and await self.storage.first(Collections.BLOG_COMMENTS, id=str(parent_id), post_id=post_id) is None:
            raise NotFoundError("Parent comment not found", code="COMMENT_NOT_FOUND")

        comment = await self.storage.insert(
            Collections.BLOG_COMMENTS,
            {
                "post_id": post_id,
                "user_id": (user or {}).get("userId"),
                "parent_id": str(parent_id) if parent_id else None,
                "author_name": payload.get("authorName"),
                "author_email": payload.get("authorEmail") or (user or {}).get("email"),
                "content": content,
                "is_approved": user is not None,
                "ip_address": ip_address,
                "user_agent": user_agent,
            },
        )
        if comment["is_approved"]:
            await self.track_event(post_id, "blog_post", "comment", comment["user_id"])
        return comment

    async def update_comment(self, comment_id: str, payload: dict[str, Any], user: dict[str, Any]) -> dict[str, Any]:
        comment = await self.storage.get(Collections.BLOG_COMMENTS, comment_id)
        if comment is None:
            raise NotFoundError("Comment not found", code="COMMENT_NOT_FOUND")
        if comment.get("user_id") != user.get("userId") and user.get("role") != Roles.ADMIN:
            raise PermissionDenied("You can only edit your own comments")
        content = str(payload.get("content") or "").strip()
        if not content:
            raise ValidationError("Comment content is required")
        return await self.storage.update(Collections.BLOG_COMMENTS, comment_id, {"content": content})

    async def approve_comment(self, comment_id: str) -> dict[str, Any]:
        comment = await self.storage.update(Collections.BLOG_COMMENTS, comment_id, {"is_approved": True})
        if comment is None:
            raise NotFoundError("Comment not found", code="COMMENT_NOT_FOUND")
        await self.track_event(comment["post_id"], "blog_post", "comment", comment.get("user_id"))
        return comment

    async def delete_comment(self, comment_id: str) -> None:
        if not await self.storage.delete_where(
            Collections.BLOG_COMMENTS,
            lambda row: row.get("id") == comment_id or row.get("parent_id") == comment_id,
        ):
            raise NotFoundError("Comment not found", code="COMMENT_NOT_FOUND")

    async def promotional_content(self, location: Optional[str] = None) -> list[dict[str, Any]]:
        now = utc_now()
        rows = []
        for row in await self.storage.find(Collections.PROMOTIONAL_CONTENT, is_active=True):
            if location and row.get("display_location") != location:
                continue
            starts = parse_datetime(row.get("start_date"))
            ends = parse_datetime(row.get("end_date"))
            if (starts and starts > now) or (ends and ends < now):
                continue
            rows.append(row)
        return sorted(rows, key=lambda row: int(row.get("sort_order") or 0))

    async def create_promotional_content(self, payload: dict[str, Any]) -> dict[str, Any]:
        title = str(payload.get("title") or "").strip()
        if not title:
            raise ValidationError("Title is required")
        return await self.storage.insert(
            Collections.PROMOTIONAL_CONTENT,
            {
                "title": title,
                "content": payload.get("content"),
                "content_type": payload.get("contentType") or "banner",
                "image_url": payload.get("imageUrl"),
                "link_url": payload.get("linkUrl"),
                "display_location": payload.get("displayLocation") or "homepage",
                "start_date": payload.get("startDate"),
                "end_date": payload.get("endDate"),
                "sort_order": to_int(payload.get("sortOrder"), default=0) or 0,
                "is_active": to_bool(payload.get("isActive", True)),
            },
        )

    async def subscribe(
        self,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        source: Optional[str] = None,
    ) -> dict[str, Any]:
        email = str(email or "").strip().lower()
        if "@" not in email:
            raise ValidationError("A valid email is required")
        record = {
            "first_name": first_name,
            "last_name": last_name,
            "subscription_source": source or "website",
            "is_active": True,
            "unsubscribed_at": None,
        }
        async with self.storage.transaction(Collections.NEWSLETTER_SUBSCRIBERS):
            existing = await self.storage.first(Collections.NEWSLETTER_SUBSCRIBERS, email=email)
            if existing is not None:
                return await self.storage.update(Collections.NEWSLETTER_SUBSCRIBERS, existing["id"], record)
            return await self.storage.insert(Collections.NEWSLETTER_SUBSCRIBERS, dict(record, email=email))

    async def unsubscribe(self, email: str) -> None:
        email = str(email or "").strip().lower()
        updated = await self.storage.update_where(
            Collections.NEWSLETTER_SUBSCRIBERS,
            {"is_active": False, "unsubscribed_at": utc_now_iso()},
            email=email,
        )
        if not updated:
            raise NotFoundError("Subscription not found", code="SUBSCRIPTION_NOT_FOUND")

    async def track_event(
        self,
        content_id: str,
        content_type: str,
        event_type: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> dict[str, Any]:
        if event_type not in EVENT_TYPES:
            raise ValidationError(f"Invalid event type. Must be one of: {', '.join(EVENT_TYPES)}")
        return await self.storage.insert(
            Collections.CONTENT_ANALYTICS,
            {
                "content_id": content_id,
                "content_type": content_type,
                "event_type": event_type,
                "user_id": user_id,
                "session_id": session_id,
            },
        )

    async def content_analytics(self, content_id: str, content_type: str) -> dict[str, Any]:
        events = await self.storage.find(Collections.CONTENT_ANALYTICS, content_id=content_id, content_type=content_type)
        counts = {event_type: 0 for event_type in EVENT_TYPES}
        for event in events:
            if event.get("event_type") in counts:
                counts[event["event_type"]] += 1
        visitors = {event.get("user_id") or event.get("session_id") for event in events}
        visitors.discard(None)
        views = counts["view"]
        engagement = ((counts["like"] + counts["share"] + counts["comment"]) / views * 100) if views else 0.0
        return {
            "contentId": content_id,
            "contentType": content_type,
            "views": views,
            "likes": counts["like"],
            "shares": counts["share"],
            "comments": counts["comment"],
            "uniqueVisitors": len(visitors),
            "engagementRate": round(engagement, 2),
        }

    async def admin_content(self) -> dict[str, Any]:
        posts = await self.storage.load(Collections.BLOG_POSTS)
        comments = await self.storage.load(Collections.BLOG_COMMENTS)
        return {
            "posts": sorted(posts, key=lambda post: str(post.get("created_at") or ""), reverse=True),
            "pendingComments": [comment for comment in comments if not comment.get("is_approved")],
            "promotionalContent": await self.storage.load(Collections.PROMOTIONAL_CONTENT),
            "subscribers": len(await self.storage.find(Collections.NEWSLETTER_SUBSCRIBERS, is_active=True)),
        }

    async def admin_analytics(self) -> dict[str, Any]:
        posts = await self.storage.load(Collections.BLOG_POSTS)
        events = await self.storage.load(Collections.CONTENT_ANALYTICS)
        status_counts = {status: 0 for status in POST_STATUSES}
        for post in posts:
            status_counts[post.get("status", "draft")] = status_counts.get(post.get("status", "draft"), 0) + 1
        top_posts = sorted(posts, key=lambda post: int(post.get("view_count") or 0), reverse=True)[:5]
        return {
            "totalPosts": len(posts),
            "postsByStatus": status_counts,
            "totalViews": sum(1 for event in events if event.get("event_type") == "view"),
            "totalEvents": len(events),
            "topPosts": [
                {"id": post["id"], "title": post.get("title"), "slug": post.get("slug"), "views": post.get("view_count", 0)}
                for post in top_posts
            ],
            "newsletterSubscribers": len(await self.storage.find(Collections.NEWSLETTER_SUBSCRIBERS, is_active=True)),
        }
