from aiohttp import web

from ..errors import ValidationError
from ..middleware.auth import current_user, require_admin, require_role, require_user
from ..middleware.security import client_ip
from ..utils.constants import Roles
from .base import CART_SESSION_COOKIE, BaseRoutes


class BlogRoutes(BaseRoutes):
    """Blog posts and comments plus the storefront's CMS blocks and newsletter."""

    prefix = "/api/blog"

    def register(self, router: web.UrlDispatcher) -> None:
        router.add_get(self.path("/posts"), self.list_posts)
        router.add_post(self.path("/posts"), self.create_post)
        router.add_get(self.path("/posts/{slug}"), self.get_post)
        router.add_put(self.path("/posts/{post_id}"), self.update_post)
        router.add_delete(self.path("/posts/{post_id}"), self.delete_post)
        router.add_get(self.path("/posts/{post_id}/comments"), self.list_comments)
        router.add_post(self.path("/posts/{post_id}/comments"), self.create_comment)

        router.add_put(self.path("/comments/{comment_id}"), self.update_comment)
        router.add_delete(self.path("/comments/{comment_id}"), self.delete_comment)
        router.add_put(self.path("/comments/{comment_id}/approve"), self.approve_comment)

        router.add_get(self.path("/categories"), self.list_categories)
        router.add_post(self.path("/categories"), self.create_category)

        router.add_get(self.path("/promotions"), self.list_promotions)
        router.add_post(self.path("/promotions"), self.create_promotion)
        router.add_post(self.path("/newsletter/subscribe"), self.subscribe)
        router.add_post(self.path("/newsletter/unsubscribe"), self.unsubscribe)

        router.add_post(self.path("/analytics/track"), self.track)
        router.add_get(self.path("/analytics/{content_type}/{content_id}"), self.content_analytics)
        router.add_get(self.path("/admin/content"), self.admin_content)
        router.add_get(self.path("/admin/analytics"), self.admin_analytics)

    async def list_posts(self, request: web.Request):
        filters = self.query_filters(request)
        user = current_user(request)
        if user is None or user.get("role") not in (Roles.ADMIN, Roles.AUTHOR):
            filters["status"] = "published"
        return self.ok(**await self.server.blog.list_posts(filters))

    async def get_post(self, request: web.Request):
        user = current_user(request)
        post = await self.server.blog.get_post_by_slug(
            request.match_info["slug"],
            (user or {}).get("userId"),
            request.cookies.get(CART_SESSION_COOKIE),
        )
        return self.ok(post=post)

    async def create_post(self, request: web.Request):
        user = require_role(request, Roles.ADMIN, Roles.AUTHOR)
        payload = await self.safe_json(request)
        post = await self.server.blog.create_post(payload, user)
        return self.ok(status=201, message="Blog post created successfully", post=post)

    async def update_post(self, request: web.Request):
        user = require_role(request, Roles.ADMIN, Roles.AUTHOR)
        payload = await self.safe_json(request)
        post = await self.server.blog.update_post(request.match_info["post_id"], payload, user)
        return self.ok(message="Blog post updated successfully", post=post)

    async def delete_post(self, request: web.Request):
        user = require_role(request, Roles.ADMIN, Roles.AUTHOR)
        await self.server.blog.delete_post(request.match_info["post_id"], user)
        return self.ok(message="Blog post deleted successfully")

    async def list_comments(self, request: web.Request):
        return self.ok(comments=await self.server.blog.list_comments(request.match_info["post_id"]))

    async def create_comment(self, request: web.Request):
        user = current_user(request)
        payload = await self.safe_json(request)
        comment = await self.server.blog.create_comment(
            request.match_info["post_id"],
            payload,
            user,
            client_ip(request),
            request.headers.get("User-Agent"),
        )
        message = "Comment posted" if comment["is_approved"] else "Comment submitted and awaiting moderation"
        return self.ok(status=201, message=message, comment=comment)

    async def update_comment(self, request: web.Request):
        user = require_user(request)
        payload = await self.safe_json(request)
        comment = await self.server.blog.update_comment(request.match_info["comment_id"], payload, user)
        return self.ok(message="Comment updated successfully", comment=comment)

    async def delete_comment(self, request: web.Request):
        require_admin(request)
        await self.server.blog.delete_comment(request.match_info["comment_id"])
        return self.ok(message="Comment deleted successfully")

    async def approve_comment(self, request: web.Request):
        require_admin(request)
        comment = await self.server.blog.approve_comment(request.match_info["comment_id"])
        return self.ok(message="Comment approved successfully", comment=comment)

    async def list_categories(self, request: web.Request):
        return self.ok(categories=await self.server.blog.list_categories())

    async def create_category(self, request: web.Request):
        require_admin(request)
        payload = await self.safe_json(request)
        category = await self.server.blog.create_category(payload)
        return self.ok(status=201, message="Category created successfully", category=category)

    async def list_promotions(self, request: web.Request):
        content = await self.server.blog.promotional_content(request.query.get("location"))
        return self.ok(content=content)

    async def create_promotion(self, request: web.Request):
        require_admin(request)
        payload = await self.safe_json(request)
        content = await self.server.blog.create_promotional_content(payload)
        return self.ok(status=201, message="Promotional content created successfully", content=content)

    async def subscribe(self, request: web.Request):
        payload = await self.safe_json(request)
        subscriber = await self.server.blog.subscribe(
            str(payload.get("email") or ""),
            payload.get("firstName"),
            payload.get("lastName"),
            payload.get("source"),
        )
        return self.ok(status=201, message="Subscribed to newsletter successfully", subscriber=subscriber)

    async def unsubscribe(self, request: web.Request):
        payload = await self.safe_json(request)
        await self.server.blog.unsubscribe(str(payload.get("email") or ""))
        return self.ok(message="Unsubscribed from newsletter successfully")

    async def track(self, request: web.Request):
        payload = await self.safe_json(request)
        content_id = str(payload.get("contentId") or "")
        content_type = str(payload.get("contentType") or "")
        if not content_id or not content_type:
            raise ValidationError("contentId and contentType are required")
        user = current_user(request)
        event = await self.server.blog.track_event(
            content_id,
            content_type,
            str(payload.get("eventType") or "view"),
            (user or {}).get("userId"),
            request.cookies.get(CART_SESSION_COOKIE),
        )
        return self.ok(status=201, event=event)

    async def content_analytics(self, request: web.Request):
        require_role(request, Roles.ADMIN, Roles.AUTHOR)
        analytics = await self.server.blog.content_analytics(
            request.match_info["content_id"],
            request.match_info["content_type"],
        )
        return self.ok(analytics=analytics)

    async def admin_content(self, request: web.Request):
        require_admin(request)
        return self.ok(**await self.server.blog.admin_content())

    async def admin_analytics(self, request: web.Request):
        require_admin(request)
        return self.ok(analytics=await self.server.blog.admin_analytics())


def setup(server):
    BlogRoutes(server).register(server.app.router)
