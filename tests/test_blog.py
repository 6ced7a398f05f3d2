from conftest import register_user

LONG_CONTENT = " ".join(["linen"] * 450)


async def _create_post(client, author, **overrides):
    payload = {"title": "Caring for Linen", "content": LONG_CONTENT, "status": "published", "tags": ["care"]}
    payload.update(overrides)
    resp = await client.post("/api/blog/posts", json=payload, headers=author["headers"])
    assert resp.status == 201, await resp.text()
    return (await resp.json())["post"]


class TestPosts:
    async def test_create_computes_slug_and_reading_time(self, client, admin):
        post = await _create_post(client, admin)
        assert post["slug"] == "caring-for-linen"
        assert post["reading_time"] == 3
        assert post["published_at"]
        assert post["author_id"] == admin["user"]["id"]

    async def test_draft_has_no_publish_date(self, client, admin):
        post = await _create_post(client, admin, title="Coming Soon", status="draft")
        assert post["published_at"] is None

    async def test_customers_cannot_write(self, client, customer):
        resp = await client.post("/api/blog/posts", json={"title": "x", "content": "y"}, headers=customer["headers"])
        assert resp.status == 403

    async def test_duplicate_slug(self, client, admin):
        await _create_post(client, admin)
        resp = await client.post(
            "/api/blog/posts",
            json={"title": "Caring for linen!", "content": "Again"},
            headers=admin["headers"],
        )
        assert resp.status == 409
        assert (await resp.json())["code"] == "DUPLICATE_SLUG"

    async def test_public_listing_only_shows_published(self, client, admin):
        await _create_post(client, admin)
        await _create_post(client, admin, title="Draft Notes", status="draft")

        resp = await client.get("/api/blog/posts", params={"status": "draft"})
        assert [p["slug"] for p in (await resp.json())["posts"]] == ["caring-for-linen"]

        resp = await client.get("/api/blog/posts", params={"status": "draft"}, headers=admin["headers"])
        assert [p["slug"] for p in (await resp.json())["posts"]] == ["draft-notes"]

        resp = await client.get("/api/blog/posts", params={"tags": "care,other", "search": "linen"})
        body = await resp.json()
        assert body["pagination"]["total"] == 1
        assert body["pagination"]["limit"] == 10

    async def test_view_by_slug_counts_views(self, client, server, admin):
        post = await _create_post(client, admin)
        await client.get("/api/blog/posts/caring-for-linen")
        resp = await client.get("/api/blog/posts/caring-for-linen")
        assert (await resp.json())["post"]["view_count"] == 2

        resp = await client.get(f"/api/blog/analytics/blog_post/{post['id']}", headers=admin["headers"])
        analytics = (await resp.json())["analytics"]
        assert analytics["views"] == 2

    async def test_drafts_are_not_public(self, client, admin):
        await _create_post(client, admin, title="Secret", status="draft")
        resp = await client.get("/api/blog/posts/secret")
        assert resp.status == 404
        assert (await resp.json())["code"] == "POST_NOT_FOUND"

    async def test_authors_edit_only_their_posts(self, client, server, admin, customer):
        post = await _create_post(client, admin)
        await server.accounts.set_role(customer["user"]["id"], "author")
        resp = await client.post("/api/auth/login", json={"email": "asha@example.com", "password": "password123"})
        author_headers = {"Authorization": f"Bearer {(await resp.json())['token']}"}

        resp = await client.put(f"/api/blog/posts/{post['id']}", json={"title": "Mine now"}, headers=author_headers)
        assert resp.status == 403

        resp = await client.post(
            "/api/blog/posts",
            json={"title": "Author Post", "content": "Short piece"},
            headers=author_headers,
        )
        own = (await resp.json())["post"]
        resp = await client.put(
            f"/api/blog/posts/{own['id']}",
            json={"status": "published", "content": LONG_CONTENT},
            headers=author_headers,
        )
        updated = (await resp.json())["post"]
        assert updated["status"] == "published"
        assert updated["published_at"]
        assert updated["reading_time"] == 3

    async def test_delete_removes_comments(self, client, server, admin):
        post = await _create_post(client, admin)
        await client.post(f"/api/blog/posts/{post['id']}/comments", json={"content": "Nice"}, headers=admin["headers"])
        resp = await client.delete(f"/api/blog/posts/{post['id']}", headers=admin["headers"])
        assert resp.status == 200
        assert await server.storage.find("blog_comments", post_id=post["id"]) == []


class TestComments:
    async def test_guest_comments_wait_for_moderation(self, client, admin):
        post = await _create_post(client, admin)
        url = f"/api/blog/posts/{post['id']}/comments"

        resp = await client.post(url, json={"content": "Great tips"})
        assert resp.status == 400

        resp = await client.post(url, json={"content": "Great tips", "authorName": "Meera", "authorEmail": "m@example.com"})
        assert resp.status == 201
        body = await resp.json()
        assert body["message"] == "Comment submitted and awaiting moderation"
        comment = body["comment"]

        assert (await (await client.get(url)).json())["comments"] == []

        resp = await client.put(f"/api/blog/comments/{comment['id']}/approve", headers=admin["headers"])
        assert resp.status == 200
        comments = (await (await client.get(url)).json())["comments"]
        assert [c["id"] for c in comments] == [comment["id"]]

    async def test_member_comments_and_replies(self, client, admin, customer):
        post = await _create_post(client, admin)
        url = f"/api/blog/posts/{post['id']}/comments"
        resp = await client.post(url, json={"content": "Thanks!"}, headers=customer["headers"])
        parent = (await resp.json())["comment"]
        assert parent["is_approved"] is True

        await client.post(url, json={"content": "Glad it helped", "parentId": parent["id"]}, headers=admin["headers"])
        comments = (await (await client.get(url)).json())["comments"]
        assert len(comments) == 1
        assert [reply["content"] for reply in comments[0]["replies"]] == ["Glad it helped"]

        resp = await client.post(url, json={"content": "Orphan", "parentId": "missing"}, headers=customer["headers"])
        assert resp.status == 404

        resp = await client.put(f"/api/blog/comments/{parent['id']}", json={"content": "Thanks a lot!"}, headers=customer["headers"])
        assert (await resp.json())["comment"]["content"] == "Thanks a lot!"

        other = await register_user(client, "ravi@example.com", first_name="Ravi")
        resp = await client.put(f"/api/blog/comments/{parent['id']}", json={"content": "Hijack"}, headers=other["headers"])
        assert resp.status == 403

        resp = await client.delete(f"/api/blog/comments/{parent['id']}", headers=admin["headers"])
        assert resp.status == 200
        assert (await (await client.get(url)).json())["comments"] == []

    async def test_no_comments_on_drafts(self, client, admin, customer):
        post = await _create_post(client, admin, title="Draft", status="draft")
        resp = await client.post(f"/api/blog/posts/{post['id']}/comments", json={"content": "Hi"}, headers=customer["headers"])
        assert resp.status == 400

    async def test_engagement_rate(self, client, admin, customer):
        post = await _create_post(client, admin)
        await client.get("/api/blog/posts/caring-for-linen")
        await client.get("/api/blog/posts/caring-for-linen", headers=customer["headers"])
        await client.post(f"/api/blog/posts/{post['id']}/comments", json={"content": "Thanks!"}, headers=customer["headers"])
        resp = await client.post(
            "/api/blog/analytics/track",
            json={"contentId": post["id"], "contentType": "blog_post", "eventType": "like"},
        )
        assert resp.status == 201

        resp = await client.get(f"/api/blog/analytics/blog_post/{post['id']}", headers=admin["headers"])
        analytics = (await resp.json())["analytics"]
        assert analytics["views"] == 2
        assert analytics["comments"] == 1
        assert analytics["likes"] == 1
        assert analytics["engagementRate"] == 100.0

    async def test_invalid_event_type(self, client):
        resp = await client.post(
            "/api/blog/analytics/track",
            json={"contentId": "p", "contentType": "blog_post", "eventType": "explode"},
        )
        assert resp.status == 400


class TestCategoriesAndPromotions:
    async def test_categories(self, client, admin):
        for name, order in (("Styling", 2), ("Care Guides", 1)):
            resp = await client.post("/api/blog/categories", json={"name": name, "sortOrder": order}, headers=admin["headers"])
            assert resp.status == 201
        resp = await client.get("/api/blog/categories")
        assert [c["slug"] for c in (await resp.json())["categories"]] == ["care-guides", "styling"]

        resp = await client.post("/api/blog/categories", json={"name": "Styling"}, headers=admin["headers"])
        assert resp.status == 409

    async def test_promotions_respect_schedule_and_location(self, client, admin):
        blocks = [
            {"title": "Monsoon Sale", "sortOrder": 2},
            {"title": "New Arrivals", "sortOrder": 1},
            {"title": "Expired", "endDate": "2020-01-01T00:00:00Z"},
            {"title": "Future", "startDate": "2999-01-01T00:00:00Z"},
            {"title": "Checkout Banner", "displayLocation": "checkout"},
            {"title": "Hidden", "isActive": False},
        ]
        for block in blocks:
            resp = await client.post("/api/blog/promotions", json=block, headers=admin["headers"])
            assert resp.status == 201

        resp = await client.get("/api/blog/promotions", params={"location": "homepage"})
        assert [c["title"] for c in (await resp.json())["content"]] == ["New Arrivals", "Monsoon Sale"]

        resp = await client.get("/api/blog/promotions", params={"location": "checkout"})
        assert [c["title"] for c in (await resp.json())["content"]] == ["Checkout Banner"]


class TestNewsletter:
    async def test_subscribe_unsubscribe_resubscribe(self, client, server):
        resp = await client.post("/api/blog/newsletter/subscribe", json={"email": "Reader@Example.com", "firstName": "Riya"})
        assert resp.status == 201
        subscriber = (await resp.json())["subscriber"]
        assert subscriber["email"] == "reader@example.com"

        resp = await client.post("/api/blog/newsletter/unsubscribe", json={"email": "reader@example.com"})
        assert resp.status == 200
        stored = await server.storage.first("newsletter_subscribers", email="reader@example.com")
        assert stored["is_active"] is False

        resp = await client.post("/api/blog/newsletter/subscribe", json={"email": "reader@example.com"})
        assert (await resp.json())["subscriber"]["is_active"] is True
        assert len(await server.storage.load("newsletter_subscribers")) == 1

    async def test_unknown_unsubscribe(self, client):
        resp = await client.post("/api/blog/newsletter/unsubscribe", json={"email": "ghost@example.com"})
        assert resp.status == 404
        assert (await resp.json())["code"] == "SUBSCRIPTION_NOT_FOUND"

    async def test_invalid_email(self, client):
        resp = await client.post("/api/blog/newsletter/subscribe", json={"email": "nope"})
        assert resp.status == 400


class TestBlogAdmin:
    async def test_admin_overview(self, client, admin):
        await _create_post(client, admin)
        await _create_post(client, admin, title="Draft", status="draft")
        await client.post("/api/blog/newsletter/subscribe", json={"email": "reader@example.com"})

        resp = await client.get("/api/blog/admin/analytics", headers=admin["headers"])
        analytics = (await resp.json())["analytics"]
        assert analytics["totalPosts"] == 2
        assert analytics["postsByStatus"] == {"draft": 1, "published": 1, "archived": 0}
        assert analytics["newsletterSubscribers"] == 1

        resp = await client.get("/api/blog/admin/content", headers=admin["headers"])
        body = await resp.json()
        assert len(body["posts"]) == 2
        assert body["subscribers"] == 1

    async def test_admin_only(self, client, customer):
        resp = await client.get("/api/blog/admin/content", headers=customer["headers"])
        assert resp.status == 403
