from aiohttp import web

from ..middleware.auth import bearer_token, require_user
from .base import BaseRoutes

FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, a password reset link has been sent."


class AuthRoutes(BaseRoutes):
    prefix = "/api/auth"

    def register(self, router: web.UrlDispatcher) -> None:
        router.add_post(self.path("/register"), self.register_user)
        router.add_post(self.path("/login"), self.login)
        router.add_post(self.path("/logout"), self.logout)
        router.add_post(self.path("/refresh"), self.refresh)
        router.add_post(self.path("/forgot-password"), self.forgot_password)
        router.add_post(self.path("/reset-password"), self.reset_password)
        router.add_get(self.path("/profile"), self.get_profile)
        router.add_put(self.path("/profile"), self.update_profile)
        router.add_get(self.path("/addresses"), self.list_addresses)
        router.add_post(self.path("/addresses"), self.add_address)
        router.add_put(self.path("/addresses/{address_id}"), self.update_address)
        router.add_delete(self.path("/addresses/{address_id}"), self.delete_address)

    @property
    def accounts(self):
        return self.server.accounts

    async def register_user(self, request: web.Request):
        payload = await self.safe_json(request)
        session = await self.accounts.register(payload)
        return self.ok(status=201, message="User registered successfully", **session)

    async def login(self, request: web.Request):
        payload = await self.safe_json(request)
        session = await self.accounts.login(payload)
        return self.ok(message="Login successful", **session)

    async def logout(self, request: web.Request):
        claims = require_user(request)
        self.accounts.logout(claims)
        return self.ok(message="Logout successful")

    async def refresh(self, request: web.Request):
        payload = await self.safe_json(request)
        token = str(payload.get("refreshToken") or "") or bearer_token(request)
        return self.ok(**await self.accounts.refresh(token))

    async def forgot_password(self, request: web.Request):
        payload = await self.safe_json(request)
        reset_token = await self.accounts.forgot_password(str(payload.get("email") or ""))
        body = {"message": FORGOT_PASSWORD_MESSAGE}
        if reset_token and not self.settings.is_production:
            body["resetToken"] = reset_token
        return self.ok(**body)

    async def reset_password(self, request: web.Request):
        payload = await self.safe_json(request)
        await self.accounts.reset_password(str(payload.get("token") or ""), str(payload.get("password") or ""))
        return self.ok(message="Password reset successfully")

    async def get_profile(self, request: web.Request):
        claims = require_user(request)
        return self.ok(user=await self.accounts.get_profile(claims["userId"]))

    async def update_profile(self, request: web.Request):
        claims = require_user(request)
        payload = await self.safe_json(request)
        user = await self.accounts.update_profile(claims["userId"], payload)
        return self.ok(message="Profile updated successfully", user=user)

    async def list_addresses(self, request: web.Request):
        claims = require_user(request)
        return self.ok(addresses=await self.accounts.list_addresses(claims["userId"]))

    async def add_address(self, request: web.Request):
        claims = require_user(request)
        payload = await self.safe_json(request)
        address = await self.accounts.add_address(claims["userId"], payload)
        return self.ok(status=201, message="Address added successfully", address=address)

    async def update_address(self, request: web.Request):
        claims = require_user(request)
        payload = await self.safe_json(request)
        address = await self.accounts.update_address(claims["userId"], request.match_info["address_id"], payload)
        return self.ok(message="Address updated successfully", address=address)

    async def delete_address(self, request: web.Request):
        claims = require_user(request)
        await self.accounts.delete_address(claims["userId"], request.match_info["address_id"])
        return self.ok(message="Address deleted successfully")


def setup(server):
    AuthRoutes(server).register(server.app.router)
