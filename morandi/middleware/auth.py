import time
from typing import Any, Optional

import jwt
from aiohttp import web

from ..config import Settings
from ..errors import AuthenticationError, PermissionDenied
from ..utils.constants import Roles
from ..utils.helpers import new_id

USER_KEY = "morandi.user"
TOKEN_ERROR_KEY = "morandi.token_error"


class TokenManager:
    """Issues and checks the HS256 tokens handed to storefront users."""

    def __init__(self, settings: Settings):
        self.secret = settings.jwt_secret
        self.lifetimes = {
            "access": settings.jwt_expires_seconds,
            "refresh": settings.refresh_expires_seconds,
            "reset": settings.reset_expires_seconds,
        }
        self._revoked: dict[str, float] = {}

    def generate(self, user: dict[str, Any], token_type: str = "access") -> str:
        now = int(time.time())
        payload = {
            "userId": str(user["id"]),
            "email": user.get("email"),
            "role": user.get("role") or Roles.USER,
            "type": token_type,
            "jti": new_id(),
            "iat": now,
            "exp": now + self.lifetimes[token_type],
        }
        return jwt.encode(payload, self.secret, algorithm="HS256")

    def expires_in(self, token_type: str = "access") -> int:
        return self.lifetimes[token_type]

    def verify(self, token: str, token_type: str = "access") -> dict[str, Any]:
        try:
            payload = jwt.decode(token, self.secret, algorithms=["HS256"])
        except jwt.PyJWTError as exc:
            raise AuthenticationError("Invalid or expired token", code="INVALID_TOKEN") from exc

        if payload.get("type", "access") != token_type:
            raise AuthenticationError("Invalid or expired token", code="INVALID_TOKEN")
        if self.is_revoked(payload):
            raise AuthenticationError("Invalid or expired token", code="INVALID_TOKEN")
        return payload

    def revoke(self, payload: dict[str, Any]) -> None:
        jti = str(payload.get("jti") or "")
        if not jti:
            return
        self._revoked[jti] = float(payload.get("exp") or time.time())
        self._purge_revoked()

    def is_revoked(self, payload: dict[str, Any]) -> bool:
        return str(payload.get("jti") or "") in self._revoked

    def _purge_revoked(self) -> None:
        now = time.time()
        for jti, expires_at in list(self._revoked.items()):
            if expires_at < now:
                self._revoked.pop(jti, None)


def bearer_token(request: web.Request) -> str:
    auth_header = request.headers.get("Authorization", "").strip()
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()
    return ""


class AuthMiddleware:
    def __init__(self, tokens: TokenManager):
        self.tokens = tokens

    @web.middleware
    async def middleware(self, request: web.Request, handler):
        request[USER_KEY] = None
        request[TOKEN_ERROR_KEY] = False

        token = bearer_token(request)
        if token:
            try:
                request[USER_KEY] = self.tokens.verify(token)
            except AuthenticationError:
                request[TOKEN_ERROR_KEY] = True
        return await handler(request)


def current_user(request: web.Request) -> Optional[dict[str, Any]]:
    """The decoded token of the caller, or None for anonymous requests."""
    return request.get(USER_KEY)


def require_user(request: web.Request) -> dict[str, Any]:
    user = current_user(request)
    if user is not None:
        return user
    if request.get(TOKEN_ERROR_KEY):
        raise AuthenticationError("Invalid or expired token", code="INVALID_TOKEN")
    raise AuthenticationError("Access token required", code="TOKEN_REQUIRED")


def require_role(request: web.Request, *roles: str) -> dict[str, Any]:
    user = require_user(request)
    if user.get("role") not in roles:
        raise PermissionDenied("Insufficient permissions", code="INSUFFICIENT_PERMISSIONS")
    return user


def require_admin(request: web.Request) -> dict[str, Any]:
    return require_role(request, Roles.ADMIN)


def is_admin(user: Optional[dict[str, Any]]) -> bool:
    return bool(user) and user.get("role") == Roles.ADMIN
