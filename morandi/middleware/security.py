import fnmatch
import hmac
import secrets
import time
from typing import Any, Optional

from aiohttp import web

from ..config import Settings
from ..errors import PermissionDenied, RateLimitError, ShopError, ValidationError
from ..utils.logger import logger

SESSION_COOKIE = "morandi.sid"
SESSION_KEY = "morandi.session"
CSRF_HEADER = "X-CSRF-Token"
ALLOWED_METHODS = {"GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"}
SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}
UPLOAD_PATHS = {"/api/reviews/uploads"}

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": (
        "default-src 'self'; "
        "style-src 'self' 'unsafe-inline'; "
        "script-src 'self' https://checkout.razorpay.com; "
        "img-src 'self' data: https:; "
        "connect-src 'self' https://api.razorpay.com"
    ),
}


def generate_csrf_token() -> str:
    return secrets.token_hex(32)


def validate_csrf_token(token: Optional[str], session_token: Optional[str]) -> bool:
    if not token or not session_token:
        return False
    return hmac.compare_digest(str(token), str(session_token))


class SessionStore:
    """Server side sessions; each one carries the CSRF token of its browser."""

    def __init__(self, max_age: int):
        self.max_age = max_age
        self._sessions: dict[str, dict[str, Any]] = {}

    def get(self, session_id: Optional[str]) -> Optional[dict[str, Any]]:
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session["expires_at"] < time.time():
            self._sessions.pop(session_id, None)
            return None
        return session

    def create(self) -> dict[str, Any]:
        self._purge()
        session_id = secrets.token_hex(32)
        session = {
            "id": session_id,
            "csrf_token": generate_csrf_token(),
            "created_at": time.time(),
            "expires_at": time.time() + self.max_age,
        }
        self._sessions[session_id] = session
        return session

    def touch(self, session: dict[str, Any]) -> None:
        session["expires_at"] = time.time() + self.max_age

    def _purge(self) -> None:
        now = time.time()
        for session_id, session in list(self._sessions.items()):
            if session["expires_at"] < now:
                self._sessions.pop(session_id, None)


class RateLimiter:
    """Fixed window request counter per client and limit group."""

    def __init__(self, window_seconds: int, purge_every: int = 1000):
        self.window = window_seconds
        self.purge_every = max(1, purge_every)
        self._hits: dict[tuple[str, str], list[float]] = {}
        self._calls = 0

    def hit(self, group: str, client: str, limit: int) -> tuple[bool, int, int]:
        now = time.time()
        self._calls += 1
        if self._calls % self.purge_every == 0:
            self._purge(now)
        key = (group, client)
        entry = self._hits.get(key)
        if entry is None or now - entry[0] >= self.window:
            entry = [now, 0]
            self._hits[key] = entry
        entry[1] += 1
        remaining = max(0, limit - int(entry[1]))
        reset_in = max(0, int(entry[0] + self.window - now))
        return entry[1] <= limit, remaining, reset_in

    def _purge(self, now: float) -> None:
        for key, entry in list(self._hits.items()):
            if now - entry[0] >= self.window:
                self._hits.pop(key, None)


RATE_LIMIT_MESSAGES = {
    "auth": ("Too many authentication attempts, please try again later.", "AUTH_RATE_LIMIT_EXCEEDED"),
    "general": ("Too many requests from this IP, please try again later.", "RATE_LIMIT_EXCEEDED"),
    "checkout": ("Too many checkout attempts, please try again later.", "CHECKOUT_RATE_LIMIT_EXCEEDED"),
    "payment": ("Too many payment attempts, please try again later.", "PAYMENT_RATE_LIMIT_EXCEEDED"),
}


def rate_limit_groups(path: str) -> list[str]:
    if not path.startswith("/api/"):
        return []
    groups = ["general"]
    if path.startswith("/api/auth"):
        groups.append("auth")
    elif path.startswith("/api/orders/payment"):
        groups.append("payment")
    elif path.startswith("/api/orders/checkout"):
        groups.append("checkout")
    return groups


def client_ip(request: web.Request) -> str:
    return request.remote or "unknown"


class SecurityMiddleware:
    """Request hygiene shared by every route: CORS, sessions, CSRF, limits, logging."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.sessions = SessionStore(settings.session_max_age)
        self.rate_limiter = RateLimiter(settings.rate_limit_window)

    def outer(self) -> list:
        return [self.cors, self.security_logging, self.session_management]

    def inner(self) -> list:
        return [self.validate_request, self.ip_blocking, self.rate_limit]

    def guarded(self) -> list:
        return [self.payment_security, self.csrf_protection]

    def is_origin_allowed(self, origin: str) -> bool:
        for allowed in self.settings.allowed_origins:
            if allowed == origin:
                return True
            if "*" in allowed and fnmatch.fnmatch(origin, allowed):
                return True
        return False

    @web.middleware
    async def cors(self, request: web.Request, handler):
        response = await handler(request)
        origin = request.headers.get("Origin")
        if origin and self.is_origin_allowed(origin):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
        else:
            response.headers["Access-Control-Allow-Origin"] = self.settings.allowed_origins[0]
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,PATCH,DELETE,OPTIONS"
        request_headers = request.headers.get("Access-Control-Request-Headers")
        response.headers["Access-Control-Allow-Headers"] = (
            request_headers or f"Content-Type,Authorization,{CSRF_HEADER},X-Session-ID"
        )
        response.headers["Access-Control-Expose-Headers"] = f"{CSRF_HEADER},X-Session-ID"
        return response

    @web.middleware
    async def security_logging(self, request: web.Request, handler):
        started = time.monotonic()
        response = await handler(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if response.status >= 400:
            user_agent = request.headers.get("User-Agent", "")
            logger.warning(
                f"Security event: {request.method} {request.path} -> {response.status} "
                f"ip={client_ip(request)} ua={user_agent} ({elapsed_ms}ms)"
            )
        elif "/payment" in request.path or "/checkout" in request.path:
            logger.info(f"Payment request: {request.method} {request.path} -> {response.status} ip={client_ip(request)}")
        return response

    @web.middleware
    async def session_management(self, request: web.Request, handler):
        session_id = request.cookies.get(SESSION_COOKIE) or request.headers.get("X-Session-ID")
        session = self.sessions.get(session_id)
        if session is None:
            session = self.sessions.create()
        else:
            self.sessions.touch(session)
        request[SESSION_KEY] = session

        response = await handler(request)
        response.set_cookie(
            SESSION_COOKIE,
            session["id"],
            max_age=self.settings.session_max_age,
            httponly=True,
            samesite="Strict",
            secure=self.settings.is_production,
            path="/",
        )
        response.headers[CSRF_HEADER] = session["csrf_token"]
        response.headers["X-Session-ID"] = session["id"]
        return response

    @web.middleware
    async def validate_request(self, request: web.Request, handler):
        if request.method not in ALLOWED_METHODS:
            raise ShopError("Method not allowed", code="METHOD_NOT_ALLOWED", status=405)

        limit = self.settings.max_body_bytes
        if request.path in UPLOAD_PATHS:
            limit = self.settings.upload_max_bytes * self.settings.upload_max_files + 64 * 1024
        if request.content_length is not None and request.content_length > limit:
            raise ShopError("Request entity too large", code="REQUEST_TOO_LARGE", status=413)
        return await handler(request)

    @web.middleware
    async def ip_blocking(self, request: web.Request, handler):
        if client_ip(request) in self.settings.blocked_ips:
            logger.warning(f"Blocked request from {client_ip(request)} to {request.path}")
            raise PermissionDenied("Access denied", code="IP_BLOCKED")
        return await handler(request)

    @web.middleware
    async def rate_limit(self, request: web.Request, handler):
        if request.method == "OPTIONS":
            return await handler(request)

        headers: dict[str, str] = {}
        for group in rate_limit_groups(request.path):
            limit = self.settings.rate_limits[group]
            allowed, remaining, reset_in = self.rate_limiter.hit(group, client_ip(request), limit)
            if not allowed:
                message, code = RATE_LIMIT_MESSAGES[group]
                raise RateLimitError(message, code=code, details={"retryAfter": reset_in})
            headers = {
                "RateLimit-Limit": str(limit),
                "RateLimit-Remaining": str(remaining),
                "RateLimit-Reset": str(reset_in),
            }

        response = await handler(request)
        response.headers.update(headers)
        return response

    @web.middleware
    async def payment_security(self, request: web.Request, handler):
        if not request.path.startswith("/api/orders") or request.method == "OPTIONS":
            return await handler(request)

        origin = request.headers.get("Origin")
        if origin and not self.is_origin_allowed(origin):
            raise PermissionDenied("Invalid origin", code="INVALID_ORIGIN")
        if request.method == "POST" and "application/json" not in request.headers.get("Content-Type", "").lower():
            raise ValidationError("Content-Type must be application/json", code="INVALID_CONTENT_TYPE")
        return await handler(request)

    @web.middleware
    async def csrf_protection(self, request: web.Request, handler):
        if request.method in SAFE_METHODS or not request.path.startswith("/api/orders"):
            return await handler(request)

        session = request.get(SESSION_KEY) or {}
        if not validate_csrf_token(request.headers.get(CSRF_HEADER), session.get("csrf_token")):
            raise PermissionDenied("Invalid CSRF token", code="CSRF_ERROR")
        return await handler(request)
