from typing import TYPE_CHECKING, Any, Optional

from aiohttp import web

from ..errors import ValidationError
from ..utils.helpers import new_id, to_int

if TYPE_CHECKING:
    from ..server import MorandiServer

CART_SESSION_COOKIE = "sessionId"


class BaseRoutes:
    """Shared plumbing for a group of API routes.

    Subclasses set ``prefix`` and implement :meth:`register`, adding their
    handlers to the application router the same way the server adds its own.
    """

    prefix = ""

    def __init__(self, server: "MorandiServer"):
        self.server = server
        self.settings = server.settings

    def register(self, router: web.UrlDispatcher) -> None:
        raise NotImplementedError

    def path(self, suffix: str = "") -> str:
        return f"{self.prefix}{suffix}" or "/"

    @staticmethod
    async def safe_json(request: web.Request) -> dict[str, Any]:
        if not request.body_exists:
            return {}
        try:
            body = await request.json()
        except (ValueError, UnicodeDecodeError) as exc:
            raise ValidationError("Invalid JSON body", code="INVALID_JSON") from exc
        if body is None:
            return {}
        if not isinstance(body, dict):
            raise ValidationError("JSON body must be an object", code="INVALID_JSON")
        return body

    @staticmethod
    def ok(status: int = 200, **payload: Any) -> web.Response:
        return web.json_response({"ok": True, **payload}, status=status)

    @staticmethod
    def query_int(request: web.Request, name: str, default: int) -> int:
        value = to_int(request.query.get(name), default=default)
        return default if value is None else value

    @staticmethod
    def query_filters(request: web.Request) -> dict[str, Any]:
        return {key: value for key, value in request.query.items()}

    def cart_session(self, request: web.Request) -> tuple[str, bool]:
        """Return the guest cart session id and whether it was just created."""
        session_id = request.cookies.get(CART_SESSION_COOKIE)
        if session_id:
            return session_id, False
        return new_id(), True

    def remember_cart_session(self, response: web.StreamResponse, session_id: Optional[str], created: bool) -> None:
        if not created or not session_id:
            return
        response.set_cookie(
            CART_SESSION_COOKIE,
            session_id,
            max_age=self.settings.cart_session_max_age,
            httponly=True,
            secure=self.settings.is_production,
            samesite="Lax",
            path="/",
        )
