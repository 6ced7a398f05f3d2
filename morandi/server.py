import importlib
import os
import traceback
from typing import Optional

from aiohttp import web

from .config import Settings
from .errors import ShopError
from .middleware.auth import AuthMiddleware, TokenManager
from .middleware.security import SecurityMiddleware
from .services.accounts import AccountService
from .services.blog import BlogService
from .services.cart import CartService
from .services.catalog import CatalogService
from .services.checkout import CheckoutService
from .services.database import close_db, init_db
from .services.orders import OrderService
from .services.payments import PaymentService, RazorpayClient
from .services.returns import OrderReturnService
from .services.reviews import ReviewService
from .services.storage import ShopStorage
from .services.tracking import OrderTrackingService
from .services.uploads import ReviewImageUploader
from .services.wishlist import WishlistService
from .utils.constants import DEFAULT_CATEGORIES, DEFAULT_SHIPPING_METHODS, Collections
from .utils.helpers import utc_now_iso
from .utils.logger import logger


class MorandiServer:
    """The storefront API: services, middleware chain and route groups on one aiohttp app."""

    def __init__(self, settings: Optional[Settings] = None, gateway: Optional[RazorpayClient] = None):
        self.settings = settings or Settings()
        self.host = self.settings.host
        self.port = self.settings.port

        self.storage = ShopStorage(self.settings)
        self.tokens = TokenManager(self.settings)
        self.gateway = gateway or RazorpayClient(self.settings)
        self.accounts = AccountService(self.settings, self.tokens)
        self.catalog = CatalogService(self.storage)
        self.cart = CartService(self.storage, self.catalog)
        self.payments = PaymentService(self.storage, self.gateway)
        self.tracking = OrderTrackingService(self.storage)
        self.checkout = CheckoutService(self.storage, self.catalog, self.gateway, self.payments, self.tracking)
        self.orders = OrderService(self.storage, self.catalog, self.cart, self.payments, self.tracking)
        self.returns = OrderReturnService(self.storage, self.payments, self.tracking)
        self.reviews = ReviewService(self.storage)
        self.wishlist = WishlistService(self.storage, self.cart)
        self.blog = BlogService(self.storage)
        self.uploads = ReviewImageUploader(self.settings)

        self.security = SecurityMiddleware(self.settings)
        self.auth = AuthMiddleware(self.tokens)
        upload_allowance = self.settings.upload_max_bytes * self.settings.upload_max_files
        self.app = web.Application(
            middlewares=[
                *self.security.outer(),
                self._error_middleware,
                *self.security.inner(),
                self.auth.middleware,
                *self.security.guarded(),
            ],
            client_max_size=max(self.settings.max_body_bytes, upload_allowance + 1024 * 1024),
        )
        self.app.router.add_route("OPTIONS", "/{tail:.*}", self._handle_options)
        self.app.router.add_get("/health", self.health)
        self.settings.upload_dir.mkdir(parents=True, exist_ok=True)
        self.app.router.add_static("/uploads/", self.settings.upload_dir)
        self.load_routes()

        self.app.on_startup.append(self._on_startup)
        self.app.on_cleanup.append(self._on_cleanup)
        self.runner: Optional[web.AppRunner] = None

    def load_routes(self) -> None:
        """Import every module in ``morandi/routes`` and let it register its handlers."""
        routes_dir = os.path.join(os.path.dirname(__file__), "routes")
        for filename in sorted(os.listdir(routes_dir)):
            if not filename.endswith(".py") or filename.startswith("_") or filename == "base.py":
                continue
            module_name = f"{__package__}.routes.{filename[:-3]}"
            try:
                module = importlib.import_module(module_name)
                module.setup(self)
            except Exception as exc:
                logger.error(f"Failed to load route module {module_name}: {exc}\n{traceback.format_exc()}")
                raise
            logger.info(f"Loaded route module: {module_name}")

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler):
        try:
            return await handler(request)
        except ShopError as exc:
            return web.json_response(exc.to_dict(), status=exc.status)
        except web.HTTPException as exc:
            if exc.status < 400:
                raise
            return self._http_error(exc)
        except Exception as exc:
            logger.exception(f"Unhandled error on {request.method} {request.path}: {exc}")
            message = "Internal server error" if self.settings.is_production else str(exc)
            return web.json_response({"ok": False, "message": message, "code": "INTERNAL_ERROR"}, status=500)

    @staticmethod
    def _http_error(exc: web.HTTPException) -> web.Response:
        # The OPTIONS catch-all matches every path, so unknown paths surface as 405.
        unknown_path = isinstance(exc, web.HTTPMethodNotAllowed) and exc.allowed_methods <= {"OPTIONS"}
        if exc.status == 404 or unknown_path:
            return web.json_response({"ok": False, "message": "Route not found", "code": "ROUTE_NOT_FOUND"}, status=404)
        code = exc.reason.upper().replace(" ", "_")
        return web.json_response({"ok": False, "message": exc.reason, "code": code}, status=exc.status)

    async def _handle_options(self, request: web.Request):
        return web.Response(status=204)

    async def health(self, request: web.Request):
        return web.json_response(
            {
                "ok": True,
                "status": "OK",
                "timestamp": utc_now_iso(),
                "environment": self.settings.environment,
                "storage": self.storage.backend,
            }
        )

    async def _on_startup(self, app: web.Application) -> None:
        await init_db(self.settings)
        await self.storage.start()
        await self.storage.seed(Collections.CATEGORIES, DEFAULT_CATEGORIES)
        await self.storage.seed(Collections.SHIPPING_METHODS, DEFAULT_SHIPPING_METHODS)
        logger.info(f"Storefront services ready (storage: {self.storage.backend})")

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.storage.stop()
        await close_db()

    async def start(self) -> None:
        if self.runner is not None:
            return

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        logger.info(f"Morandi API listening on {self.host}:{self.port} ({self.settings.environment})")

    async def stop(self) -> None:
        if self.runner is None:
            return

        await self.runner.cleanup()
        self.runner = None
        logger.info("Morandi API stopped.")
