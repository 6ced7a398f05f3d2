import os
import re
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .utils.helpers import to_bool, to_float, to_int


class Settings:
    """Runtime configuration read from the environment (and ``.env`` when present)."""

    def __init__(self):
        load_dotenv()

        self.environment = (os.getenv("NODE_ENV") or os.getenv("APP_ENV") or "development").strip().lower()
        self.host = os.getenv("API_HOST", "0.0.0.0")
        port_value = os.getenv("PORT") or os.getenv("API_PORT") or "5000"
        self.port = to_int(port_value, default=5000) or 5000
        self.api_url = (os.getenv("API_URL") or f"http://localhost:{self.port}").strip().rstrip("/")

        frontend_url = (os.getenv("FRONTEND_URL") or "http://localhost:3000").strip()
        raw_origins = (os.getenv("FRONTEND_ORIGINS") or "").strip()
        origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]
        for origin in (frontend_url, "http://localhost:3000", "https://morandi.vercel.app"):
            if origin and origin not in origins:
                origins.append(origin)
        self.frontend_url = frontend_url
        self.allowed_origins = origins

        jwt_secret = (os.getenv("JWT_SECRET") or "").strip()
        if not jwt_secret and self.environment == "production":
            raise RuntimeError("JWT_SECRET is required in production")
        self.jwt_secret = jwt_secret or "morandi-dev-secret"
        self.jwt_expires_seconds = to_int(os.getenv("JWT_EXPIRES_SECONDS"), default=86400) or 86400
        self.refresh_expires_seconds = to_int(os.getenv("JWT_REFRESH_EXPIRES_SECONDS"), default=7 * 86400) or 7 * 86400
        self.reset_expires_seconds = to_int(os.getenv("JWT_RESET_EXPIRES_SECONDS"), default=3600) or 3600
        self.bcrypt_rounds = to_int(os.getenv("BCRYPT_ROUNDS"), default=12) or 12

        self.session_max_age = to_int(os.getenv("SESSION_MAX_AGE_SECONDS"), default=86400) or 86400
        self.cart_session_max_age = to_int(os.getenv("CART_SESSION_MAX_AGE_SECONDS"), default=30 * 86400) or 30 * 86400
        self.max_body_bytes = to_int(os.getenv("MAX_BODY_BYTES"), default=1024 * 1024) or 1024 * 1024

        self.rate_limit_window = to_int(os.getenv("RATE_LIMIT_WINDOW_SECONDS"), default=15 * 60) or 15 * 60
        self.rate_limits = {
            "auth": self._env_limit("RATE_LIMIT_AUTH_MAX", 5),
            "general": self._env_limit("RATE_LIMIT_GENERAL_MAX", 100),
            "checkout": self._env_limit("RATE_LIMIT_CHECKOUT_MAX", 20),
            "payment": self._env_limit("RATE_LIMIT_PAYMENT_MAX", 10),
        }
        raw_blocked = (os.getenv("BLOCKED_IPS") or "").strip()
        self.blocked_ips = {ip.strip() for ip in raw_blocked.split(",") if ip.strip()}

        self.db_url = (os.getenv("SUPABASE_DATABASE_URL") or os.getenv("DATABASE_URL") or "").strip()
        self.storage_backend = (os.getenv("SHOP_STORAGE_BACKEND") or "auto").strip().lower()
        if self.storage_backend not in {"auto", "supabase", "json"}:
            self.storage_backend = "auto"
        self.require_supabase_storage = self.storage_backend == "supabase" or to_bool(
            os.getenv("SHOP_REQUIRE_SUPABASE", "false")
        )
        self.kv_table = (os.getenv("SHOP_KV_TABLE") or "morandi_kv").strip()
        if not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", self.kv_table):
            self.kv_table = "morandi_kv"
        self.data_dir = Path(os.getenv("SHOP_DATA_DIR", "data"))
        self.upload_dir = Path(os.getenv("UPLOAD_DIR", "uploads"))
        self.upload_max_bytes = to_int(os.getenv("UPLOAD_MAX_BYTES"), default=5 * 1024 * 1024) or 5 * 1024 * 1024
        self.upload_max_files = to_int(os.getenv("UPLOAD_MAX_FILES"), default=5) or 5

        self.razorpay_key_id = (os.getenv("RAZORPAY_KEY_ID") or "").strip()
        self.razorpay_key_secret = (os.getenv("RAZORPAY_KEY_SECRET") or "").strip()
        self.razorpay_api_url = (os.getenv("RAZORPAY_API_URL") or "https://api.razorpay.com/v1").strip().rstrip("/")
        self.gateway_timeout_seconds = to_float(os.getenv("RAZORPAY_TIMEOUT_SECONDS"), default=15.0) or 15.0
        self.gateway_max_retries = to_int(os.getenv("RAZORPAY_MAX_RETRIES"), default=1)
        if self.gateway_max_retries is None:
            self.gateway_max_retries = 1

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def use_supabase_storage(self) -> bool:
        if self.require_supabase_storage:
            return True
        return self.storage_backend == "auto" and self.db_url.startswith(("postgres://", "postgresql://"))

    @staticmethod
    def _env_limit(key: str, default: int) -> int:
        value: Optional[int] = to_int(os.getenv(key), default=default)
        return max(1, value if value is not None else default)
