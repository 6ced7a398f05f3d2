from typing import Any
from urllib.parse import parse_qsl, unquote_plus, urlparse

from tortoise import Tortoise, connections, fields
from tortoise.models import Model

from ..config import Settings
from ..utils.logger import logger
from .storage import no_verify_ssl_context, normalize_postgres_dsn


class User(Model):
    id = fields.CharField(pk=True, max_length=36)
    email = fields.CharField(max_length=255, unique=True)
    password_hash = fields.CharField(max_length=255)
    first_name = fields.CharField(max_length=100)
    last_name = fields.CharField(max_length=100)
    phone = fields.CharField(max_length=30, null=True)
    role = fields.CharField(max_length=20, default="user")  # user, author, admin
    is_active = fields.BooleanField(default=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "users"

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "role": self.role,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Address(Model):
    """Saved billing and shipping addresses of a user."""

    id = fields.CharField(pk=True, max_length=36)
    user_id = fields.CharField(max_length=36, index=True)
    address_type = fields.CharField(max_length=20)  # billing, shipping
    first_name = fields.CharField(max_length=100, null=True)
    last_name = fields.CharField(max_length=100, null=True)
    company = fields.CharField(max_length=255, null=True)
    address_line1 = fields.CharField(max_length=255)
    address_line2 = fields.CharField(max_length=255, null=True)
    city = fields.CharField(max_length=100)
    state = fields.CharField(max_length=100)
    postal_code = fields.CharField(max_length=20)
    country = fields.CharField(max_length=100, default="India")
    phone = fields.CharField(max_length=30, null=True)
    is_default = fields.BooleanField(default=False)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "user_addresses"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "address_type": self.address_type,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "company": self.company,
            "address_line1": self.address_line1,
            "address_line2": self.address_line2,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country": self.country,
            "phone": self.phone,
            "is_default": self.is_default,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


MODELS_MODULE = "morandi.services.database"


async def init_db(settings: Settings) -> None:
    db_url = settings.db_url or "sqlite://db.sqlite3"

    if not db_url.startswith(("postgres://", "postgresql://")):
        await Tortoise.init(db_url=db_url, modules={"models": [MODELS_MODULE]})
        await Tortoise.generate_schemas()
        return

    dsn, ssl_arg = normalize_postgres_dsn(db_url)
    parsed = urlparse(dsn)
    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    logger.info(f"Account DB init host={parsed.hostname or 'unknown'} ssl={ssl_arg is not None}")

    credentials: dict[str, Any] = {
        "host": parsed.hostname or None,
        "port": parsed.port or 5432,
        "user": unquote_plus(parsed.username or "") or None,
        "password": unquote_plus(parsed.password) if parsed.password is not None else None,
        "database": parsed.path[1:] if parsed.path and parsed.path != "/" else None,
    }
    for key in ("min_size", "max_size", "max_queries", "timeout", "statement_cache_size"):
        if key in query:
            try:
                credentials[key] = int(query[key])
            except (TypeError, ValueError):
                continue
    if "application_name" in query:
        credentials["application_name"] = str(query["application_name"])
    if ssl_arg is not None:
        credentials["ssl"] = ssl_arg

    config = {
        "connections": {
            "default": {
                "engine": "tortoise.backends.asyncpg",
                "credentials": credentials,
            }
        },
        "apps": {
            "models": {
                "models": [MODELS_MODULE],
                "default_connection": "default",
            }
        },
    }

    try:
        await Tortoise.init(config=config)
    except Exception as exc:
        if "CERTIFICATE_VERIFY_FAILED" not in str(exc):
            raise
        logger.warning("Account DB certificate verification failed. Retrying with ssl verification disabled.")
        credentials["ssl"] = no_verify_ssl_context()
        await Tortoise.init(config=config)
    await Tortoise.generate_schemas()


async def close_db() -> None:
    await connections.close_all()
