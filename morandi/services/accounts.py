import re
from typing import Any, Optional

import bcrypt
from tortoise.exceptions import IntegrityError

from ..config import Settings
from ..errors import AuthenticationError, NotFoundError, ValidationError
from ..middleware.auth import TokenManager
from ..utils.constants import Roles
from ..utils.helpers import new_id, to_bool
from ..utils.logger import logger
from .database import Address, User

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8
ADDRESS_TYPES = ("billing", "shipping")
ADDRESS_FIELDS = {
    "firstName": "first_name",
    "lastName": "last_name",
    "company": "company",
    "addressLine1": "address_line1",
    "addressLine2": "address_line2",
    "city": "city",
    "state": "state",
    "postalCode": "postal_code",
    "country": "country",
    "phone": "phone",
}
REQUIRED_ADDRESS_FIELDS = ("address_line1", "city", "state", "postal_code")


def _address_changes(payload: dict[str, Any]) -> dict[str, Any]:
    """Accept both camelCase and snake_case address keys."""
    changes: dict[str, Any] = {}
    for camel, column in ADDRESS_FIELDS.items():
        if camel in payload:
            changes[column] = payload[camel]
        elif column in payload:
            changes[column] = payload[column]
    address_type = payload.get("type", payload.get("address_type"))
    if address_type is not None:
        if address_type not in ADDRESS_TYPES:
            raise ValidationError("Address type must be billing or shipping")
        changes["address_type"] = address_type
    if "isDefault" in payload or "is_default" in payload:
        changes["is_default"] = to_bool(payload.get("isDefault", payload.get("is_default")))
    return changes


class AccountService:
    """Registration, login and profile management backed by the account database."""

    def __init__(self, settings: Settings, tokens: TokenManager):
        self.settings = settings
        self.tokens = tokens

    def hash_password(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self.settings.bcrypt_rounds)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def check_password(password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            logger.warning("Stored password hash is malformed")
            return False

    def _session(self, user: User) -> dict[str, Any]:
        claims = {"id": user.id, "email": user.email, "role": user.role}
        return {
            "user": user.to_public(),
            "token": self.tokens.generate(claims),
            "refreshToken": self.tokens.generate(claims, "refresh"),
            "expiresIn": self.tokens.expires_in(),
        }

    async def _get_user(self, user_id: str) -> User:
        user = await User.get_or_none(id=user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        return user

    async def register(self, payload: dict[str, Any]) -> dict[str, Any]:
        email = str(payload.get("email") or "").strip().lower()
        password = str(payload.get("password") or "")
        first_name = str(payload.get("firstName") or payload.get("first_name") or "").strip()
        last_name = str(payload.get("lastName") or payload.get("last_name") or "").strip()

        errors = []
        if not EMAIL_RE.match(email):
            errors.append({"field": "email", "message": "A valid email is required"})
        if len(password) < MIN_PASSWORD_LENGTH:
            errors.append({"field": "password", "message": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"})
        if not first_name:
            errors.append({"field": "firstName", "message": "First name is required"})
        if not last_name:
            errors.append({"field": "lastName", "message": "Last name is required"})
        if errors:
            raise ValidationError("Validation failed", code="VALIDATION_ERROR", details=errors)

        if await User.exists(email=email):
            raise ValidationError("User already exists", code="USER_EXISTS")
        try:
            user = await User.create(
                id=new_id(),
                email=email,
                password_hash=self.hash_password(password),
                first_name=first_name,
                last_name=last_name,
                phone=payload.get("phone"),
                role=Roles.USER,
            )
        except IntegrityError as exc:
            raise ValidationError("User already exists", code="USER_EXISTS") from exc

        logger.info(f"New user registered: {email}")
        return self._session(user)

    async def login(self, payload: dict[str, Any]) -> dict[str, Any]:
        email = str(payload.get("email") or "").strip().lower()
        password = str(payload.get("password") or "")
        if not email or not password:
            raise ValidationError("Email and password are required")

        user = await User.get_or_none(email=email)
        if user is None or not user.is_active or not self.check_password(password, user.password_hash):
            logger.warning(f"Failed login attempt: {email}")
            raise AuthenticationError("Invalid credentials", code="INVALID_CREDENTIALS")
        return self._session(user)

    def logout(self, claims: dict[str, Any]) -> None:
        self.tokens.revoke(claims)

    async def refresh(self, refresh_token: str) -> dict[str, Any]:
        if not refresh_token:
            raise AuthenticationError("Refresh token required", code="TOKEN_REQUIRED")
        claims = self.tokens.verify(refresh_token, "refresh")
        user = await User.get_or_none(id=claims.get("userId"))
        if user is None or not user.is_active:
            raise AuthenticationError("Invalid or expired token", code="INVALID_TOKEN")
        token = self.tokens.generate({"id": user.id, "email": user.email, "role": user.role})
        return {"token": token, "expiresIn": self.tokens.expires_in()}

    async def forgot_password(self, email: str) -> Optional[str]:
        """Return a reset token for a known account, ``None`` otherwise."""
        user = await User.get_or_none(email=str(email or "").strip().lower())
        if user is None or not user.is_active:
            return None
        logger.info(f"Password reset requested for {user.email}")
        return self.tokens.generate({"id": user.id, "email": user.email, "role": user.role}, "reset")

    async def reset_password(self, token: str, password: str) -> None:
        if not token:
            raise ValidationError("Reset token is required")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        claims = self.tokens.verify(token, "reset")
        user = await self._get_user(str(claims.get("userId")))
        user.password_hash = self.hash_password(password)
        await user.save()
        self.tokens.revoke(claims)

    async def get_profile(self, user_id: str) -> dict[str, Any]:
        return (await self._get_user(user_id)).to_public()

    async def update_profile(self, user_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        user = await self._get_user(user_id)
        first_name = payload.get("firstName", payload.get("first_name"))
        last_name = payload.get("lastName", payload.get("last_name"))
        if first_name is not None:
            if not str(first_name).strip():
                raise ValidationError("First name cannot be empty")
            user.first_name = str(first_name).strip()
        if last_name is not None:
            if not str(last_name).strip():
                raise ValidationError("Last name cannot be empty")
            user.last_name = str(last_name).strip()
        if "phone" in payload:
            user.phone = payload.get("phone") or None
        await user.save()
        return user.to_public()

    async def list_addresses(self, user_id: str) -> list[dict[str, Any]]:
        addresses = await Address.filter(user_id=user_id).order_by("-is_default", "-created_at")
        return [address.to_dict() for address in addresses]

    async def _clear_default(self, user_id: str, address_type: str, keep_id: Optional[str] = None) -> None:
        query = Address.filter(user_id=user_id, address_type=address_type, is_default=True)
        if keep_id is not None:
            query = query.exclude(id=keep_id)
        await query.update(is_default=False)

    async def add_address(self, user_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        changes = _address_changes(payload)
        if "address_type" not in changes:
            raise ValidationError("Address type must be billing or shipping")
        missing = [field for field in REQUIRED_ADDRESS_FIELDS if not changes.get(field)]
        if missing:
            raise ValidationError(f"Missing address fields: {', '.join(missing)}")
        changes["country"] = changes.get("country") or "India"

        if changes.get("is_default"):
            await self._clear_default(user_id, changes["address_type"])
        address = await Address.create(id=new_id(), user_id=user_id, **changes)
        return address.to_dict()

    async def update_address(self, user_id: str, address_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        address = await Address.get_or_none(id=address_id, user_id=user_id)
        if address is None:
            raise NotFoundError("Address not found", code="ADDRESS_NOT_FOUND")
        changes = _address_changes(payload)
        for field in REQUIRED_ADDRESS_FIELDS:
            if field in changes and not changes[field]:
                raise ValidationError(f"{field} cannot be empty")

        address_type = changes.get("address_type", address.address_type)
        if changes.get("is_default"):
            await self._clear_default(user_id, address_type, keep_id=address.id)
        for field, value in changes.items():
            setattr(address, field, value)
        await address.save()
        return address.to_dict()

    async def delete_address(self, user_id: str, address_id: str) -> None:
        deleted = await Address.filter(id=address_id, user_id=user_id).delete()
        if not deleted:
            raise NotFoundError("Address not found", code="ADDRESS_NOT_FOUND")

    async def set_role(self, user_id: str, role: str) -> dict[str, Any]:
        if role not in (Roles.USER, Roles.ADMIN, Roles.AUTHOR):
            raise ValidationError("Invalid role")
        user = await self._get_user(user_id)
        user.role = role
        await user.save()
        return user.to_public()
