import math
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from .constants import WORDS_PER_MINUTE


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_int(value: Any, default: Optional[int]) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: Optional[float]) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", str(value or "").lower())
    return slug.strip("-")


def reading_time(content: str) -> int:
    words = len(str(content or "").split())
    return math.ceil(words / WORDS_PER_MINUTE)


def money(value: float) -> float:
    return round(float(value), 2)


def paginate(rows: list, page: int, limit: int) -> tuple[list, dict[str, int]]:
    """Slice ``rows`` for the requested page and build the pagination block."""
    page = max(1, page)
    limit = max(1, limit)
    total = len(rows)
    start = (page - 1) * limit
    pagination = {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": math.ceil(total / limit) if total else 0,
    }
    return rows[start : start + limit], pagination
