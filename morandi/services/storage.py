import asyncio
import copy
import json
import os
import ssl
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import asyncpg

from ..config import Settings
from ..utils.helpers import new_id, utc_now_iso
from ..utils.logger import logger

Record = dict[str, Any]


def no_verify_ssl_context() -> ssl.SSLContext:
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def normalize_postgres_dsn(db_url: str) -> tuple[str, Any]:
    """Return an asyncpg friendly DSN plus the ``ssl`` argument it needs.

    Supabase hands out ``postgresql://`` URLs with ``sslmode`` in the query
    string; asyncpg wants the scheme and the SSL context separately. Pooler
    hosts skip certificate verification unless ``DB_SSL_VERIFY`` is set.
    """
    dsn = db_url.strip()
    if dsn.startswith("postgresql://"):
        dsn = "postgres://" + dsn[len("postgresql://") :]

    parsed = urlparse(dsn)
    if parsed.scheme != "postgres":
        return dsn, None

    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    sslmode = str(query.pop("sslmode", "")).strip().lower()
    explicit_ssl = str(query.pop("ssl", "")).strip().lower()
    host = (parsed.hostname or "").lower()

    if sslmode == "disable" or explicit_ssl in {"0", "false", "no", "disable"}:
        wants_ssl = False
    elif sslmode in {"require", "verify-ca", "verify-full"} or explicit_ssl in {
        "1",
        "true",
        "yes",
        "require",
        "verify-ca",
        "verify-full",
    }:
        wants_ssl = True
    else:
        wants_ssl = host.endswith(".pooler.supabase.com") or host.endswith(".supabase.co")

    verify_override = str(os.getenv("DB_SSL_VERIFY", "")).strip().lower()
    if verify_override in {"1", "true", "yes"}:
        verify_ssl = True
    elif verify_override in {"0", "false", "no"}:
        verify_ssl = False
    else:
        verify_ssl = not host.endswith(".pooler.supabase.com")

    ssl_arg = None
    if wants_ssl:
        ssl_arg = ssl.create_default_context() if verify_ssl else no_verify_ssl_context()

    parsed = parsed._replace(query=urlencode(query))
    return urlunparse(parsed), ssl_arg


class _TaskLock:
    """An asyncio lock the holding task may re-enter."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._owner: Optional[asyncio.Task] = None
        self._depth = 0

    async def __aenter__(self):
        task = asyncio.current_task()
        if self._owner is not None and self._owner is task:
            self._depth += 1
            return self
        await self._lock.acquire()
        self._owner = task
        self._depth = 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._depth -= 1
        if self._depth == 0:
            self._owner = None
            self._lock.release()
        return False


class ShopStorage:
    """Named collections of JSON records kept in Postgres or in JSON files.

    Each collection is stored as one JSON array, either as a row of the
    key/value table or as ``<data_dir>/<name>.json``. All writes go through a
    single re-entrant lock so read-modify-write cycles never interleave, and
    :meth:`transaction` rolls the named collections back when its body raises.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.data_dir = settings.data_dir
        self.kv_table = settings.kv_table
        self.use_supabase = settings.use_supabase_storage
        self.pg_pool: Optional[asyncpg.Pool] = None
        self._lock = _TaskLock()

    @property
    def backend(self) -> str:
        return "supabase" if self.use_supabase and self.pg_pool is not None else "json"

    async def start(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        if not self.use_supabase:
            return

        try:
            await self._init_supabase_storage()
        except Exception as exc:
            if self.settings.require_supabase_storage:
                logger.critical(f"Supabase storage init failed in required mode: {exc}")
                raise
            logger.error(f"Supabase storage init failed, falling back to JSON files: {exc}")
            self.use_supabase = False

    async def stop(self) -> None:
        if self.pg_pool is not None:
            await self.pg_pool.close()
            self.pg_pool = None

    async def _init_supabase_storage(self) -> None:
        if not self.settings.db_url:
            raise RuntimeError("DATABASE_URL or SUPABASE_DATABASE_URL is required for supabase storage")

        dsn, ssl_arg = normalize_postgres_dsn(self.settings.db_url)
        pool_kwargs: dict[str, Any] = {
            "dsn": dsn,
            "min_size": 1,
            "max_size": 5,
            "command_timeout": 30,
        }
        if ssl_arg is not None:
            pool_kwargs["ssl"] = ssl_arg
        try:
            self.pg_pool = await asyncpg.create_pool(**pool_kwargs)
        except Exception as exc:
            if "CERTIFICATE_VERIFY_FAILED" not in str(exc):
                raise
            logger.warning("Storage DB certificate verification failed. Retrying with ssl verification disabled.")
            pool_kwargs["ssl"] = no_verify_ssl_context()
            self.pg_pool = await asyncpg.create_pool(**pool_kwargs)

        async with self.pg_pool.acquire() as conn:
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.kv_table} (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )

    async def _db_get_json(self, key: str) -> Any:
        assert self.pg_pool is not None
        row = await self.pg_pool.fetchrow(f"SELECT value_json FROM {self.kv_table} WHERE key = $1", key)
        if row is None:
            return None
        try:
            return json.loads(str(row.get("value_json") or ""))
        except json.JSONDecodeError:
            logger.warning(f"Discarding unreadable storage row {key!r}")
            return None

    async def _db_set_json(self, key: str, value: Any) -> None:
        assert self.pg_pool is not None
        await self.pg_pool.execute(
            f"""
            INSERT INTO {self.kv_table} (key, value_json, updated_at)
            VALUES ($1, $2, NOW())
            ON CONFLICT (key)
            DO UPDATE SET value_json = EXCLUDED.value_json, updated_at = NOW()
            """,
            key,
            json.dumps(value, ensure_ascii=False),
        )

    def _collection_file(self, name: str) -> Path:
        return self.data_dir / f"{name}.json"

    def _read_json(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(f"Discarding unreadable storage file {path}")
            return None

    def _write_json(self, path: Path, payload: Any) -> None:
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp_path.replace(path)

    async def load(self, name: str) -> list[Record]:
        if self.backend == "supabase":
            data = await self._db_get_json(name)
        else:
            data = self._read_json(self._collection_file(name))
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    async def save(self, name: str, rows: list[Record]) -> None:
        async with self._lock:
            if self.backend == "supabase":
                await self._db_set_json(name, rows)
                return
            self._write_json(self._collection_file(name), rows)

    async def seed(self, name: str, rows: Iterable[Record]) -> None:
        async with self._lock:
            if await self.load(name):
                return
            now = utc_now_iso()
            seeded = []
            for row in rows:
                record = copy.deepcopy(dict(row))
                record.setdefault("id", new_id())
                record.setdefault("created_at", now)
                record.setdefault("updated_at", now)
                seeded.append(record)
            await self.save(name, seeded)

    async def find(
        self,
        name: str,
        predicate: Optional[Callable[[Record], bool]] = None,
        **match: Any,
    ) -> list[Record]:
        rows = await self.load(name)
        return [row for row in rows if self._matches(row, predicate, match)]

    async def first(
        self,
        name: str,
        predicate: Optional[Callable[[Record], bool]] = None,
        **match: Any,
    ) -> Optional[Record]:
        for row in await self.load(name):
            if self._matches(row, predicate, match):
                return row
        return None

    async def get(self, name: str, record_id: Any) -> Optional[Record]:
        if record_id is None:
            return None
        return await self.first(name, id=str(record_id))

    async def insert(self, name: str, record: Record) -> Record:
        async with self._lock:
            rows = await self.load(name)
            now = utc_now_iso()
            created = dict(record)
            created.setdefault("id", new_id())
            created.setdefault("created_at", now)
            created.setdefault("updated_at", now)
            rows.append(created)
            await self.save(name, rows)
            return created

    async def insert_many(self, name: str, records: Iterable[Record]) -> list[Record]:
        async with self._lock:
            rows = await self.load(name)
            now = utc_now_iso()
            created_rows = []
            for record in records:
                created = dict(record)
                created.setdefault("id", new_id())
                created.setdefault("created_at", now)
                created.setdefault("updated_at", now)
                created_rows.append(created)
            rows.extend(created_rows)
            await self.save(name, rows)
            return created_rows

    async def update(self, name: str, record_id: Any, changes: Record) -> Optional[Record]:
        async with self._lock:
            rows = await self.load(name)
            target: Optional[Record] = None
            for row in rows:
                if str(row.get("id")) != str(record_id):
                    continue
                row.update(changes)
                row["updated_at"] = utc_now_iso()
                target = row
                break
            if target is None:
                return None
            await self.save(name, rows)
            return target

    async def update_where(
        self,
        name: str,
        changes: Record,
        predicate: Optional[Callable[[Record], bool]] = None,
        **match: Any,
    ) -> int:
        async with self._lock:
            rows = await self.load(name)
            updated = 0
            now = utc_now_iso()
            for row in rows:
                if not self._matches(row, predicate, match):
                    continue
                row.update(changes)
                row["updated_at"] = now
                updated += 1
            if updated:
                await self.save(name, rows)
            return updated

    async def delete(self, name: str, record_id: Any) -> bool:
        return await self.delete_where(name, id=str(record_id)) > 0

    async def delete_where(
        self,
        name: str,
        predicate: Optional[Callable[[Record], bool]] = None,
        **match: Any,
    ) -> int:
        async with self._lock:
            rows = await self.load(name)
            kept = [row for row in rows if not self._matches(row, predicate, match)]
            removed = len(rows) - len(kept)
            if removed:
                await self.save(name, kept)
            return removed

    @asynccontextmanager
    async def transaction(self, *names: str) -> AsyncIterator["ShopStorage"]:
        """Hold the write lock and restore ``names`` if the body raises."""
        async with self._lock:
            snapshots = {name: await self.load(name) for name in names}
            try:
                yield self
            except BaseException:
                for name, rows in snapshots.items():
                    await self.save(name, rows)
                logger.warning(f"Rolled back storage transaction on {', '.join(names)}")
                raise

    @staticmethod
    def _matches(row: Record, predicate: Optional[Callable[[Record], bool]], match: dict[str, Any]) -> bool:
        for key, expected in match.items():
            if row.get(key) != expected:
                return False
        if predicate is not None and not predicate(row):
            return False
        return True
