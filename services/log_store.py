"""
Durable storage for per-tenant item logs and the tenant/feed registry.

Two async protocols are consumed by the rest of the service:
    ItemLog      - bounded, insertion-ordered item history per tenant
    TenantStore  - known tenants and the feed URLs registered for each

`JsonFileStore` keeps one directory per tenant holding
lowdb-style `{"log": [...]}` documents. `services.pg_store.PostgresStore`
offers the same contract on Postgres.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from app.core.config import Settings
from app.core.logging import get_logger
from app.models.feed_item import FeedItem

logger = get_logger()

_TENANT_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")

TENANTS_FILE = "tenants.json"
ITEMS_FILE = "db.json"
FEEDS_FILE = "feeds.json"


class StoreError(Exception):
    """Persistence failure; fatal to the operation that triggered it."""


class InvalidTenantError(ValueError):
    pass


def validate_tenant_id(tenant_id: str) -> str:
    if not tenant_id or tenant_id in {".", ".."} or not _TENANT_ID_RE.match(tenant_id):
        raise InvalidTenantError(f"invalid tenant id: {tenant_id!r}")
    return tenant_id


@runtime_checkable
class ItemLog(Protocol):
    async def append(self, tenant_id: str, item: FeedItem) -> None: ...

    async def evict_oldest(self, tenant_id: str) -> Optional[FeedItem]: ...

    async def find_by_link(self, tenant_id: str, link: str) -> Optional[FeedItem]: ...

    async def list(self, tenant_id: str) -> List[FeedItem]: ...


@runtime_checkable
class TenantStore(Protocol):
    async def list_tenants(self) -> List[str]: ...

    async def add_tenant(self, tenant_id: str) -> bool: ...

    async def list_feeds(self, tenant_id: str) -> List[str]: ...

    async def add_feed(self, tenant_id: str, url: str) -> bool: ...


def _write_atomic(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(payload)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def _read_document(path: Path, key: str) -> List[Dict[str, Any]]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    data = json.loads(text or "{}")
    if not isinstance(data, dict):
        raise ValueError(f"{path} root must be an object")
    rows = data.get(key) or []
    if not isinstance(rows, list):
        raise ValueError(f"{path}: '{key}' must be a list")
    return rows


class JsonFileStore:
    """
    File-backed store. Documents are read once and cached; every mutation
    writes the full document atomically on a worker thread and only updates
    the cache after the write succeeded.
    """

    def __init__(self, data_dir: str | os.PathLike[str]) -> None:
        self.root = Path(data_dir)
        self._docs: Dict[Path, List[Dict[str, Any]]] = {}
        self._locks: Dict[Path, asyncio.Lock] = {}

    # -- helpers -----------------------------------------------------------

    def _tenants_path(self) -> Path:
        return self.root / TENANTS_FILE

    def _tenant_path(self, tenant_id: str, filename: str) -> Path:
        return self.root / validate_tenant_id(tenant_id) / filename

    def _lock(self, path: Path) -> asyncio.Lock:
        lock = self._locks.get(path)
        if lock is None:
            lock = self._locks[path] = asyncio.Lock()
        return lock

    async def _load(self, path: Path, key: str) -> List[Dict[str, Any]]:
        rows = self._docs.get(path)
        if rows is None:
            try:
                rows = await asyncio.to_thread(_read_document, path, key)
            except (OSError, ValueError) as exc:
                logger.error("store_read_failed", path=str(path), error=str(exc))
                raise StoreError(f"cannot read {path}: {exc}") from exc
            self._docs.setdefault(path, rows)
            rows = self._docs[path]
        return rows

    async def _commit(self, path: Path, key: str, rows: List[Dict[str, Any]]) -> None:
        payload = json.dumps({key: rows}, ensure_ascii=False, indent=2)
        try:
            await asyncio.to_thread(_write_atomic, path, payload)
        except OSError as exc:
            logger.error("store_write_failed", path=str(path), error=str(exc))
            raise StoreError(f"cannot write {path}: {exc}") from exc
        self._docs[path] = rows

    # -- ItemLog -------------------------------------------------------------

    async def append(self, tenant_id: str, item: FeedItem) -> None:
        path = self._tenant_path(tenant_id, ITEMS_FILE)
        async with self._lock(path):
            rows = await self._load(path, "log")
            await self._commit(path, "log", [*rows, item.to_wire()])

    async def evict_oldest(self, tenant_id: str) -> Optional[FeedItem]:
        path = self._tenant_path(tenant_id, ITEMS_FILE)
        async with self._lock(path):
            rows = await self._load(path, "log")
            if not rows:
                return None
            await self._commit(path, "log", rows[1:])
        return FeedItem.model_validate(rows[0])

    async def find_by_link(self, tenant_id: str, link: str) -> Optional[FeedItem]:
        path = self._tenant_path(tenant_id, ITEMS_FILE)
        for row in await self._load(path, "log"):
            if row.get("link") == link:
                return FeedItem.model_validate(row)
        return None

    async def list(self, tenant_id: str) -> List[FeedItem]:
        path = self._tenant_path(tenant_id, ITEMS_FILE)
        return [FeedItem.model_validate(row) for row in await self._load(path, "log")]

    # -- TenantStore ---------------------------------------------------------

    async def list_tenants(self) -> List[str]:
        rows = await self._load(self._tenants_path(), "tenants")
        return [str(row["key"]) for row in rows if row.get("key")]

    async def add_tenant(self, tenant_id: str) -> bool:
        validate_tenant_id(tenant_id)
        path = self._tenants_path()
        async with self._lock(path):
            rows = await self._load(path, "tenants")
            if any(row.get("key") == tenant_id for row in rows):
                return False
            await self._commit(path, "tenants", [*rows, {"key": tenant_id}])
        return True

    async def list_feeds(self, tenant_id: str) -> List[str]:
        rows = await self._load(self._tenant_path(tenant_id, FEEDS_FILE), "log")
        return [str(row["feed"]) for row in rows if row.get("feed")]

    async def add_feed(self, tenant_id: str, url: str) -> bool:
        path = self._tenant_path(tenant_id, FEEDS_FILE)
        async with self._lock(path):
            rows = await self._load(path, "log")
            if any(row.get("feed") == url for row in rows):
                return False
            await self._commit(path, "log", [*rows, {"feed": url}])
        return True

    async def close(self) -> None:
        self._docs.clear()


def build_store(settings: Settings):
    """Pick the persistence backend configured in STORE_BACKEND."""
    if settings.STORE_BACKEND == "postgres":
        from services.pg_store import PostgresStore

        return PostgresStore(settings)
    return JsonFileStore(settings.DATA_DIR)
