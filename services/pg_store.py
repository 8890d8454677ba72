from __future__ import annotations

from typing import List, Optional

import asyncpg

from app.core.config import Settings, require_database_url
from app.core.logging import get_logger
from app.models.feed_item import FeedItem
from services.db_service import close_pool, ensure_pool, execute, fetch, fetchrow
from services.log_store import StoreError, validate_tenant_id

logger = get_logger()

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS feed_tenants (
        tenant_id TEXT PRIMARY KEY,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS feed_subscriptions (
        id BIGSERIAL PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        url TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (tenant_id, url)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS feed_items (
        id BIGSERIAL PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        link TEXT NOT NULL,
        title TEXT NOT NULL,
        published_at TIMESTAMPTZ NOT NULL,
        summary TEXT NOT NULL DEFAULT '',
        inserted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (tenant_id, link)
    )
    """,
)

_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def _row_to_item(row) -> FeedItem:
    return FeedItem(
        title=row["title"],
        date=row["published_at"],
        link=row["link"],
        summary=row["summary"] or "",
    )


class PostgresStore:
    """ItemLog + TenantStore on Postgres. Insertion order is the serial id."""

    def __init__(self, settings: Settings) -> None:
        self.dsn = require_database_url(settings)
        self._schema_ready = False

    async def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        try:
            await ensure_pool(self.dsn)
            for statement in SCHEMA_STATEMENTS:
                await execute(statement)
        except _DB_ERRORS as exc:
            logger.error("pg_store_schema_failed", error=str(exc))
            raise StoreError(f"schema setup failed: {exc}") from exc
        self._schema_ready = True

    # -- ItemLog -------------------------------------------------------------

    async def append(self, tenant_id: str, item: FeedItem) -> None:
        await self.ensure_schema()
        try:
            await execute(
                """
                INSERT INTO feed_items (tenant_id, link, title, published_at, summary)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (tenant_id, link) DO NOTHING
                """,
                validate_tenant_id(tenant_id),
                item.link,
                item.title,
                item.date,
                item.summary,
            )
        except _DB_ERRORS as exc:
            logger.error("pg_store_append_failed", tenant=tenant_id, link=item.link, error=str(exc))
            raise StoreError(str(exc)) from exc

    async def evict_oldest(self, tenant_id: str) -> Optional[FeedItem]:
        await self.ensure_schema()
        try:
            row = await fetchrow(
                """
                DELETE FROM feed_items
                WHERE id = (
                    SELECT id FROM feed_items
                    WHERE tenant_id = $1
                    ORDER BY id ASC
                    LIMIT 1
                )
                RETURNING link, title, published_at, summary
                """,
                validate_tenant_id(tenant_id),
            )
        except _DB_ERRORS as exc:
            logger.error("pg_store_evict_failed", tenant=tenant_id, error=str(exc))
            raise StoreError(str(exc)) from exc
        return _row_to_item(row) if row else None

    async def find_by_link(self, tenant_id: str, link: str) -> Optional[FeedItem]:
        await self.ensure_schema()
        try:
            row = await fetchrow(
                """
                SELECT link, title, published_at, summary
                FROM feed_items
                WHERE tenant_id = $1 AND link = $2
                """,
                validate_tenant_id(tenant_id),
                link,
            )
        except _DB_ERRORS as exc:
            raise StoreError(str(exc)) from exc
        return _row_to_item(row) if row else None

    async def list(self, tenant_id: str) -> List[FeedItem]:
        await self.ensure_schema()
        try:
            rows = await fetch(
                """
                SELECT link, title, published_at, summary
                FROM feed_items
                WHERE tenant_id = $1
                ORDER BY id ASC
                """,
                validate_tenant_id(tenant_id),
            )
        except _DB_ERRORS as exc:
            raise StoreError(str(exc)) from exc
        return [_row_to_item(row) for row in rows]

    # -- TenantStore ---------------------------------------------------------

    async def list_tenants(self) -> List[str]:
        await self.ensure_schema()
        try:
            rows = await fetch("SELECT tenant_id FROM feed_tenants ORDER BY created_at, tenant_id")
        except _DB_ERRORS as exc:
            raise StoreError(str(exc)) from exc
        return [row["tenant_id"] for row in rows]

    async def add_tenant(self, tenant_id: str) -> bool:
        await self.ensure_schema()
        try:
            result = await execute(
                "INSERT INTO feed_tenants (tenant_id) VALUES ($1) ON CONFLICT (tenant_id) DO NOTHING",
                validate_tenant_id(tenant_id),
            )
        except _DB_ERRORS as exc:
            logger.error("pg_store_add_tenant_failed", tenant=tenant_id, error=str(exc))
            raise StoreError(str(exc)) from exc
        return result.strip().endswith(" 1")

    async def list_feeds(self, tenant_id: str) -> List[str]:
        await self.ensure_schema()
        try:
            rows = await fetch(
                "SELECT url FROM feed_subscriptions WHERE tenant_id = $1 ORDER BY id ASC",
                validate_tenant_id(tenant_id),
            )
        except _DB_ERRORS as exc:
            raise StoreError(str(exc)) from exc
        return [row["url"] for row in rows]

    async def add_feed(self, tenant_id: str, url: str) -> bool:
        await self.ensure_schema()
        try:
            result = await execute(
                """
                INSERT INTO feed_subscriptions (tenant_id, url)
                VALUES ($1, $2)
                ON CONFLICT (tenant_id, url) DO NOTHING
                """,
                validate_tenant_id(tenant_id),
                url,
            )
        except _DB_ERRORS as exc:
            logger.error("pg_store_add_feed_failed", tenant=tenant_id, url=url, error=str(exc))
            raise StoreError(str(exc)) from exc
        return result.strip().endswith(" 1")

    async def close(self) -> None:
        await close_pool()
