from __future__ import annotations

import asyncio
from typing import Optional

import httpx

from app.core.config import Settings
from app.core.logging import get_logger
from services.broadcaster import FanOutBroadcaster
from services.cache_debouncer import CacheDebouncer
from services.feed_source import FeedSource
from services.ingestion_service import IngestionPipeline
from services.log_store import build_store
from services.tenant_locks import TenantLocks
from services.tenant_registry import SourceFactory, TenantRegistry

logger = get_logger()


class FeedHub:
    """
    Process-scoped wiring of the ingestion/fan-out components. Built once at
    startup and handed to the request handlers through `app.state.hub`.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store=None,
        source_factory: Optional[SourceFactory] = None,
    ) -> None:
        self.settings = settings
        self.store = store if store is not None else build_store(settings)
        self.locks = TenantLocks()
        self.debouncer = CacheDebouncer(
            self.store,
            self.locks,
            delay_s=settings.DEBOUNCE_SECONDS,
            snapshot_size=settings.SNAPSHOT_SIZE,
        )
        self.broadcaster = FanOutBroadcaster(self.debouncer, queue_size=settings.SEND_QUEUE_SIZE)
        self.pipeline = IngestionPipeline(
            self.store,
            self.broadcaster,
            self.debouncer,
            self.locks,
            log_limit=settings.LOG_LIMIT,
        )
        self.registry = TenantRegistry(self.store, source_factory or self._build_source)
        self._client: Optional[httpx.AsyncClient] = None
        self._fetch_sem: Optional[asyncio.Semaphore] = None

    def _build_source(self, tenant_id: str) -> FeedSource:
        if self._client is None:
            raise RuntimeError("FeedHub not started")
        return FeedSource(
            tenant_id,
            client=self._client,
            on_item=self.pipeline.ingest,
            on_error=self._on_source_error,
            interval_s=self.settings.POLL_INTERVAL_SECONDS,
            history_size=self.settings.FEED_HISTORY_SIZE,
            semaphore=self._fetch_sem,
        )

    @staticmethod
    def _on_source_error(tenant_id: str, exc: Exception) -> None:
        logger.warning("feed_poll_failed", tenant=tenant_id, error=str(exc))

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            timeout=self.settings.FEED_TIMEOUT_S,
            headers={"User-Agent": self.settings.FEED_USER_AGENT},
        )
        self._fetch_sem = asyncio.Semaphore(self.settings.FEED_MAX_CONCURRENCY)
        restored = await self.registry.restore()
        logger.info("feed_hub_started", tenants=restored, store=self.settings.STORE_BACKEND)

    async def stop(self) -> None:
        await self.registry.close()
        await self.debouncer.close()
        await self.broadcaster.close()
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        await self.store.close()
        logger.info("feed_hub_stopped")
