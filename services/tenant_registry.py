from __future__ import annotations

import asyncio
from typing import Callable, Dict, List, Protocol

from app.core.logging import get_logger
from services.log_store import TenantStore, validate_tenant_id
from services.tenant_locks import TenantLocks

logger = get_logger()


class FeedSourceLike(Protocol):
    def add_feed_url(self, url: str) -> bool: ...

    async def close(self) -> None: ...


SourceFactory = Callable[[str], FeedSourceLike]


class TenantRegistry:
    """
    Owns tenant -> FeedSource and tenant -> feed URLs. There is never more
    than one FeedSource per tenant, also when first registrations race.
    """

    def __init__(self, store: TenantStore, source_factory: SourceFactory) -> None:
        self.store = store
        self.source_factory = source_factory
        self._sources: Dict[str, FeedSourceLike] = {}
        self._create_lock = asyncio.Lock()
        self._feed_locks = TenantLocks()

    def get(self, tenant_id: str) -> FeedSourceLike | None:
        return self._sources.get(tenant_id)

    def tenants(self) -> List[str]:
        return sorted(self._sources)

    async def feeds(self, tenant_id: str) -> List[str]:
        return await self.store.list_feeds(tenant_id)

    async def get_or_create(self, tenant_id: str) -> FeedSourceLike:
        source = self._sources.get(tenant_id)
        if source is not None:
            return source
        validate_tenant_id(tenant_id)
        async with self._create_lock:
            source = self._sources.get(tenant_id)
            if source is not None:
                return source
            await self.store.add_tenant(tenant_id)
            source = self.source_factory(tenant_id)
            self._sources[tenant_id] = source
            logger.info("tenant_created", tenant=tenant_id)
            return source

    async def register_feed(self, tenant_id: str, url: str) -> bool:
        validate_tenant_id(tenant_id)
        async with self._feed_locks(tenant_id):
            if url in await self.store.list_feeds(tenant_id):
                logger.debug("feed_already_registered", tenant=tenant_id, url=url)
                return False
            source = await self.get_or_create(tenant_id)
            await self.store.add_feed(tenant_id, url)
            source.add_feed_url(url)
        logger.info("feed_registered", tenant=tenant_id, url=url)
        return True

    async def restore(self) -> int:
        """
        Recreate every persisted tenant's FeedSource and resume polling its
        feeds. Must finish before subscriber traffic is accepted.
        """
        restored = 0
        for tenant_id in await self.store.list_tenants():
            async with self._create_lock:
                source = self._sources.get(tenant_id)
                if source is None:
                    source = self._sources[tenant_id] = self.source_factory(tenant_id)
            feeds = await self.store.list_feeds(tenant_id)
            for url in feeds:
                source.add_feed_url(url)
            restored += 1
            logger.info("tenant_restored", tenant=tenant_id, feeds=len(feeds))
        return restored

    async def close(self) -> None:
        sources = list(self._sources.values())
        self._sources.clear()
        for source in sources:
            await source.close()
