from __future__ import annotations

import re
from datetime import datetime, timezone
from html import unescape
from typing import Optional, Union

from app.core.logging import get_logger
from app.models.feed_item import FeedItem, RawFeedItem
from services.broadcaster import FanOutBroadcaster
from services.cache_debouncer import CacheDebouncer
from services.log_store import ItemLog
from services.tenant_locks import TenantLocks

logger = get_logger()

_HTML_TAG_RE = re.compile(r"<(?:.|\n)*?>")


def clean_summary(value: Optional[str]) -> str:
    """
    Strip markup, then decode entities. The order matters: `&lt;b&gt;` in the
    raw summary is text, not a tag, and must survive as `<b>`.
    """
    if not value:
        return ""
    return unescape(_HTML_TAG_RE.sub("", value).strip())


def _coerce_date(value: Union[datetime, str, None]) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            logger.debug("ingest_unparseable_date", value=value)
    return datetime.now(timezone.utc)


def normalize_item(raw: RawFeedItem) -> FeedItem:
    return FeedItem(
        title=raw.title,
        link=raw.link,
        date=_coerce_date(raw.date),
        summary=clean_summary(raw.summary),
    )


class IngestionPipeline:
    """
    Validates, dedups and persists items emitted by a tenant's FeedSource,
    pushes each new item to live subscribers and re-arms the snapshot
    debounce. All steps for a tenant run under that tenant's lock.
    """

    def __init__(
        self,
        store: ItemLog,
        broadcaster: FanOutBroadcaster,
        debouncer: CacheDebouncer,
        locks: TenantLocks,
        *,
        log_limit: int = 25,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.debouncer = debouncer
        self.locks = locks
        self.log_limit = log_limit

    async def ingest(self, tenant_id: str, raw: RawFeedItem) -> Optional[FeedItem]:
        if not raw.title or not raw.link:
            return None

        item = normalize_item(raw)

        async with self.locks(tenant_id):
            if await self.store.find_by_link(tenant_id, item.link) is not None:
                logger.debug("ingest_duplicate_skipped", tenant=tenant_id, link=item.link)
                return None

            self.debouncer.cancel(tenant_id)

            delivered = self.broadcaster.publish(tenant_id, item)

            # evict before insert so the bound holds at every point in time
            overflow = len(await self.store.list(tenant_id)) - self.log_limit + 1
            for _ in range(max(0, overflow)):
                await self.store.evict_oldest(tenant_id)
            await self.store.append(tenant_id, item)

            self.debouncer.schedule_rebuild(tenant_id)

        logger.info(
            "ingest_item_published",
            tenant=tenant_id,
            link=item.link,
            subscribers=delivered,
        )
        return item
