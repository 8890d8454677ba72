"""
Per-tenant feed poller.

A FeedSource owns one polling task per registered URL. Every tick it fetches
the document, parses it with feedparser and hands entries it has not seen
before to `on_item`, oldest first. Fetch and parse failures are reported via
`on_error` and retried on the next tick.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from contextlib import suppress
from typing import Awaitable, Callable, Dict, List, Optional

import feedparser
import httpx

from app.core.context import spawn_detached
from app.core.logging import get_logger
from app.models.feed_item import RawFeedItem
from services.log_store import StoreError
from services.rss_normalization import normalize_feed_entries

logger = get_logger()

ItemCallback = Callable[[str, RawFeedItem], Awaitable[object]]
ErrorCallback = Callable[[str, Exception], None]


class FeedError(Exception):
    def __init__(self, url: str, message: str):
        super().__init__(f"{url}: {message}")
        self.url = url


class FeedFetchError(FeedError):
    pass


class FeedParseError(FeedError):
    pass


def _entry_key(item: RawFeedItem) -> str:
    return item.link or item.title or ""


class FeedSource:
    def __init__(
        self,
        tenant_id: str,
        *,
        client: httpx.AsyncClient,
        on_item: ItemCallback,
        on_error: ErrorCallback,
        interval_s: float = 60.0,
        history_size: int = 100,
        semaphore: Optional[asyncio.Semaphore] = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.interval_s = interval_s
        self.history_size = history_size
        self._client = client
        self._on_item = on_item
        self._on_error = on_error
        self._sem = semaphore or asyncio.Semaphore(5)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._history: Dict[str, "OrderedDict[str, None]"] = {}

    @property
    def feed_urls(self) -> List[str]:
        return list(self._tasks)

    def add_feed_url(self, url: str) -> bool:
        if url in self._tasks:
            return False
        self._history[url] = OrderedDict()
        self._tasks[url] = spawn_detached(
            self._poll_forever(url),
            name=f"feed-poll:{self.tenant_id}:{url}",
            tenant=self.tenant_id,
        )
        logger.info("feed_source_url_added", tenant=self.tenant_id, url=url)
        return True

    async def fetch(self, url: str) -> bytes:
        try:
            async with self._sem:
                response = await self._client.get(url, follow_redirects=True)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise FeedFetchError(url, str(exc) or exc.__class__.__name__) from exc
        return response.content

    async def poll_once(self, url: str) -> int:
        """Fetch one URL and emit unseen entries. Returns the number emitted."""
        raw = await self.fetch(url)
        parsed = feedparser.parse(raw)
        entries = parsed.get("entries") or []
        if parsed.get("bozo") and not entries:
            reason = parsed.get("bozo_exception")
            raise FeedParseError(url, str(reason) if reason else "not a feed")

        items, errors = normalize_feed_entries(parsed)
        for err in errors:
            logger.warning("feed_entry_normalization_error", tenant=self.tenant_id, url=url, error=str(err))

        history = self._history.setdefault(url, OrderedDict())
        limit = max(self.history_size, len(items))
        emitted = 0
        for item in items:
            key = _entry_key(item)
            if key in history:
                continue
            await self._on_item(self.tenant_id, item)
            history[key] = None
            emitted += 1
            while len(history) > limit:
                history.popitem(last=False)
        return emitted

    async def _poll_forever(self, url: str) -> None:
        while True:
            try:
                await self.poll_once(url)
            except FeedError as exc:
                self._on_error(self.tenant_id, exc)
            except StoreError as exc:
                logger.error("feed_source_persist_failed", tenant=self.tenant_id, url=url, error=str(exc))
            except Exception:
                logger.exception("feed_source_poll_crashed", tenant=self.tenant_id, url=url)
            await asyncio.sleep(self.interval_s)

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
