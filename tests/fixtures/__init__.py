# tests/fixtures/__init__.py
"""
Test doubles and factories shared by the feedcast tests:
- make_raw_item() / make_item()
- FakeConnection: records what a subscriber socket was sent
- FakeFeedSource / RecordingSourceFactory: stand-ins for the feed poller
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from starlette.websockets import WebSocketState

from app.models.feed_item import FeedItem, RawFeedItem

BASE_DATE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_raw_item(
    n: int = 1,
    *,
    title: Optional[str] = None,
    link: Optional[str] = None,
    date: object = "default",
    summary: Optional[str] = "<p>summary</p>",
) -> RawFeedItem:
    """Factory for a raw entry; `date` defaults to BASE_DATE + n minutes."""
    return RawFeedItem(
        title=f"Item {n}" if title is None else title,
        link=f"http://example.com/{n}" if link is None else link,
        date=BASE_DATE + timedelta(minutes=n) if date == "default" else date,
        summary=summary,
    )


def make_item(n: int = 1, *, date: Optional[datetime] = None) -> FeedItem:
    return FeedItem(
        title=f"Item {n}",
        link=f"http://example.com/{n}",
        date=date or BASE_DATE + timedelta(minutes=n),
        summary=f"summary {n}",
    )


class FakeConnection:
    def __init__(self, *, fail: bool = False) -> None:
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.fail = fail
        self.sent: List[str] = []

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    def disconnect(self) -> None:
        self.client_state = WebSocketState.DISCONNECTED


class FakeFeedSource:
    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        self.urls: List[str] = []
        self.closed = False

    def add_feed_url(self, url: str) -> bool:
        if url in self.urls:
            return False
        self.urls.append(url)
        return True

    async def close(self) -> None:
        self.closed = True


class RecordingSourceFactory:
    def __init__(self) -> None:
        self.created: Dict[str, FakeFeedSource] = {}
        self.calls = 0

    def __call__(self, tenant_id: str) -> FakeFeedSource:
        self.calls += 1
        source = FakeFeedSource(tenant_id)
        self.created[tenant_id] = source
        return source
