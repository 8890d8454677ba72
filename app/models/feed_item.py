from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, field_validator


class FeedItem(BaseModel):
    """
    A normalized, persisted feed entry. The link is the identity of an item
    within a tenant's log; instances are immutable once built.
    """

    model_config = ConfigDict(frozen=True)

    title: str
    date: datetime
    link: str
    summary: str = ""

    @field_validator("date")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


@dataclass(frozen=True)
class RawFeedItem:
    """Entry as emitted by a FeedSource, before cleanup and dedup."""

    title: Optional[str]
    link: Optional[str]
    date: Union[datetime, str, None] = None
    summary: Optional[str] = None


def serialize_items(items: Sequence[FeedItem]) -> str:
    return json.dumps([item.to_wire() for item in items])


def placeholder_payload() -> str:
    """
    Greeting sent when a tenant has no snapshot yet. A single empty entry
    instead of `[]` so clients can tell "never populated" from "empty feed".
    """
    entry = {
        "title": "",
        "date": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "link": "",
    }
    return json.dumps([entry])

