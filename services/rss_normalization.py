from __future__ import annotations

import calendar
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from app.models.feed_item import RawFeedItem


class RSSNormalizationError(Exception):
    """
    Recoverable failure for a single RSS/Atom entry. Logged by the caller,
    never aborts the rest of the feed.
    """

    def __init__(self, message: str, entry_raw: Dict[str, Any] | None = None):
        super().__init__(message)
        self.entry_raw = entry_raw or {}


def detect_feed_type(parsed_feed: Any) -> str:
    """
    Detect the source feed format.
    Returns:
        'rss', 'atom' or 'unknown'
    """
    if isinstance(parsed_feed, dict):
        version = str(parsed_feed.get("version") or "").lower()
    else:
        version = str(getattr(parsed_feed, "version", "") or "").lower()

    if version.startswith("rss"):
        return "rss"
    if version.startswith("atom"):
        return "atom"
    return "unknown"


def _struct_time_to_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        timestamp = calendar.timegm(value)
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _get_first_content_value(entry: Dict[str, Any]) -> str:
    content = entry.get("content")
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict):
                val = block.get("value")
                if isinstance(val, str) and val.strip():
                    return val
    if isinstance(content, dict):
        val = content.get("value")
        if isinstance(val, str):
            return val
    return ""


def _extract_title(entry: Dict[str, Any]) -> str:
    title = entry.get("title")
    if isinstance(title, str) and title.strip():
        return title.strip()
    return ""


def _extract_link(entry: Dict[str, Any]) -> str:
    link = entry.get("link")
    if isinstance(link, str) and link.strip():
        return link.strip()

    links = entry.get("links")
    if isinstance(links, list):
        for link_entry in links:
            if not isinstance(link_entry, dict):
                continue
            rel = str(link_entry.get("rel") or "").lower()
            href = link_entry.get("href")
            if isinstance(href, str) and href.strip() and rel in {"", "alternate"}:
                return href.strip()

    entry_id = entry.get("id")
    if isinstance(entry_id, str) and entry_id.strip().lower().startswith(("http://", "https://")):
        return entry_id.strip()
    return ""


def _extract_summary(entry: Dict[str, Any]) -> Optional[str]:
    # markup is left intact; the ingestion pipeline owns cleanup
    summary = entry.get("summary") or entry.get("description")
    if isinstance(summary, str) and summary.strip():
        return summary
    content_value = _get_first_content_value(entry)
    return content_value or None


def _extract_published_at(entry: Dict[str, Any]) -> Optional[datetime]:
    return (
        _struct_time_to_datetime(entry.get("published_parsed"))
        or _struct_time_to_datetime(entry.get("updated_parsed"))
    )


def normalize_entry(entry: Dict[str, Any]) -> RawFeedItem:
    if not hasattr(entry, "get"):
        raise RSSNormalizationError(f"unsupported entry type: {type(entry).__name__}")
    return RawFeedItem(
        title=_extract_title(entry),
        link=_extract_link(entry),
        date=_extract_published_at(entry),
        summary=_extract_summary(entry),
    )


def normalize_feed_entries(parsed_feed: Any) -> Tuple[List[RawFeedItem], List[RSSNormalizationError]]:
    """
    Turn a feedparser result into RawFeedItems, oldest first.

    Feeds list their newest entries first, so the document order is reversed
    to emit entries in the order they were published.
    """
    items: List[RawFeedItem] = []
    errors: List[RSSNormalizationError] = []
    if isinstance(parsed_feed, dict):
        entries = parsed_feed.get("entries") or []
    else:
        entries = getattr(parsed_feed, "entries", []) or []
    for entry in reversed(list(entries)):
        try:
            items.append(normalize_entry(entry))
        except RSSNormalizationError as err:
            errors.append(err)
        except Exception as exc:
            errors.append(RSSNormalizationError(str(exc), entry_raw=entry if isinstance(entry, dict) else None))
    return items, errors
