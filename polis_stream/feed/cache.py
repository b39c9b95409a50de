"""
Feed Cache — the aggregated content feed with retention and read tracking.

Items live in state/polis.feed.jsonl, sorted by published descending; the
feed settings live in config/feed.json.

Behavioral Contract:
- An item's id is derived from (author_url, url), so re-fetching the same
  content never creates a second entry and never resets its read state.
- After every merge: len(items) <= max_items and nothing is older than
  max_age_days.
- published timestamps are fixed-width ISO-8601 strings, so string order is
  chronological order.
"""

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from polis_stream.clock import format_timestamp, parse_timestamp, utc_now
from polis_stream.models.feed import CachedFeedItem, FeedConfig, FeedItem
from polis_stream.models.projection import ProjectionKind
from polis_stream.store.store import StreamStore

logger = logging.getLogger("polis_stream.feed")

FEED_STATE = "polis.feed"
FEED_CONFIG = "feed"


class ItemNotFoundError(KeyError):
    """Raised when a read-state operation references an unknown item id."""
    pass


def compute_item_id(author_url: str, url: str) -> str:
    """First 16 hex chars of sha256(author_url + "|" + url)."""
    return hashlib.sha256(f"{author_url}|{url}".encode()).hexdigest()[:16]


class FeedCache:
    """Feed cache for one discovery service domain."""

    def __init__(self, store: StreamStore):
        self.store = store

    # --- Reading ---

    def list(self) -> List[CachedFeedItem]:
        """All cached items, newest first."""
        return self.store.read_jsonl(FEED_STATE, CachedFeedItem)

    def list_filtered(
        self, item_type: str = "", status: str = ""
    ) -> List[CachedFeedItem]:
        """Items filtered by type ("post"/"comment") and status ("read"/"unread")."""
        items = self.list()
        if item_type:
            items = [i for i in items if i.type.value == item_type]
        if status == "unread":
            items = [i for i in items if not i.is_read]
        elif status == "read":
            items = [i for i in items if i.is_read]
        return items

    def unread_count(self) -> int:
        return sum(1 for i in self.list() if not i.is_read)

    # --- Merging and retention ---

    def merge_items(
        self, items: Iterable[FeedItem], now: Optional[datetime] = None
    ) -> int:
        """
        Add items not already cached, re-sort, persist, and prune.

        Returns the number of new items that survived retention. Items already
        cached are left exactly as they are, including read_at.
        """
        existing = self.list()
        ids = {i.id for i in existing}
        cached_at = format_timestamp(now)

        new_ids = set()
        for item in items:
            item_id = compute_item_id(item.author_url, item.url)
            if item_id in ids:
                continue
            existing.append(
                CachedFeedItem(**item.model_dump(), id=item_id, cached_at=cached_at)
            )
            ids.add(item_id)
            new_ids.add(item_id)

        existing.sort(key=lambda i: i.published, reverse=True)
        remaining = self._apply_retention(existing, self.load_config(), now)
        self.store.write_jsonl(FEED_STATE, remaining)

        pruned = len(existing) - len(remaining)
        if pruned:
            logger.info(f"Feed merge pruned {pruned} items")
        # Items dropped by retention in this same merge are not counted as new
        return sum(1 for i in remaining if i.id in new_ids)

    def prune(self, now: Optional[datetime] = None) -> int:
        """Enforce max_age_days then max_items. Returns the number of items removed."""
        items = self.list()
        remaining = self._apply_retention(items, self.load_config(), now)
        removed = len(items) - len(remaining)
        if removed:
            self.store.write_jsonl(FEED_STATE, remaining)
        return removed

    def _apply_retention(
        self,
        items: List[CachedFeedItem],
        config: FeedConfig,
        now: Optional[datetime],
    ) -> List[CachedFeedItem]:
        cutoff = format_timestamp((now or utc_now()) - timedelta(days=config.max_age_days))
        remaining = [i for i in items if i.published >= cutoff]
        # Already sorted newest first, so the most recent items are a prefix
        return remaining[: config.max_items]

    # --- Read state ---

    def mark_read(self, item_id: str, now: Optional[datetime] = None) -> None:
        items = self.list()
        item = self._find(items, item_id)
        item.read_at = format_timestamp(now)
        self.store.write_jsonl(FEED_STATE, items)

    def mark_unread(self, item_id: str) -> None:
        items = self.list()
        item = self._find(items, item_id)
        item.read_at = None
        self.store.write_jsonl(FEED_STATE, items)

    def mark_all_read(self, now: Optional[datetime] = None) -> int:
        """Mark every unread item read. Returns how many changed."""
        items = self.list()
        stamp = format_timestamp(now)
        marked = 0
        for item in items:
            if not item.read_at:
                item.read_at = stamp
                marked += 1
        if marked:
            self.store.write_jsonl(FEED_STATE, items)
        return marked

    def mark_unread_from(self, item_id: str) -> int:
        """
        Re-open an item and everything published at or after it.

        Strictly older items keep their read state. Returns how many items
        are unread after the rewind that were read before.
        """
        items = self.list()
        target = self._find(items, item_id)
        reopened = 0
        for item in items:
            if item.published >= target.published and item.read_at:
                item.read_at = None
                reopened += 1
        self.store.write_jsonl(FEED_STATE, items)
        return reopened

    @staticmethod
    def _find(items: List[CachedFeedItem], item_id: str) -> CachedFeedItem:
        item = next((i for i in items if i.id == item_id), None)
        if item is None:
            raise ItemNotFoundError(f"item not found: {item_id}")
        return item

    # --- Cursor and staleness ---

    def get_cursor(self) -> str:
        return self.store.get_cursor(ProjectionKind.FEED.value)

    def set_cursor(self, position: str, now: Optional[datetime] = None) -> None:
        self.store.set_cursor(ProjectionKind.FEED.value, position, now=now)

    def last_updated(self) -> str:
        """Timestamp of the last feed refresh, or "" if never refreshed."""
        return self.store.get_cursor_entry(ProjectionKind.FEED.value).last_updated

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        """True if never refreshed or the last refresh is older than staleness_minutes."""
        last_refresh = parse_timestamp(self.last_updated())
        if last_refresh is None:
            return True
        staleness = timedelta(minutes=self.load_config().staleness_minutes)
        return (now or utc_now()) - last_refresh > staleness

    # --- Config ---

    def load_config(self) -> FeedConfig:
        """Feed config with defaults filled in; defaults if never saved."""
        config = self.store.load_config(FEED_CONFIG, FeedConfig)
        return (config or FeedConfig()).with_defaults()

    def save_config(self, config: FeedConfig) -> FeedConfig:
        config = config.with_defaults()
        self.store.save_config(FEED_CONFIG, config)
        return config

    def set_staleness_minutes(self, minutes: int) -> FeedConfig:
        config = self.load_config()
        config.staleness_minutes = max(minutes, 1)
        return self.save_config(config)
