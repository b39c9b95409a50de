"""Feed cache items and configuration."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class FeedItemType(str, Enum):
    POST = "post"
    COMMENT = "comment"


class FeedItem(BaseModel):
    """Content extracted from a stream event, before caching."""

    type: FeedItemType
    title: str = ""
    url: str
    published: str = ""                     # ISO-8601, fixed width
    hash: str = ""
    author_url: str
    author_domain: str
    target_url: str = ""
    target_domain: str = ""


class CachedFeedItem(FeedItem):
    """A feed item as stored in the cache, with read tracking."""

    id: str                                 # compute_item_id(author_url, url)
    cached_at: str = ""
    read_at: Optional[str] = None

    @property
    def is_read(self) -> bool:
        return bool(self.read_at)


class FeedConfig(BaseModel):
    """User-editable feed configuration (config/feed.json)."""

    staleness_minutes: int = 15
    max_items: int = 500
    max_age_days: int = 90

    def with_defaults(self) -> "FeedConfig":
        """Replace non-positive values with the defaults."""
        defaults = FeedConfig()
        return FeedConfig(
            staleness_minutes=self.staleness_minutes if self.staleness_minutes > 0 else defaults.staleness_minutes,
            max_items=self.max_items if self.max_items > 0 else defaults.max_items,
            max_age_days=self.max_age_days if self.max_age_days > 0 else defaults.max_age_days,
        )
