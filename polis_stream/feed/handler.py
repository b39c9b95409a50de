"""Feed Handler — maps post and comment stream events to feed items."""

import logging
from typing import Iterable, List, Optional, Set

from polis_stream.models.event import (
    COMMENT_PUBLISHED,
    COMMENT_REPUBLISHED,
    MalformedEventError,
    POST_PUBLISHED,
    POST_REPUBLISHED,
    StreamEvent,
    extract_domain_from_url,
    first_payload_str,
)
from polis_stream.models.feed import FeedItem, FeedItemType

logger = logging.getLogger("polis_stream.feed")


_ITEM_TYPES = {
    POST_PUBLISHED: FeedItemType.POST,
    POST_REPUBLISHED: FeedItemType.POST,
    COMMENT_PUBLISHED: FeedItemType.COMMENT,
    COMMENT_REPUBLISHED: FeedItemType.COMMENT,
}


class FeedHandler:
    """
    Turns content events from followed authors into FeedItems.

    Self-authored events are skipped. When followed_domains is given, actors
    outside it are skipped too, so an empty set yields no items; None means
    the followed set is unknown and any other author passes.
    """

    def __init__(self, my_domain: str, followed_domains: Optional[Set[str]] = None):
        self.my_domain = my_domain
        self.followed_domains = followed_domains

    def process(self, events: Iterable[StreamEvent]) -> List[FeedItem]:
        items = []
        for event in events:
            if event.actor == self.my_domain:
                continue
            if self.followed_domains is not None and event.actor not in self.followed_domains:
                continue

            item_type = _ITEM_TYPES.get(event.canonical_type)
            if item_type is None:
                continue

            try:
                items.append(self._event_to_item(event, item_type))
            except MalformedEventError as e:
                logger.warning(f"Skipping malformed content event {event.id}: {e}")
        return items

    def _event_to_item(self, event: StreamEvent, item_type: FeedItemType) -> FeedItem:
        if item_type == FeedItemType.POST:
            url = event.get_str("url")
        else:
            url = first_payload_str(event.payload, "comment_url", "url")
        if not url:
            raise MalformedEventError(f"{event.type} without a content url")
        if not event.actor:
            raise MalformedEventError(f"{event.type} without actor")

        title = ""
        published = ""
        metadata = event.payload.get("metadata")
        if isinstance(metadata, dict):
            title = metadata.get("title") if isinstance(metadata.get("title"), str) else ""
            published = (
                metadata.get("published_at")
                if isinstance(metadata.get("published_at"), str)
                else ""
            )

        target_url = first_payload_str(event.payload, "in_reply_to", "target_url")
        target_domain = event.get_str("target_domain") or extract_domain_from_url(target_url)

        return FeedItem(
            type=item_type,
            title=title,
            url=url,
            published=published or event.timestamp,
            hash=event.get_str("version"),
            author_url="https://" + event.actor,
            author_domain=event.actor,
            target_url=target_url,
            target_domain=target_domain,
        )
