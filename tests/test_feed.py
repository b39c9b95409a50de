"""Tests for the Feed Handler and Feed Cache."""

from datetime import datetime, timedelta, timezone

import pytest

from polis_stream.clock import format_timestamp
from polis_stream.feed.cache import FeedCache, ItemNotFoundError, compute_item_id
from polis_stream.feed.handler import FeedHandler
from polis_stream.models.event import StreamEvent
from polis_stream.models.feed import FeedConfig, FeedItem, FeedItemType
from polis_stream.store.store import StreamStore

MY_DOMAIN = "bob.com"
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _make_item(url, published, author="alice.com", item_type=FeedItemType.POST) -> FeedItem:
    return FeedItem(
        type=item_type,
        title=url.rsplit("/", 1)[-1],
        url=url,
        published=published,
        author_url=f"https://{author}",
        author_domain=author,
    )


def _days_ago(days: int) -> str:
    return format_timestamp(NOW - timedelta(days=days))


def _make_cache(tmp_path, **config) -> FeedCache:
    cache = FeedCache(StreamStore(str(tmp_path), "ds.polis.pub"))
    if config:
        cache.save_config(FeedConfig(**config))
    return cache


class TestFeedHandler:
    def test_post_event(self):
        event = StreamEvent(
            id=1, type="polis.post.published", actor="alice.com",
            timestamp="2026-03-01T12:00:00Z",
            payload={
                "url": "https://alice.com/posts/hello.md",
                "version": "sha256:abc",
                "metadata": {"title": "Hello", "published_at": "2026-02-28T09:00:00Z"},
            },
        )
        items = FeedHandler(MY_DOMAIN).process([event])

        assert len(items) == 1
        item = items[0]
        assert item.type == FeedItemType.POST
        assert item.title == "Hello"
        assert item.published == "2026-02-28T09:00:00Z"
        assert item.hash == "sha256:abc"
        assert item.author_url == "https://alice.com"

    def test_comment_event(self):
        event = StreamEvent(
            id=2, type="polis.comment.published", actor="carol.com",
            timestamp="2026-03-01T12:00:00Z",
            payload={
                "comment_url": "https://carol.com/comments/c1.md",
                "in_reply_to": "https://dave.com/posts/x.md",
            },
        )
        item = FeedHandler(MY_DOMAIN).process([event])[0]

        assert item.type == FeedItemType.COMMENT
        assert item.url == "https://carol.com/comments/c1.md"
        assert item.target_domain == "dave.com"
        assert item.published == "2026-03-01T12:00:00Z"

    def test_skips_self_and_unfollowed(self):
        events = [
            StreamEvent(id=1, type="polis.post.published", actor=MY_DOMAIN,
                        payload={"url": "https://bob.com/p.md"}),
            StreamEvent(id=2, type="polis.post.published", actor="mallory.com",
                        payload={"url": "https://mallory.com/p.md"}),
            StreamEvent(id=3, type="polis.post.published", actor="alice.com",
                        payload={"url": "https://alice.com/p.md"}),
        ]
        items = FeedHandler(MY_DOMAIN, followed_domains={"alice.com"}).process(events)
        assert [i.author_domain for i in items] == ["alice.com"]

    def test_empty_followed_set_yields_nothing(self):
        """Following nobody means no author content, not unfiltered content."""
        events = [
            StreamEvent(id=1, type="polis.comment.published", actor="stranger.com",
                        payload={"comment_url": "https://stranger.com/comments/c.md",
                                 "target_domain": MY_DOMAIN}),
            StreamEvent(id=2, type="polis.post.published", actor="alice.com",
                        payload={"url": "https://alice.com/p.md"}),
        ]
        assert FeedHandler(MY_DOMAIN, followed_domains=set()).process(events) == []

    def test_unknown_followed_set_accepts_other_authors(self):
        event = StreamEvent(id=1, type="polis.post.published", actor="alice.com",
                            payload={"url": "https://alice.com/p.md"})
        assert len(FeedHandler(MY_DOMAIN, followed_domains=None).process([event])) == 1

    def test_event_without_url_skipped(self):
        event = StreamEvent(id=1, type="polis.post.published", actor="alice.com", payload={})
        assert FeedHandler(MY_DOMAIN).process([event]) == []


class TestFeedCacheMerge:
    def test_merge_and_dedupe(self, tmp_path):
        cache = _make_cache(tmp_path)
        items = [_make_item("https://alice.com/a.md", _days_ago(1)),
                 _make_item("https://alice.com/b.md", _days_ago(2))]

        assert cache.merge_items(items, now=NOW) == 2
        assert cache.merge_items(items, now=NOW) == 0
        assert len(cache.list()) == 2

    def test_sorted_newest_first(self, tmp_path):
        cache = _make_cache(tmp_path)
        cache.merge_items([
            _make_item("https://alice.com/old.md", _days_ago(5)),
            _make_item("https://alice.com/new.md", _days_ago(1)),
        ], now=NOW)
        assert [i.url for i in cache.list()] == [
            "https://alice.com/new.md", "https://alice.com/old.md",
        ]

    def test_remerge_preserves_read_state(self, tmp_path):
        cache = _make_cache(tmp_path)
        item = _make_item("https://alice.com/a.md", _days_ago(1))
        cache.merge_items([item], now=NOW)
        item_id = compute_item_id(item.author_url, item.url)
        cache.mark_read(item_id, now=NOW)

        edited = item.model_copy(update={"title": "a (edited)", "hash": "sha256:v2"})
        assert cache.merge_items([edited], now=NOW) == 0

        cached = cache.list()
        assert len(cached) == 1
        assert cached[0].read_at == "2026-03-01T12:00:00Z"
        assert cached[0].title == "a.md"
        assert cached[0].hash == ""

    def test_item_id_is_content_derived(self):
        first = compute_item_id("https://alice.com", "https://alice.com/a.md")
        assert first == compute_item_id("https://alice.com", "https://alice.com/a.md")
        assert first != compute_item_id("https://carol.com", "https://alice.com/a.md")
        assert len(first) == 16

    def test_max_items_bound(self, tmp_path):
        cache = _make_cache(tmp_path, max_items=3)
        cache.merge_items(
            [_make_item(f"https://alice.com/{n}.md", _days_ago(n)) for n in range(1, 6)],
            now=NOW,
        )
        urls = [i.url for i in cache.list()]
        assert urls == ["https://alice.com/1.md", "https://alice.com/2.md", "https://alice.com/3.md"]

    def test_max_age_bound(self, tmp_path):
        cache = _make_cache(tmp_path, max_age_days=30)
        cache.merge_items([
            _make_item("https://alice.com/recent.md", _days_ago(10)),
            _make_item("https://alice.com/ancient.md", _days_ago(40)),
        ], now=NOW)
        assert [i.url for i in cache.list()] == ["https://alice.com/recent.md"]

    def test_items_expired_on_arrival_are_not_counted(self, tmp_path):
        cache = _make_cache(tmp_path, max_age_days=30)
        new_count = cache.merge_items([
            _make_item("https://alice.com/recent.md", _days_ago(10)),
            _make_item("https://alice.com/ancient.md", _days_ago(40)),
        ], now=NOW)
        assert new_count == 1

    def test_items_beyond_max_items_are_not_counted(self, tmp_path):
        cache = _make_cache(tmp_path, max_items=2)
        new_count = cache.merge_items(
            [_make_item(f"https://alice.com/{n}.md", _days_ago(n)) for n in range(1, 5)],
            now=NOW,
        )
        assert new_count == 2

    def test_prune_applies_new_limits(self, tmp_path):
        cache = _make_cache(tmp_path)
        cache.merge_items(
            [_make_item(f"https://alice.com/{n}.md", _days_ago(n)) for n in range(1, 4)],
            now=NOW,
        )
        cache.save_config(FeedConfig(max_items=1))
        assert cache.prune(now=NOW) == 2
        assert len(cache.list()) == 1


class TestFeedCacheReadState:
    def setup_method(self):
        self.items = [_make_item(f"https://alice.com/{n}.md", _days_ago(n)) for n in range(1, 5)]
        self.ids = [compute_item_id(i.author_url, i.url) for i in self.items]

    def test_mark_read_and_unread(self, tmp_path):
        cache = _make_cache(tmp_path)
        cache.merge_items(self.items, now=NOW)

        cache.mark_read(self.ids[0])
        assert cache.unread_count() == 3
        cache.mark_unread(self.ids[0])
        assert cache.unread_count() == 4

    def test_unknown_item(self, tmp_path):
        cache = _make_cache(tmp_path)
        with pytest.raises(ItemNotFoundError):
            cache.mark_read("0000000000000000")

    def test_mark_all_read(self, tmp_path):
        cache = _make_cache(tmp_path)
        cache.merge_items(self.items, now=NOW)
        assert cache.mark_all_read() == 4
        assert cache.unread_count() == 0

    def test_mark_unread_from(self, tmp_path):
        """Rewinding re-opens the item and everything newer; older items stay read."""
        cache = _make_cache(tmp_path)
        cache.merge_items(self.items, now=NOW)
        cache.mark_all_read()

        # ids[2] is the second-oldest item
        reopened = cache.mark_unread_from(self.ids[2])

        assert reopened == 3
        state = {i.id: i.is_read for i in cache.list()}
        assert state[self.ids[0]] is False
        assert state[self.ids[1]] is False
        assert state[self.ids[2]] is False
        assert state[self.ids[3]] is True

    def test_list_filtered(self, tmp_path):
        cache = _make_cache(tmp_path)
        comment = _make_item("https://carol.com/c.md", _days_ago(1), author="carol.com",
                             item_type=FeedItemType.COMMENT)
        cache.merge_items(self.items + [comment], now=NOW)
        cache.mark_read(self.ids[0])

        assert len(cache.list_filtered(item_type="comment")) == 1
        assert len(cache.list_filtered(status="read")) == 1
        assert len(cache.list_filtered(item_type="post", status="unread")) == 3


class TestFeedCacheStaleness:
    def test_never_refreshed_is_stale(self, tmp_path):
        assert _make_cache(tmp_path).is_stale(now=NOW) is True

    def test_fresh_then_stale(self, tmp_path):
        cache = _make_cache(tmp_path, staleness_minutes=15)
        cache.set_cursor("10", now=NOW)

        assert cache.is_stale(now=NOW + timedelta(minutes=10)) is False
        assert cache.is_stale(now=NOW + timedelta(minutes=16)) is True

    def test_config_defaults(self, tmp_path):
        cache = _make_cache(tmp_path)
        config = cache.load_config()
        assert (config.staleness_minutes, config.max_items, config.max_age_days) == (15, 500, 90)

    def test_staleness_minimum(self, tmp_path):
        cache = _make_cache(tmp_path)
        assert cache.set_staleness_minutes(0).staleness_minutes == 1
