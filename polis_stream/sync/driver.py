"""
Sync Driver — one run-to-completion cycle of fetch, fold, persist, advance.

States per cycle:
  FETCH -> (TRANSPORT FAILURE: stop, nothing touched)
        -> FOLD + PERSIST each projection
        -> ADVANCE CURSOR (only when every projection persisted)

A crash or storage failure mid-cycle leaves the cursor behind, so the next
cycle reprocesses the same events; every fold and merge is idempotent.
Retry and backoff policy belong to whoever calls run_once().
"""

import asyncio
import logging
import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from croniter import croniter

from polis_stream.clock import utc_now
from polis_stream.discovery.client import DiscoveryClient, TransportError, join_domains
from polis_stream.feed.cache import FeedCache
from polis_stream.feed.handler import FeedHandler
from polis_stream.models.cursor import BEGINNING_OF_LOG
from polis_stream.models.event import StreamEvent, cursor_greater, filter_events
from polis_stream.models.projection import BlessingState, FollowerState, ProjectionKind
from polis_stream.models.sync import SyncConfig, SyncResult
from polis_stream.notification.engine import NotificationEngine
from polis_stream.notification.manager import (
    NotificationManager,
    load_notification_config,
    prune_config_for,
)
from polis_stream.projections.projections import (
    PROJECTION_EVENT_TYPES,
    fold_blessings,
    fold_followers,
)
from polis_stream.store.store import StorageError, StreamStore

logger = logging.getLogger("polis_stream.sync")

# Per-projection cursors written before the unified sync cursor existed
LEGACY_CURSORS = (
    ProjectionKind.NOTIFICATIONS.value,
    ProjectionKind.FOLLOWERS.value,
    ProjectionKind.FEED.value,
)

MAX_PAGES_PER_QUERY = 20


class SyncDriver:
    """
    Pulls new stream events for one local domain and updates every projection.

    followed_domains comes from the external following-list manager. None
    means it is unknown, in which case no author query is made and
    followed_author rules fall back to accepting any non-self actor. An empty
    set means the site follows nobody: no author content reaches the feed.
    """

    def __init__(
        self,
        config: SyncConfig,
        client: Optional[DiscoveryClient] = None,
        followed_domains: Optional[Iterable[str]] = None,
        store: Optional[StreamStore] = None,
    ):
        self.config = config
        self.client = client or DiscoveryClient(config)
        self.followed_domains: Optional[Set[str]] = (
            set(followed_domains) if followed_domains is not None else None
        )
        self.store = store or StreamStore(config.data_dir, config.discovery_domain)
        self.notifications = NotificationManager(self.store)
        self.feed = FeedCache(self.store)
        self.last_result: Optional[SyncResult] = None
        self._running = False
        # Serializes cycles with any other writer of this store (e.g. API routes)
        self.lock = threading.Lock()

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    # --- Cursor ---

    def get_unified_cursor(self) -> str:
        """
        The shared sync cursor.

        On the first unified sync, starts from the lowest legacy per-projection
        cursor so no events are missed.
        """
        cursor = self.store.get_cursor(ProjectionKind.SYNC.value)
        if cursor != BEGINNING_OF_LOG:
            return cursor

        lowest = ""
        for name in LEGACY_CURSORS:
            legacy = self.store.get_cursor(name)
            if legacy == BEGINNING_OF_LOG:
                continue
            if not lowest or cursor_greater(lowest, legacy):
                lowest = legacy
        return lowest or BEGINNING_OF_LOG

    # --- Fetch ---

    def fetch_events(self, cursor: str) -> Tuple[List[StreamEvent], str, int]:
        """
        Run the targeted queries from `cursor` and merge their events.

        Queries: events targeting us, events where we are the source, and
        (when known) events from followed authors. Returns (events in cursor
        order without duplicates, next cursor, malformed events skipped).
        Raises TransportError if any query fails.
        """
        my_domain = self.config.my_domain
        queries: List[Dict[str, str]] = [
            {"target_filter": my_domain},
            {"source_filter": my_domain},
        ]
        if self.followed_domains:
            queries.append({"actor_filter": join_domains(sorted(self.followed_domains))})

        seen = set()
        events: List[StreamEvent] = []
        skipped = 0
        finished_cursors: List[str] = []
        truncated_cursors: List[str] = []

        for query in queries:
            since = cursor
            for _ in range(MAX_PAGES_PER_QUERY):
                page = self.client.stream_query(
                    since=since, limit=self.config.query_limit, **query
                )
                skipped += page.skipped
                for event in page.events:
                    if event.event_id not in seen:
                        seen.add(event.event_id)
                        events.append(event)
                if cursor_greater(page.cursor, since):
                    since = page.cursor
                if not page.has_more or not page.events:
                    finished_cursors.append(since)
                    break
            else:
                truncated_cursors.append(since)

        if truncated_cursors:
            # Resume from the query that got least far
            next_cursor = truncated_cursors[0]
            for c in truncated_cursors[1:]:
                if cursor_greater(next_cursor, c):
                    next_cursor = c
        else:
            next_cursor = cursor
            for c in finished_cursors:
                if cursor_greater(c, next_cursor):
                    next_cursor = c

        events.sort(key=_event_order)
        return events, next_cursor, skipped

    # --- Cycle ---

    def run_once(self) -> SyncResult:
        """Run one sync cycle. Never raises for transport or storage failures."""
        with self.lock:
            return self._run_cycle()

    def _run_cycle(self) -> SyncResult:
        my_domain = self.config.my_domain
        if not my_domain:
            logger.warning("Sync skipped: base_url has no domain")
            return self._finish(SyncResult())

        try:
            cursor = self.get_unified_cursor()
        except StorageError as e:
            logger.error(f"Sync aborted: cannot read cursor: {e}")
            return self._finish(SyncResult(failed={ProjectionKind.SYNC.value: str(e)}))

        try:
            events, next_cursor, skipped = self.fetch_events(cursor)
        except TransportError as e:
            logger.warning(f"Sync fetch failed, nothing changed: {e}")
            return self._finish(SyncResult(cursor=cursor))

        result = SyncResult(
            synced=True,
            events_processed=len(events),
            skipped_events=skipped,
            cursor=cursor,
        )
        if events:
            logger.info(f"Processing {len(events)} events from cursor {cursor}")

        steps: List[Tuple[ProjectionKind, Callable]] = [
            (ProjectionKind.FOLLOWERS, self._sync_followers),
            (ProjectionKind.BLESSINGS, self._sync_blessings),
            (ProjectionKind.NOTIFICATIONS, self._sync_notifications),
            (ProjectionKind.FEED, self._sync_feed),
        ]
        for kind, step in steps:
            batch = filter_events(events, PROJECTION_EVENT_TYPES[kind])
            if not batch:
                continue
            try:
                step(batch, result)
            except StorageError as e:
                logger.error(f"Projection {kind.value} failed to persist: {e}")
                result.failed[kind.value] = str(e)

        if result.failed:
            logger.error(
                f"Cursor left at {cursor}; failed projections: {', '.join(sorted(result.failed))}"
            )
            return self._finish(result)

        try:
            self.store.set_cursor(ProjectionKind.SYNC.value, next_cursor)
            self.feed.set_cursor(next_cursor)
        except StorageError as e:
            logger.error(f"Failed to advance cursor: {e}")
            result.failed[ProjectionKind.SYNC.value] = str(e)
            return self._finish(result)

        result.cursor = self.store.get_cursor(ProjectionKind.SYNC.value)
        logger.info(
            f"Sync complete: {result.events_processed} events, "
            f"{result.new_notifications} notifications, {result.new_feed_items} feed items"
        )
        return self._finish(result)

    def _finish(self, result: SyncResult) -> SyncResult:
        self.last_result = result
        return result

    def _sync_followers(self, events: List[StreamEvent], result: SyncResult) -> None:
        name = ProjectionKind.FOLLOWERS.value
        prior = self.store.load_state(name, FollowerState) or FollowerState()
        updated = fold_followers(events, prior, self.config.my_domain)
        self.store.save_state(name, updated)
        result.followers_changed = updated.followers != sorted(prior.followers)

    def _sync_blessings(self, events: List[StreamEvent], result: SyncResult) -> None:
        name = ProjectionKind.BLESSINGS.value
        prior = self.store.load_state(name, BlessingState) or BlessingState()
        updated = fold_blessings(events, prior, self.config.my_domain)
        self.store.save_state(name, updated)
        result.blessings_changed = updated.model_dump() != prior.model_dump()

    def _sync_notifications(self, events: List[StreamEvent], result: SyncResult) -> None:
        config = load_notification_config(self.store)
        engine = NotificationEngine(
            my_domain=self.config.my_domain,
            rules=config.rules,
            muted_domains=config.muted_domains,
            followed_domains=self.followed_domains,
        )
        entries = engine.process(events)
        if not entries:
            return
        result.new_notifications = self.notifications.append(entries)
        if result.new_notifications:
            self.notifications.prune(prune_config_for(config))

    def _sync_feed(self, events: List[StreamEvent], result: SyncResult) -> None:
        handler = FeedHandler(self.config.my_domain, self.followed_domains)
        items = handler.process(events)
        if items:
            result.new_feed_items = self.feed.merge_items(items)

    # --- Scheduling ---

    def next_delay(self, now: Optional[datetime] = None) -> float:
        """
        Seconds until the next cycle.

        Uses the cron schedule when one is configured; an invalid expression
        falls back to interval_seconds.
        """
        if self.config.schedule:
            current = now or utc_now()
            try:
                cron = croniter(self.config.schedule, current)
                next_fire = cron.get_next(datetime)
                return max((next_fire - current).total_seconds(), 0.0)
            except (ValueError, KeyError):
                logger.warning(
                    f"Invalid sync schedule {self.config.schedule!r}, using interval"
                )
        return float(self.config.interval_seconds)

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run sync cycles on schedule until stop_event is set."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                self.run_once()
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.next_delay(),
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False


def _event_order(event: StreamEvent):
    """Sort key giving numeric ids numeric order; other ids sort after, as strings."""
    try:
        return (0, int(event.id), "")
    except (TypeError, ValueError):
        return (1, 0, str(event.id))
