"""
Notification Manager — the persisted notification list and its user config.

Entries live in state/notifications.jsonl; rules and muted domains live in
config/notifications.json and survive state resets.

Behavioral Contract:
- append() re-reads stored entries every time, so an entry whose dedupe key
  was stored by any earlier sync is never added again.
- read_at is the only field that changes after an entry is stored.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from polis_stream.clock import format_timestamp, parse_timestamp, utc_now
from polis_stream.models.notification import (
    NotificationConfig,
    NotificationEntry,
    NotificationPruneConfig,
)
from polis_stream.notification.rules import default_rules, merge_default_rules
from polis_stream.store.store import StreamStore

logger = logging.getLogger("polis_stream.notification")

NOTIFICATIONS_STATE = "notifications"
NOTIFICATIONS_CONFIG = "notifications"


class NotificationManager:
    """Stored notifications for one discovery service domain."""

    def __init__(self, store: StreamStore):
        self.store = store

    def list(self) -> List[NotificationEntry]:
        """All stored entries in insertion order."""
        return self.store.read_jsonl(NOTIFICATIONS_STATE, NotificationEntry)

    def append(
        self, entries: Iterable[NotificationEntry], now: Optional[datetime] = None
    ) -> int:
        """Store entries whose id is not already present. Returns how many were added."""
        existing = self.list()
        seen = {e.id for e in existing}

        added = []
        for entry in entries:
            if entry.id in seen:
                continue
            seen.add(entry.id)
            if not entry.created_at:
                entry = entry.model_copy(update={"created_at": format_timestamp(now)})
            added.append(entry)

        if added:
            self.store.write_jsonl(NOTIFICATIONS_STATE, existing + added)
        return len(added)

    def list_paginated(
        self, offset: int = 0, limit: int = 20, include_read: bool = False
    ) -> Tuple[List[NotificationEntry], int]:
        """Newest-first page of entries and the total matching count."""
        items = self.list()
        if not include_read:
            items = [e for e in items if not e.read_at]
        items = sorted(items, key=lambda e: e.created_at, reverse=True)

        total = len(items)
        offset = max(offset, 0)
        if limit <= 0:
            return items[offset:], total
        return items[offset:offset + limit], total

    def count_unread(self) -> int:
        return sum(1 for e in self.list() if not e.read_at)

    def mark_read(
        self,
        ids: Optional[Iterable[str]] = None,
        all: bool = False,
        now: Optional[datetime] = None,
    ) -> int:
        """Set read_at on unread entries (all of them, or the given ids)."""
        wanted = set(ids or [])
        items = self.list()
        stamp = format_timestamp(now)

        marked = 0
        for i, entry in enumerate(items):
            if entry.read_at:
                continue
            if all or entry.id in wanted:
                items[i] = entry.model_copy(update={"read_at": stamp})
                marked += 1

        if marked:
            self.store.write_jsonl(NOTIFICATIONS_STATE, items)
        return marked

    def prune(
        self,
        config: Optional[NotificationPruneConfig] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Drop entries older than max_age_days, then keep the newest max_items.

        Entries with unparsable timestamps are kept.
        """
        config = config or NotificationPruneConfig()
        items = self.list()
        cutoff = (now or utc_now()) - timedelta(days=config.max_age_days)

        remaining = []
        for entry in items:
            created = parse_timestamp(entry.created_at)
            if created is None or created >= cutoff:
                remaining.append(entry)

        if len(remaining) > config.max_items:
            newest = sorted(remaining, key=lambda e: e.created_at, reverse=True)
            keep = {e.id for e in newest[: config.max_items]}
            remaining = [e for e in remaining if e.id in keep]

        removed = len(items) - len(remaining)
        if removed:
            self.store.write_jsonl(NOTIFICATIONS_STATE, remaining)
            logger.info(f"Pruned {removed} old notifications")
        return removed


# --- Config ---

def load_notification_config(store: StreamStore) -> NotificationConfig:
    """
    User notification config, defaulted when absent.

    Default rules that are missing from a saved rule list are merged in, so
    new built-in rules reach existing installs. Nothing is written here; the
    merged list is persisted on the next explicit save.
    """
    config = store.load_config(NOTIFICATIONS_CONFIG, NotificationConfig)
    if config is None:
        return NotificationConfig(rules=default_rules())
    config.rules = merge_default_rules(config.rules)
    return config


def save_notification_config(store: StreamStore, config: NotificationConfig) -> None:
    store.save_config(NOTIFICATIONS_CONFIG, config)


def prune_config_for(config: NotificationConfig) -> NotificationPruneConfig:
    prune = NotificationPruneConfig()
    if config.max_items > 0:
        prune.max_items = config.max_items
    if config.max_age_days > 0:
        prune.max_age_days = config.max_age_days
    return prune


def set_rule_enabled(store: StreamStore, rule_id: str, enabled: bool) -> NotificationConfig:
    """Enable or disable one rule and persist the config."""
    config = load_notification_config(store)
    rule = next((r for r in config.rules if r.id == rule_id), None)
    if rule is None:
        raise KeyError(rule_id)
    rule.enabled = enabled
    save_notification_config(store, config)
    return config


def mute_domain(store: StreamStore, domain: str) -> NotificationConfig:
    config = load_notification_config(store)
    if domain not in config.muted_domains:
        config.muted_domains.append(domain)
        save_notification_config(store, config)
    return config


def unmute_domain(store: StreamStore, domain: str) -> NotificationConfig:
    config = load_notification_config(store)
    if domain in config.muted_domains:
        config.muted_domains = [d for d in config.muted_domains if d != domain]
        save_notification_config(store, config)
    return config
