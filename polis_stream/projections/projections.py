"""
Projections — pure folds of stream events into materialized state.

Each projection has its own typed fold; ProjectionKind selects which one a
sync step targets. Folds never mutate the prior state they are given, and
folding the same batch twice yields the same result (at-least-once delivery).

Visibility boundary: a node only materializes events addressed to its own
domain, even when a shared feed carries events for other domains.
"""

import logging
from typing import Dict, Iterable, List

from polis_stream.models.event import (
    BLESSING_DENIED,
    BLESSING_GRANTED,
    BLESSING_REQUESTED,
    COMMENT_PUBLISHED,
    COMMENT_REPUBLISHED,
    FOLLOW_ANNOUNCED,
    FOLLOW_REMOVED,
    MalformedEventError,
    POST_PUBLISHED,
    POST_REPUBLISHED,
    StreamEvent,
    extract_domain_from_url,
)
from polis_stream.models.projection import (
    BlessingEntry,
    BlessingState,
    BlessingStatus,
    FollowerState,
    ProjectionKind,
)

logger = logging.getLogger("polis_stream.projections")


PROJECTION_EVENT_TYPES: Dict[ProjectionKind, List[str]] = {
    ProjectionKind.FOLLOWERS: [FOLLOW_ANNOUNCED, FOLLOW_REMOVED],
    ProjectionKind.BLESSINGS: [BLESSING_REQUESTED, BLESSING_GRANTED, BLESSING_DENIED],
    ProjectionKind.NOTIFICATIONS: [
        FOLLOW_ANNOUNCED,
        FOLLOW_REMOVED,
        BLESSING_REQUESTED,
        BLESSING_GRANTED,
        BLESSING_DENIED,
        POST_PUBLISHED,
        POST_REPUBLISHED,
        COMMENT_PUBLISHED,
        COMMENT_REPUBLISHED,
    ],
    ProjectionKind.FEED: [
        POST_PUBLISHED,
        POST_REPUBLISHED,
        COMMENT_PUBLISHED,
        COMMENT_REPUBLISHED,
    ],
}


_TERMINAL_STATUS = {
    BLESSING_GRANTED: BlessingStatus.GRANTED,
    BLESSING_DENIED: BlessingStatus.DENIED,
}


# --- Followers ---

def fold_followers(
    events: Iterable[StreamEvent], prior: FollowerState, my_domain: str
) -> FollowerState:
    """Apply follow/unfollow events addressed to my_domain."""
    followers = set(prior.followers)

    for event in events:
        try:
            _apply_follow(event, followers, my_domain)
        except MalformedEventError as e:
            logger.warning(f"Skipping malformed follow event {event.id}: {e}")

    ordered = sorted(followers)
    return FollowerState(followers=ordered, count=len(ordered))


def _apply_follow(event: StreamEvent, followers: set, my_domain: str) -> None:
    target_domain = event.get_str("target_domain")
    if not target_domain or target_domain != my_domain:
        return

    event_type = event.canonical_type
    if event_type not in (FOLLOW_ANNOUNCED, FOLLOW_REMOVED):
        return
    if not event.actor:
        raise MalformedEventError("follow event without actor")

    if event_type == FOLLOW_ANNOUNCED:
        followers.add(event.actor)
    else:
        followers.discard(event.actor)


# --- Blessings ---

def resolve_target_domain(event: StreamEvent) -> str:
    """Explicit target_domain, else the host of target_url."""
    return event.get_str("target_domain") or extract_domain_from_url(
        event.get_str("target_url")
    )


def fold_blessings(
    events: Iterable[StreamEvent], prior: BlessingState, my_domain: str
) -> BlessingState:
    """
    Apply blessing events for posts owned by my_domain.

    A request only creates a pending entry when the comment is untracked.
    A grant or denial always lands in its terminal status, creating the entry
    if the request was never observed (the log may be truncated).
    """
    entries: Dict[str, BlessingEntry] = {
        b.source_url: b.model_copy() for b in prior.blessings
    }

    for event in events:
        try:
            _apply_blessing(event, entries, my_domain)
        except MalformedEventError as e:
            logger.warning(f"Skipping malformed blessing event {event.id}: {e}")

    blessings = sorted(entries.values(), key=lambda b: b.source_url)
    return BlessingState(
        blessings=blessings,
        granted=sum(1 for b in blessings if b.status == BlessingStatus.GRANTED),
        denied=sum(1 for b in blessings if b.status == BlessingStatus.DENIED),
    )


def _apply_blessing(
    event: StreamEvent, entries: Dict[str, BlessingEntry], my_domain: str
) -> None:
    source_url = event.get_str("source_url")
    target_url = event.get_str("target_url")
    if not source_url or not target_url:
        return
    if resolve_target_domain(event) != my_domain:
        return

    event_type = event.canonical_type
    if event_type == BLESSING_REQUESTED:
        if source_url not in entries:
            entries[source_url] = BlessingEntry(
                source_url=source_url,
                target_url=target_url,
                status=BlessingStatus.PENDING,
                actor=event.actor,
                updated_at=event.timestamp,
            )
        return

    status = _TERMINAL_STATUS.get(event_type)
    if status is None:
        return
    if not event.actor and source_url not in entries:
        raise MalformedEventError("blessing decision without actor")

    existing = entries.get(source_url)
    if existing:
        existing.status = status
        existing.updated_at = event.timestamp
    else:
        entries[source_url] = BlessingEntry(
            source_url=source_url,
            target_url=target_url,
            status=status,
            actor=event.actor,
            updated_at=event.timestamp,
        )
