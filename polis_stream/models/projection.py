"""Materialized projection states — followers and blessings."""

from enum import Enum
from typing import List

from pydantic import BaseModel


class ProjectionKind(str, Enum):
    """Selects which projection a sync step targets."""
    FOLLOWERS = "polis.follow"
    BLESSINGS = "polis.blessing"
    NOTIFICATIONS = "polis.notification"
    FEED = "polis.feed"
    SYNC = "polis.sync"                     # Shared cursor for the unified sync


class FollowerState(BaseModel):
    """Domains currently following the local site."""

    followers: List[str] = []
    count: int = 0


class BlessingStatus(str, Enum):
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"


class BlessingEntry(BaseModel):
    """A single blessing decision, keyed by the comment's source_url."""

    source_url: str
    target_url: str
    status: BlessingStatus
    actor: str
    updated_at: str = ""


class BlessingState(BaseModel):
    """Blessing ledger for posts owned by the local domain."""

    blessings: List[BlessingEntry] = []
    granted: int = 0
    denied: int = 0

    def get(self, source_url: str):
        return next((b for b in self.blessings if b.source_url == source_url), None)
