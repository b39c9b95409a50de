"""polis-stream data models."""

from polis_stream.models.cursor import BEGINNING_OF_LOG, CursorEntry, CursorsFile
from polis_stream.models.event import (
    MalformedEventError,
    StreamEvent,
    StreamQueryResponse,
)
from polis_stream.models.feed import CachedFeedItem, FeedConfig, FeedItem, FeedItemType
from polis_stream.models.notification import (
    NotificationConfig,
    NotificationEntry,
    NotificationPruneConfig,
    Relevance,
    Rule,
    RuleFilter,
    RuleTemplate,
)
from polis_stream.models.projection import (
    BlessingEntry,
    BlessingState,
    BlessingStatus,
    FollowerState,
    ProjectionKind,
)
from polis_stream.models.sync import SyncConfig, SyncResult

__all__ = [
    "BEGINNING_OF_LOG",
    "BlessingEntry",
    "BlessingState",
    "BlessingStatus",
    "CachedFeedItem",
    "CursorEntry",
    "CursorsFile",
    "FeedConfig",
    "FeedItem",
    "FeedItemType",
    "FollowerState",
    "MalformedEventError",
    "NotificationConfig",
    "NotificationEntry",
    "NotificationPruneConfig",
    "ProjectionKind",
    "Relevance",
    "Rule",
    "RuleFilter",
    "RuleTemplate",
    "StreamEvent",
    "StreamQueryResponse",
    "SyncConfig",
    "SyncResult",
]
