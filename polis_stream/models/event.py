"""Stream Event — a single typed entry in the discovery service's event log."""

from typing import Any, Dict, Iterable, List, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, field_validator


EVENT_NAMESPACE = "polis."

FOLLOW_ANNOUNCED = "polis.follow.announced"
FOLLOW_REMOVED = "polis.follow.removed"
BLESSING_REQUESTED = "polis.blessing.requested"
BLESSING_GRANTED = "polis.blessing.granted"
BLESSING_DENIED = "polis.blessing.denied"
POST_PUBLISHED = "polis.post.published"
POST_REPUBLISHED = "polis.post.republished"
COMMENT_PUBLISHED = "polis.comment.published"
COMMENT_REPUBLISHED = "polis.comment.republished"

WILDCARD = "*"


class MalformedEventError(Exception):
    """Raised when a single event cannot be parsed or applied."""
    pass


def canonical_event_type(event_type: str) -> str:
    """Return the namespaced form of an event type ("follow.announced" -> "polis.follow.announced")."""
    if not event_type or event_type == WILDCARD:
        return event_type
    if event_type.startswith(EVENT_NAMESPACE):
        return event_type
    return EVENT_NAMESPACE + event_type


class StreamEvent(BaseModel):
    """
    One immutable event from the discovery stream.

    The same id may be delivered more than once; every consumer must be
    idempotent under redelivery.
    """

    id: Union[int, str]                     # Opaque ordinal
    type: str                               # e.g., "polis.follow.announced"
    actor: str                              # Domain that originated the event
    payload: Dict[str, Any] = {}
    timestamp: str = ""                     # ISO-8601
    signature: str = ""

    @field_validator("payload", mode="before")
    @classmethod
    def _payload_defaults_to_empty(cls, value):
        return {} if value is None else value

    @property
    def canonical_type(self) -> str:
        return canonical_event_type(self.type)

    @property
    def event_id(self) -> str:
        """String form of the id, used for dedupe across overlapping queries."""
        return str(self.id)

    def get_str(self, key: str) -> str:
        """String payload field, or "" when absent or not a string."""
        return payload_str(self.payload, key)


class StreamQueryResponse(BaseModel):
    """Response of one stream query."""

    events: List[StreamEvent] = []
    cursor: str = ""
    has_more: bool = False
    skipped: int = 0                        # Malformed events dropped while parsing

    @field_validator("events", mode="before")
    @classmethod
    def _events_default_to_empty(cls, value):
        return [] if value is None else value

    @field_validator("cursor", mode="before")
    @classmethod
    def _cursor_as_string(cls, value):
        return "" if value is None else str(value)


def payload_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    return value if isinstance(value, str) else ""


def first_payload_str(payload: Dict[str, Any], *keys: str) -> str:
    """First non-empty string among the given payload keys."""
    for key in keys:
        value = payload_str(payload, key)
        if value:
            return value
    return ""


def extract_domain_from_url(raw_url: str) -> str:
    """Host name of a URL, or "" if it cannot be parsed."""
    if not raw_url:
        return ""
    try:
        return urlparse(raw_url).hostname or ""
    except ValueError:
        return ""


def filter_events(
    events: Iterable[StreamEvent], types: Optional[Iterable[str]]
) -> List[StreamEvent]:
    """
    Keep events whose type is in `types`.

    ["*"] keeps everything; an empty or missing type list keeps nothing.
    """
    wanted = {canonical_event_type(t) for t in (types or [])}
    if not wanted:
        return []
    if WILDCARD in wanted:
        return list(events)
    return [e for e in events if e.canonical_type in wanted]


def cursor_greater(a: str, b: str) -> bool:
    """True if cursor `a` is strictly after cursor `b`."""
    if not a:
        return False
    if not b:
        return True
    try:
        return int(a) > int(b)
    except ValueError:
        return a > b
