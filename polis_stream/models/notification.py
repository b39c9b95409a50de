"""Notification rules, entries, and user configuration."""

from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel


class Relevance(str, Enum):
    """How a rule decides whether an event concerns the local domain."""
    TARGET_DOMAIN = "target_domain"         # payload.target_domain == self
    SOURCE_DOMAIN = "source_domain"         # payload.source_domain == self
    FOLLOWED_AUTHOR = "followed_author"     # actor is someone we follow


class RuleFilter(BaseModel):
    relevance: str = Relevance.TARGET_DOMAIN.value


class RuleTemplate(BaseModel):
    """Display format; message and link support {{var}} substitution."""

    icon: str = ""
    message: str = ""
    link: str = ""


class Rule(BaseModel):
    """Maps one stream event type to a notification."""

    id: str
    event_type: str
    enabled: bool = True
    filter: RuleFilter = RuleFilter()
    template: RuleTemplate = RuleTemplate()
    # Declared for coalescing (e.g. many follows in one entry) but not consumed yet
    batch: bool = False
    batch_window: str = ""                  # Duration string like "24h"


class NotificationEntry(BaseModel):
    """
    One stored notification.

    `id` is the dedupe key; `read_at` is the only field that changes after
    creation.
    """

    id: str
    rule_id: str
    actor: str
    icon: str = ""
    message: str = ""
    link: str = ""
    event_ids: List[Union[int, str]] = []
    created_at: str = ""
    read_at: Optional[str] = None


class NotificationConfig(BaseModel):
    """User configuration stored in config/notifications.json."""

    rules: List[Rule] = []
    muted_domains: List[str] = []
    max_items: int = 0                      # 0 means use the prune default
    max_age_days: int = 0


class NotificationPruneConfig(BaseModel):
    max_items: int = 1000
    max_age_days: int = 90
