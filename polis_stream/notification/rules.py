"""
Notification Rules — the default rule table, template variables, and dedupe keys.

A rule maps one stream event type to a notification. Users can enable,
disable, or customize rules; the defaults below seed the first sync and are
merged into saved rule lists when new defaults ship.
"""

import hashlib
import json
import re
from typing import Any, Dict, List
from urllib.parse import urlparse

from polis_stream.models.event import (
    BLESSING_DENIED,
    BLESSING_GRANTED,
    BLESSING_REQUESTED,
    COMMENT_PUBLISHED,
    COMMENT_REPUBLISHED,
    FOLLOW_ANNOUNCED,
    FOLLOW_REMOVED,
    POST_PUBLISHED,
    POST_REPUBLISHED,
    payload_str,
)
from polis_stream.models.notification import Relevance, Rule, RuleFilter, RuleTemplate


_TEMPLATE_VAR = re.compile(r"\{\{([A-Za-z0-9_]+)\}\}")

_OPTIONAL_VARS = (
    "source_url",
    "target_url",
    "target_domain",
    "source_domain",
    "in_reply_to",
    "comment_url",
)

# Blessing events from the discovery service may carry in_reply_to/comment_url
# instead of target_url, so post_name falls back through these in order.
_POST_URL_KEYS = ("target_url", "url", "in_reply_to", "comment_url")

_DEDUPE_KEYS = ("source_url", "url", "target_domain")


def _rule(
    rule_id: str,
    event_type: str,
    relevance: Relevance,
    icon: str,
    message: str,
    link: str,
    enabled: bool = True,
    batch: bool = False,
    batch_window: str = "",
) -> Rule:
    return Rule(
        id=rule_id,
        event_type=event_type,
        enabled=enabled,
        filter=RuleFilter(relevance=relevance.value),
        template=RuleTemplate(icon=icon, message=message, link=link),
        batch=batch,
        batch_window=batch_window,
    )


def default_rules() -> List[Rule]:
    """The built-in rule set. The two "republished" rules start disabled."""
    return [
        _rule(
            "new-follower", FOLLOW_ANNOUNCED, Relevance.TARGET_DOMAIN,
            "\U0001F464", "{{actor}} started following you", "/_/#followers",
            batch=True, batch_window="24h",
        ),
        _rule(
            "lost-follower", FOLLOW_REMOVED, Relevance.TARGET_DOMAIN,
            "\U0001F464", "{{actor}} unfollowed you", "/_/#followers",
        ),
        _rule(
            "blessing-requested", BLESSING_REQUESTED, Relevance.TARGET_DOMAIN,
            "\U0001F514", "{{actor}} requested a blessing on {{post_name}}", "/_/#blessings",
        ),
        _rule(
            "blessing-granted", BLESSING_GRANTED, Relevance.SOURCE_DOMAIN,
            "✓", "{{actor}} blessed your comment", "/_/#my-comments-blessed",
        ),
        _rule(
            "blessing-denied", BLESSING_DENIED, Relevance.SOURCE_DOMAIN,
            "✗", "{{actor}} denied your comment", "/_/#my-comments-denied",
        ),
        _rule(
            "new-comment", COMMENT_PUBLISHED, Relevance.TARGET_DOMAIN,
            "\U0001F4AC", "{{actor}} commented on {{post_name}}", "/_/#blessings",
        ),
        _rule(
            "updated-comment", COMMENT_REPUBLISHED, Relevance.TARGET_DOMAIN,
            "\U0001F4AC", "{{actor}} updated their comment on {{post_name}}", "/_/#blessings",
            enabled=False,
        ),
        _rule(
            "new-post", POST_PUBLISHED, Relevance.FOLLOWED_AUTHOR,
            "\U0001F4DD", "{{actor}} published a new post", "/_/#feed",
        ),
        _rule(
            "updated-post", POST_REPUBLISHED, Relevance.FOLLOWED_AUTHOR,
            "\U0001F4DD", "{{actor}} updated a post", "/_/#feed",
            enabled=False,
        ),
    ]


def merge_default_rules(rules: List[Rule]) -> List[Rule]:
    """Append any default rule whose id is missing from a saved rule list."""
    existing_ids = {r.id for r in rules}
    merged = list(rules)
    for default in default_rules():
        if default.id not in existing_ids:
            merged.append(default)
    return merged


def resolve_template(template: str, variables: Dict[str, str]) -> str:
    """
    Substitute {{var}} placeholders in a single pass.

    Unknown variables are left in place as literal {{var}} text.
    """
    if not template:
        return template

    def _substitute(match: "re.Match") -> str:
        name = match.group(1)
        return variables[name] if name in variables else match.group(0)

    return _TEMPLATE_VAR.sub(_substitute, template)


def post_name_from_url(raw_url: str) -> str:
    """Last path segment of a URL with a trailing .md stripped; the host for a root URL."""
    if "://" in raw_url:
        parsed = urlparse(raw_url)
        path = parsed.path
    else:
        parsed = None
        path = raw_url
    base = path.rstrip("/").rsplit("/", 1)[-1]
    if not base and parsed is not None:
        return parsed.hostname or ""
    if base.endswith(".md"):
        base = base[: -len(".md")]
    return base


def template_vars_from_event(
    actor: str, timestamp: str, payload: Dict[str, Any]
) -> Dict[str, str]:
    """Template variables available to a rule's message and link."""
    variables = {"actor": actor, "timestamp": timestamp}

    for key in _OPTIONAL_VARS:
        value = payload.get(key)
        if isinstance(value, str):
            variables[key] = value

    post_url = next(
        (payload_str(payload, k) for k in _POST_URL_KEYS if payload_str(payload, k)),
        "",
    )
    if post_url:
        variables["post_name"] = post_name_from_url(post_url)

    metadata = payload.get("metadata")
    if isinstance(metadata, dict):
        title = metadata.get("title")
        if isinstance(title, str) and title:
            variables["title"] = title

    return variables


def dedupe_key(rule_id: str, payload: Dict[str, Any]) -> str:
    """
    Deterministic key "<rule_id>:<content identifier>".

    The identifier is source_url, else url, else target_domain, else a short
    hash of the whole payload, so every event gets some stable key.
    """
    for key in _DEDUPE_KEYS:
        value = payload_str(payload, key)
        if value:
            return f"{rule_id}:{value}"

    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode()).hexdigest()[:16]
    return f"{rule_id}:{digest}"
