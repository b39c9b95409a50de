"""
Notification Engine — evaluates the rule table against stream events.

Processing, per event:
  1. Drop self-authored events and events from muted domains.
  2. Select enabled rules for the event type.
  3. Check each rule's relevance filter.
  4. Render message and link from the event's template variables.
  5. Key the entry by rule id + content identifier (see rules.dedupe_key).

The engine only produces candidate entries. Deduplication against entries
stored by earlier syncs happens in NotificationManager.append.
"""

import logging
from typing import Dict, Iterable, List, Optional, Set

from polis_stream.models.event import StreamEvent, canonical_event_type
from polis_stream.models.notification import NotificationEntry, Relevance, Rule
from polis_stream.notification.rules import (
    default_rules,
    dedupe_key,
    resolve_template,
    template_vars_from_event,
)

logger = logging.getLogger("polis_stream.notification")


class NotificationEngine:
    """
    Rule-driven notification producer for one local domain.

    followed_domains=None means no client-side author filtering: the
    upstream query is trusted to have restricted the actors already, so any
    non-self actor passes a followed_author rule.
    """

    def __init__(
        self,
        my_domain: str,
        rules: Optional[List[Rule]] = None,
        muted_domains: Optional[Iterable[str]] = None,
        followed_domains: Optional[Set[str]] = None,
    ):
        self.my_domain = my_domain
        self.rules = rules if rules is not None else default_rules()
        self.muted_domains = set(muted_domains or [])
        self.followed_domains = followed_domains

    def enabled_event_types(self) -> List[str]:
        """Event types with at least one enabled rule, in rule order."""
        seen = []
        for rule in self.rules:
            event_type = canonical_event_type(rule.event_type)
            if rule.enabled and event_type not in seen:
                seen.append(event_type)
        return seen

    def rules_by_relevance(self) -> Dict[str, List[Rule]]:
        """Enabled rules grouped by relevance filter."""
        groups: Dict[str, List[Rule]] = {}
        for rule in self.rules:
            if rule.enabled:
                groups.setdefault(rule.filter.relevance, []).append(rule)
        return groups

    def process(self, events: Iterable[StreamEvent]) -> List[NotificationEntry]:
        """Turn events into candidate notification entries."""
        rule_map: Dict[str, List[Rule]] = {}
        for rule in self.rules:
            if rule.enabled:
                rule_map.setdefault(canonical_event_type(rule.event_type), []).append(rule)

        entries = []
        for event in events:
            if event.actor == self.my_domain or event.actor in self.muted_domains:
                continue

            for rule in rule_map.get(event.canonical_type, []):
                if not self.matches_filter(rule, event):
                    continue
                entries.append(self._build_entry(rule, event))

        return entries

    def matches_filter(self, rule: Rule, event: StreamEvent) -> bool:
        relevance = rule.filter.relevance
        if relevance == Relevance.TARGET_DOMAIN.value:
            return event.get_str("target_domain") == self.my_domain
        if relevance == Relevance.SOURCE_DOMAIN.value:
            return event.get_str("source_domain") == self.my_domain
        if relevance == Relevance.FOLLOWED_AUTHOR.value:
            if self.followed_domains is not None:
                return event.actor in self.followed_domains
            return event.actor != self.my_domain

        logger.debug(f"Rule {rule.id} has unknown relevance {relevance!r}")
        return False

    def _build_entry(self, rule: Rule, event: StreamEvent) -> NotificationEntry:
        variables = template_vars_from_event(event.actor, event.timestamp, event.payload)
        return NotificationEntry(
            id=dedupe_key(rule.id, event.payload),
            rule_id=rule.id,
            actor=event.actor,
            icon=rule.template.icon,
            message=resolve_template(rule.template.message, variables),
            link=resolve_template(rule.template.link, variables),
            event_ids=[event.id],
            created_at=event.timestamp,
        )
