"""Rule evaluation and disposition engine.

Given a message's sender and category plus the owner's rules, decide
whether the message is forwarded or blocked. Evaluation is pure: no I/O,
no state carried between calls.

Precedence is by specificity, not by action. At most one rule per type
can govern a message, and a match at a more specific type always wins:

    email > domain > category > default (allow)

Within a type, rules are scanned oldest first (by ``created_at``, ties
kept in the order given), so the oldest matching rule of that type wins.
"""

import uuid
from collections.abc import Iterable
from datetime import datetime, timezone

from supamail.models import Disposition, Rule, RuleAction, RuleType

# Most specific first
SPECIFICITY: tuple[RuleType, ...] = (RuleType.EMAIL, RuleType.DOMAIN, RuleType.CATEGORY)

DEFAULT_ACTION = RuleAction.ALLOW


def _created_key(rule: Rule) -> datetime:
    # Naive timestamps are read as UTC so they compare with aware ones
    created = rule.created_at
    return created.replace(tzinfo=timezone.utc) if created.tzinfo is None else created


class DispositionEngine:
    """Evaluates a user's rules against one message."""

    def __init__(self, default_action: RuleAction = DEFAULT_ACTION) -> None:
        self.default_action = default_action

    def evaluate_rule(self, rule: Rule, sender: str, category: str) -> bool:
        """Check whether a single rule matches.

        - email: exact, case-insensitive equality with the sender
        - category: exact, case-insensitive equality with the category
        - domain: case-insensitive substring of the sender (``spam.com``
          matches ``bad@SPAM.com`` and also ``x@notspam.com``)

        A blank pattern never matches.
        """
        pattern = (rule.pattern or "").lower()
        if not pattern.strip():
            return False

        sender = (sender or "").lower()

        if rule.type == RuleType.EMAIL:
            return sender == pattern
        if rule.type == RuleType.CATEGORY:
            return (category or "").lower() == pattern
        if rule.type == RuleType.DOMAIN:
            return pattern in sender
        return False

    def group_rules(self, rules: Iterable[Rule]) -> dict[RuleType, list[Rule]]:
        """Partition rules by type, each group ordered oldest first."""
        groups: dict[RuleType, list[Rule]] = {rule_type: [] for rule_type in SPECIFICITY}
        for rule in rules:
            if rule.type in groups:
                groups[rule.type].append(rule)
        for group in groups.values():
            # sort() is stable: equal timestamps keep their incoming order
            group.sort(key=_created_key)
        return groups

    def first_match(self, rules: list[Rule], sender: str, category: str) -> Rule | None:
        """Return the first rule in ``rules`` that matches, if any."""
        for rule in rules:
            if self.evaluate_rule(rule, sender, category):
                return rule
        return None

    def get_matching_rules(self, sender: str, category: str, rules: Iterable[Rule]) -> dict[RuleType, Rule]:
        """Return the governing match for every type that has one."""
        groups = self.group_rules(rules)
        matches: dict[RuleType, Rule] = {}
        for rule_type in SPECIFICITY:
            match = self.first_match(groups[rule_type], sender, category)
            if match is not None:
                matches[rule_type] = match
        return matches

    def decide(self, sender: str, category: str, rules: Iterable[Rule]) -> Disposition:
        """Compute the allow/block decision for one message."""
        groups = self.group_rules(rules)
        for rule_type in SPECIFICITY:
            match = self.first_match(groups[rule_type], sender, category)
            if match is not None:
                return Disposition(action=match.action, matched_rule=match)
        return Disposition(action=self.default_action)


_default_engine = DispositionEngine()


def decide(sender: str, category: str, rules: Iterable[Rule]) -> Disposition:
    """Decide with the default (fail-open) engine."""
    return _default_engine.decide(sender, category, rules)


def create_rule(
    pattern: str,
    rule_type: RuleType | str,
    action: RuleAction | str,
    *,
    user_id: str = "",
    rule_id: str | None = None,
    created_at: datetime | None = None,
) -> Rule:
    """Helper to build a rule without going through the store.

    Example:
        rule = create_rule("spam.com", "domain", "block")
    """
    return Rule(
        id=rule_id or str(uuid.uuid4()),
        user_id=user_id,
        pattern=pattern,
        type=RuleType(rule_type),
        action=RuleAction(action),
        created_at=created_at or datetime.now(),
    )
