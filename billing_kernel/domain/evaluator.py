"""
Evaluator -- first-match rule evaluation over a pooled rule set.

Responsibility:
    Given one line item, every rule of every billing group on its tab, and
    the local wall-clock moment of assignment, pick the first rule whose
    conditions all hold.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  The caller supplies
    ``at`` from an injected Clock; nothing here reads the system clock.

Invariants enforced:
    - Candidates are ordered by (priority, creation sequence, rule id), so
      equal-priority rules resolve the same way on every run.
    - Conditions are conjunctive.  An absent dimension never rejects.
    - Inactive rules never match.

Failure modes:
    (none -- malformed conditions are rejected when rules are created)
"""

from __future__ import annotations

from datetime import datetime, time
from typing import Any, Iterable, Mapping

from billing_kernel.domain.dtos import ItemSnapshot, RuleMatch, RuleSpec
from billing_kernel.domain.rules import (
    AmountCondition,
    CategoryCondition,
    DayOfWeekCondition,
    MetadataCondition,
    RuleConditions,
    TimeWindowCondition,
)


def day_of_week(at: datetime) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (at.weekday() + 1) % 7


def _category_matches(cond: CategoryCondition, item: ItemSnapshot) -> bool:
    if not cond.categories:
        return True
    category = item.category
    return isinstance(category, str) and category in cond.categories


def _amount_matches(cond: AmountCondition, item: ItemSnapshot) -> bool:
    if cond.min is not None and item.total < cond.min:
        return False
    if cond.max is not None and item.total > cond.max:
        return False
    return True


def _time_matches(cond: TimeWindowCondition, at: datetime) -> bool:
    now = time(at.hour, at.minute)
    if cond.wraps_midnight:
        return now >= cond.start or now <= cond.end
    if cond.start is not None and now < cond.start:
        return False
    if cond.end is not None and now > cond.end:
        return False
    return True


def _days_match(cond: DayOfWeekCondition, at: datetime) -> bool:
    if not cond.days:
        return True
    return day_of_week(at) in cond.days


def _same_value(expected: Any, actual: Any) -> bool:
    # bool is an int subclass; True must not equal 1
    if isinstance(expected, bool) or isinstance(actual, bool):
        return type(expected) is type(actual) and expected == actual
    # item snapshots freeze lists into tuples
    if isinstance(expected, (list, tuple)) and isinstance(actual, (list, tuple)):
        return len(expected) == len(actual) and all(
            _same_value(e, a) for e, a in zip(expected, actual)
        )
    if isinstance(expected, Mapping) and isinstance(actual, Mapping):
        return expected.keys() == actual.keys() and all(
            _same_value(v, actual[k]) for k, v in expected.items()
        )
    return expected == actual


def _metadata_matches(cond: MetadataCondition, item: ItemSnapshot) -> bool:
    for key, expected in cond.expected.items():
        if key not in item.metadata:
            return False
        if not _same_value(expected, item.metadata[key]):
            return False
    return True


def conditions_match(item: ItemSnapshot, conditions: RuleConditions, at: datetime) -> bool:
    """True when every present dimension holds for ``item`` at ``at``."""
    if conditions.category is not None and not _category_matches(conditions.category, item):
        return False
    if conditions.amount is not None and not _amount_matches(conditions.amount, item):
        return False
    if conditions.time is not None and not _time_matches(conditions.time, at):
        return False
    if conditions.day_of_week is not None and not _days_match(conditions.day_of_week, at):
        return False
    if conditions.metadata is not None and not _metadata_matches(conditions.metadata, item):
        return False
    return True


def order_rules(rules: Iterable[RuleSpec]) -> list[RuleSpec]:
    """Active rules in evaluation order."""
    return sorted((r for r in rules if r.is_active), key=lambda r: r.sort_key)


def evaluate_rule(
    item: ItemSnapshot,
    rules: Iterable[RuleSpec],
    at: datetime,
) -> RuleMatch | None:
    """
    Return the first matching rule, or None when nothing matches.

    Args:
        item: The line item under assignment.
        rules: Rules pooled from every billing group on the item's tab, in
            any order.
        at: Local wall-clock moment of assignment (venue timezone).
    """
    for rule in order_rules(rules):
        if conditions_match(item, rule.conditions, at):
            return RuleMatch(
                rule_id=rule.rule_id,
                billing_group_id=rule.billing_group_id,
                action=rule.action,
                priority=rule.priority,
            )
    return None
