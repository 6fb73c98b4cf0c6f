"""
Assignment policy -- automatic assignment decision and default-group fallback.

Responsibility:
    Combines the evaluator verdict with the tab's groups into a single
    AssignmentDecision.  The default-group heuristic lives in its own named
    function so it can be swapped or tested apart from the resolver.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    Called by AssignmentService (automatic mode) and by
    BillingGroupService.get_or_create_default_group.

Invariants enforced:
    - Fallback prefers the first active ``personal`` group by creation
      order, regardless of the order groups are supplied in.
    - Otherwise the first active group by creation order.
    - Rules owned by closed groups never drive an assignment.

Failure modes:
    - NoBillingGroupsError when the tab has no active group at all.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Sequence
from uuid import UUID

from billing_kernel.domain.dtos import (
    AssignmentDecision,
    GroupSnapshot,
    ItemSnapshot,
    RuleSpec,
)
from billing_kernel.domain.evaluator import evaluate_rule
from billing_kernel.exceptions import NoBillingGroupsError


def select_default_group(
    groups: Iterable[GroupSnapshot],
    tab_id: UUID | None = None,
) -> GroupSnapshot:
    """
    Default target when no rule matches.

    Personal group first, else the earliest-created group.

    Raises:
        NoBillingGroupsError: no active group is available.
    """
    candidates = sorted(
        (g for g in groups if g.is_active),
        key=lambda g: (g.sequence, str(g.group_id)),
    )
    if not candidates:
        raise NoBillingGroupsError(str(tab_id) if tab_id is not None else "unknown")

    for group in candidates:
        if group.is_personal:
            return group
    return candidates[0]


def resolve_assignment(
    item: ItemSnapshot,
    groups: Sequence[GroupSnapshot],
    rules: Iterable[RuleSpec],
    at: datetime,
) -> AssignmentDecision:
    """
    Decide where ``item`` goes under automatic assignment.

    Rules are pooled across the active groups; a match of any action wins
    over the fallback, but only AUTO_ASSIGN is applied by the caller.
    """
    active_group_ids = {g.group_id for g in groups if g.is_active}
    if not active_group_ids:
        raise NoBillingGroupsError(str(item.tab_id))

    eligible = [r for r in rules if r.billing_group_id in active_group_ids]
    match = evaluate_rule(item, eligible, at)
    if match is not None:
        return AssignmentDecision(
            billing_group_id=match.billing_group_id,
            matched_rule_id=match.rule_id,
            action=match.action,
            via_fallback=False,
        )

    default = select_default_group(groups, tab_id=item.tab_id)
    return AssignmentDecision(
        billing_group_id=default.group_id,
        matched_rule_id=None,
        action=None,
        via_fallback=True,
    )
