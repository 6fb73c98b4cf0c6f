"""
Pure domain layer.

Rule model, evaluator, assignment policy, money arithmetic and DTOs, with
NO dependencies on:
- ORM (SQLAlchemy)
- Database
- The system clock
- I/O

All domain objects are immutable and deterministic.
"""

from billing_kernel.domain.assignment_policy import (
    resolve_assignment,
    select_default_group,
)
from billing_kernel.domain.clock import (
    Clock,
    DeterministicClock,
    SequentialClock,
    SystemClock,
)
from billing_kernel.domain.dtos import (
    AssignmentDecision,
    AssignmentMode,
    AssignmentResult,
    DepositApplication,
    GroupInfo,
    GroupSnapshot,
    GroupStatus,
    GroupSummary,
    GroupType,
    ItemSnapshot,
    LineItemInfo,
    OverrideRecord,
    ReconciliationCheck,
    RuleMatch,
    RulePreview,
    RuleSpec,
    TabBillingSummary,
)
from billing_kernel.domain.evaluator import (
    conditions_match,
    day_of_week,
    evaluate_rule,
    order_rules,
)
from billing_kernel.domain.rules import (
    AmountCondition,
    CategoryCondition,
    DayOfWeekCondition,
    MetadataCondition,
    RuleAction,
    RuleConditions,
    TimeWindowCondition,
    parse_action,
    validate_conditions,
    validate_priority,
)

__all__ = [
    # Clock
    "Clock",
    "SystemClock",
    "DeterministicClock",
    "SequentialClock",
    # Rule model
    "RuleAction",
    "RuleConditions",
    "CategoryCondition",
    "AmountCondition",
    "TimeWindowCondition",
    "DayOfWeekCondition",
    "MetadataCondition",
    "validate_conditions",
    "validate_priority",
    "parse_action",
    # Evaluator
    "evaluate_rule",
    "conditions_match",
    "order_rules",
    "day_of_week",
    # Policy
    "select_default_group",
    "resolve_assignment",
    # DTOs
    "ItemSnapshot",
    "GroupSnapshot",
    "RuleSpec",
    "RuleMatch",
    "AssignmentMode",
    "AssignmentDecision",
    "AssignmentResult",
    "DepositApplication",
    "GroupStatus",
    "GroupType",
    "GroupInfo",
    "LineItemInfo",
    "GroupSummary",
    "TabBillingSummary",
    "OverrideRecord",
    "ReconciliationCheck",
    "RulePreview",
]
