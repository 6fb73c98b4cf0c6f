"""
DTOs -- immutable snapshots flowing in and out of the billing engine.

Responsibility:
    Defines the frozen data structures the pure evaluator and policy
    functions consume (ItemSnapshot, GroupSnapshot, RuleSpec) and the
    results the services and selectors hand back to callers
    (AssignmentResult, DepositApplication, TabBillingSummary, ...).

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods are boundary converters invoked only from the
    service and selector layers, never from domain logic.

Invariants enforced:
    - Domain logic accepts and returns DTOs, never ORM entities.
    - Metadata bags are frozen on snapshot so rule evaluation cannot
      mutate the item it inspects.

Data flow:
    LineItem/BillingGroup/BillingGroupRule rows
        -> ItemSnapshot/GroupSnapshot/RuleSpec
        -> evaluate_rule / resolve_assignment
        -> AssignmentDecision -> AssignmentResult
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping
from uuid import UUID

from billing_kernel.domain.rules import RuleAction, RuleConditions

if TYPE_CHECKING:
    from billing_kernel.models.billing_group import (
        BillingGroup as BillingGroupModel,
    )
    from billing_kernel.models.billing_group import (
        BillingGroupOverride as BillingGroupOverrideModel,
    )
    from billing_kernel.models.billing_group import (
        BillingGroupRule as BillingGroupRuleModel,
    )
    from billing_kernel.models.tab import LineItem as LineItemModel


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


class GroupStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class GroupType(str, Enum):
    """
    Well-known group types.  The column is an open string, so other values
    are legal; only PERSONAL carries behaviour (default-group fallback).
    """

    PERSONAL = "personal"
    STANDARD = "standard"
    CORPORATE = "corporate"
    DEPOSIT = "deposit"
    CREDIT = "credit"


class AssignmentMode(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    UNASSIGN = "unassign"


@dataclass(frozen=True)
class ItemSnapshot:
    """
    What the evaluator sees of a line item.

    Guarantees:
        - metadata is deeply frozen.
        - category is read from ``metadata["category"]``.
    """

    line_item_id: UUID
    tab_id: UUID
    total: Decimal
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    billing_group_id: UUID | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.metadata, MappingProxyType):
            object.__setattr__(self, "metadata", _freeze(dict(self.metadata or {})))

    @property
    def category(self) -> Any:
        return self.metadata.get("category")

    @classmethod
    def from_model(cls, item: LineItemModel) -> ItemSnapshot:
        return cls(
            line_item_id=item.id,
            tab_id=item.tab_id,
            total=item.total,
            metadata=item.item_metadata or {},
            billing_group_id=item.billing_group_id,
        )


@dataclass(frozen=True)
class GroupSnapshot:
    """What the assignment policy sees of a billing group."""

    group_id: UUID
    tab_id: UUID | None
    name: str
    group_type: str
    status: str
    sequence: int

    @property
    def is_active(self) -> bool:
        return self.status == GroupStatus.ACTIVE.value

    @property
    def is_personal(self) -> bool:
        return self.group_type == GroupType.PERSONAL.value

    @classmethod
    def from_model(cls, group: BillingGroupModel) -> GroupSnapshot:
        return cls(
            group_id=group.id,
            tab_id=group.tab_id,
            name=group.name,
            group_type=group.group_type,
            status=group.status,
            sequence=group.sequence,
        )


@dataclass(frozen=True)
class RuleSpec:
    """
    Immutable snapshot of one rule.

    sort_key orders rules for evaluation: priority, then creation order,
    then id.
    """

    rule_id: UUID
    billing_group_id: UUID
    name: str
    priority: int
    sequence: int
    conditions: RuleConditions
    action: RuleAction = RuleAction.AUTO_ASSIGN
    is_active: bool = True

    @property
    def sort_key(self) -> tuple[int, int, str]:
        return (self.priority, self.sequence, str(self.rule_id))

    @classmethod
    def from_model(cls, rule: BillingGroupRuleModel) -> RuleSpec:
        return cls(
            rule_id=rule.id,
            billing_group_id=rule.billing_group_id,
            name=rule.name,
            priority=rule.priority,
            sequence=rule.sequence,
            conditions=RuleConditions.from_dict(rule.conditions),
            action=RuleAction(rule.action),
            is_active=rule.is_active,
        )


@dataclass(frozen=True)
class RuleMatch:
    """The first rule whose conditions all held."""

    rule_id: UUID
    billing_group_id: UUID
    action: RuleAction
    priority: int


@dataclass(frozen=True)
class AssignmentDecision:
    """
    Outcome of resolving an automatic assignment.

    Guarantees:
        - applied is True exactly when the item pointer should move: an
          auto_assign match, or the default-group fallback.
        - For other actions billing_group_id is the proposed group only.
    """

    billing_group_id: UUID
    matched_rule_id: UUID | None
    action: RuleAction | None
    via_fallback: bool

    @property
    def applied(self) -> bool:
        return self.via_fallback or self.action == RuleAction.AUTO_ASSIGN


@dataclass(frozen=True)
class AssignmentResult:
    """What an assignment operation did to one line item."""

    line_item_id: UUID
    mode: AssignmentMode
    previous_group_id: UUID | None
    billing_group_id: UUID | None
    applied: bool
    matched_rule_id: UUID | None = None
    action: RuleAction | None = None
    override_id: UUID | None = None

    @property
    def changed(self) -> bool:
        return self.applied and self.previous_group_id != self.billing_group_id


@dataclass(frozen=True)
class DepositApplication:
    """
    Result of drawing down a deposit.

    Guarantees:
        - applied <= requested, and applied never exceeds what remained.
        - clamped is True when less than requested was applied.
    """

    billing_group_id: UUID
    requested: Decimal
    applied: Decimal
    deposit_amount: Decimal
    deposit_applied: Decimal

    @property
    def remaining(self) -> Decimal:
        return self.deposit_amount - self.deposit_applied

    @property
    def clamped(self) -> bool:
        return self.applied < self.requested


@dataclass(frozen=True)
class GroupInfo:
    """Read-side view of a billing group."""

    id: UUID
    group_number: str
    name: str
    group_type: str
    status: str
    tab_id: UUID | None
    invoice_id: UUID | None
    payer_email: str | None
    payer_organization_id: UUID | None
    credit_limit: Decimal | None
    deposit_amount: Decimal | None
    deposit_applied: Decimal
    current_balance: Decimal
    authorization_code: str | None = None
    po_number: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def deposit_remaining(self) -> Decimal | None:
        if self.deposit_amount is None:
            return None
        return self.deposit_amount - self.deposit_applied

    @property
    def credit_available(self) -> Decimal | None:
        if self.credit_limit is None:
            return None
        return self.credit_limit - self.current_balance

    @property
    def is_over_credit_limit(self) -> bool:
        available = self.credit_available
        return available is not None and available < 0

    @classmethod
    def from_model(cls, group: BillingGroupModel) -> GroupInfo:
        return cls(
            id=group.id,
            group_number=group.group_number,
            name=group.name,
            group_type=group.group_type,
            status=group.status,
            tab_id=group.tab_id,
            invoice_id=group.invoice_id,
            payer_email=group.payer_email,
            payer_organization_id=group.payer_organization_id,
            credit_limit=group.credit_limit,
            deposit_amount=group.deposit_amount,
            deposit_applied=group.deposit_applied,
            current_balance=group.current_balance,
            authorization_code=group.authorization_code,
            po_number=group.po_number,
            metadata=_freeze(dict(group.group_metadata or {})),
        )


@dataclass(frozen=True)
class LineItemInfo:
    id: UUID
    line_number: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    total: Decimal
    billing_group_id: UUID | None
    assigned_rule_id: UUID | None
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_model(cls, item: LineItemModel) -> LineItemInfo:
        return cls(
            id=item.id,
            line_number=item.line_number,
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            total=item.total,
            billing_group_id=item.billing_group_id,
            assigned_rule_id=item.assigned_rule_id,
            metadata=_freeze(dict(item.item_metadata or {})),
        )


@dataclass(frozen=True)
class GroupSummary:
    """One group's share of a tab: its items and re-derived total."""

    group: GroupInfo
    items: tuple[LineItemInfo, ...]
    total: Decimal

    @property
    def deposit_remaining(self) -> Decimal | None:
        return self.group.deposit_remaining

    @property
    def credit_available(self) -> Decimal | None:
        if self.group.credit_limit is None:
            return None
        return self.group.credit_limit - self.total


@dataclass(frozen=True)
class TabBillingSummary:
    """
    Aggregated billing view of a tab.

    Guarantees:
        - grand_total == sum(group totals) + unassigned_total.
        - Totals are re-derived from line items, not read from stored
          balances.
    """

    tab_id: UUID
    groups: tuple[GroupSummary, ...]
    unassigned_items: tuple[LineItemInfo, ...]
    unassigned_total: Decimal
    grand_total: Decimal

    @property
    def billing_enabled(self) -> bool:
        return bool(self.groups)


@dataclass(frozen=True)
class OverrideRecord:
    id: UUID
    line_item_id: UUID
    original_group_id: UUID | None
    assigned_group_id: UUID | None
    rule_id: UUID | None
    reason: str | None
    overridden_by: UUID
    created_at: datetime

    @classmethod
    def from_model(cls, override: BillingGroupOverrideModel) -> OverrideRecord:
        return cls(
            id=override.id,
            line_item_id=override.line_item_id,
            original_group_id=override.original_group_id,
            assigned_group_id=override.assigned_group_id,
            rule_id=override.rule_id,
            reason=override.reason,
            overridden_by=override.overridden_by,
            created_at=override.created_at,
        )


@dataclass(frozen=True)
class ReconciliationCheck:
    """Stored balance vs. balance re-derived from the assigned items."""

    billing_group_id: UUID
    stored: Decimal
    derived: Decimal

    @property
    def reconciled(self) -> bool:
        return self.stored == self.derived

    @property
    def drift(self) -> Decimal:
        return self.stored - self.derived


@dataclass(frozen=True)
class RulePreview:
    """Which of a tab's items a candidate condition set would match."""

    tab_id: UUID
    conditions: RuleConditions
    evaluated_at: datetime
    matched_item_ids: tuple[UUID, ...]
    matched_total: Decimal

    @property
    def match_count(self) -> int:
        return len(self.matched_item_ids)
