"""
Module: billing_kernel.selectors.billing_selector
Responsibility: Read-only billing queries: the per-tab billing summary,
    group and rule listings, the override audit trail, balance
    reconciliation checks, and rule previews against a tab's items.
Architecture position: Kernel > Selectors.  May import from models/, the
    pure domain and selectors/base.py.  MUST NOT import from services/.

Invariants enforced:
    - Summary totals are derived from the line items pointing at each
      group at query time, never read from the stored current_balance.
    - grand_total == sum(group totals) + unassigned_total.
    - list_active_rules returns rules in evaluation order.

Failure modes:
    - TabNotFoundError / BillingGroupNotFoundError for unknown ids.

Audit relevance:
    check_reconciliation() exposes drift between a group's stored balance
    and the balance its assigned items imply.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from billing_kernel.domain.dtos import (
    GroupInfo,
    GroupSummary,
    ItemSnapshot,
    LineItemInfo,
    OverrideRecord,
    ReconciliationCheck,
    RulePreview,
    RuleSpec,
    TabBillingSummary,
)
from billing_kernel.domain.evaluator import conditions_match, order_rules
from billing_kernel.domain.money import CENT, invoice_line_charge, quantize_money, sum_money
from billing_kernel.domain.rules import RuleConditions, validate_conditions
from billing_kernel.exceptions import BillingGroupNotFoundError, TabNotFoundError
from billing_kernel.models.billing_group import (
    BillingGroup,
    BillingGroupOverride,
    BillingGroupRule,
    BillingGroupStatus,
)
from billing_kernel.models.tab import InvoiceLineItem, LineItem, Tab
from billing_kernel.selectors.base import BaseSelector


class BillingSelector(BaseSelector[BillingGroup]):
    """
    Read-only access to billing groups and their assignments.

    Guarantees:
        - Every method returns frozen DTOs.
        - Money totals are quantised once, at the configured quantum.
    """

    def __init__(self, session: Session, money_quantum: Decimal = CENT):
        super().__init__(session)
        self._quantum = money_quantum

    def _require_tab(self, tab_id: UUID) -> Tab:
        tab = self.session.get(Tab, tab_id)
        if tab is None:
            raise TabNotFoundError(str(tab_id))
        return tab

    def _require_group(self, group_id: UUID) -> BillingGroup:
        group = self.session.get(BillingGroup, group_id)
        if group is None:
            raise BillingGroupNotFoundError(str(group_id))
        return group

    def _tab_groups(self, tab_id: UUID, include_closed: bool = True) -> list[BillingGroup]:
        stmt = select(BillingGroup).where(BillingGroup.tab_id == tab_id)
        if not include_closed:
            stmt = stmt.where(BillingGroup.status == BillingGroupStatus.ACTIVE.value)
        stmt = stmt.order_by(BillingGroup.sequence)
        return list(self.session.execute(stmt).scalars().all())

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def derived_balance(self, group_id: UUID) -> Decimal:
        """
        Sum of line item totals plus tax/discount-adjusted invoice line
        charges for everything pointing at the group.
        """
        item_totals = self.session.execute(
            select(LineItem.total).where(LineItem.billing_group_id == group_id)
        ).scalars().all()

        invoice_lines = self.session.execute(
            select(
                InvoiceLineItem.quantity,
                InvoiceLineItem.unit_price,
                InvoiceLineItem.tax_rate,
                InvoiceLineItem.discount_percentage,
            ).where(InvoiceLineItem.billing_group_id == group_id)
        ).all()

        charges = list(item_totals)
        charges.extend(
            invoice_line_charge(qty, price, tax, discount)
            for qty, price, tax, discount in invoice_lines
        )
        return sum_money(charges, self._quantum)

    def check_reconciliation(self, group_id: UUID) -> ReconciliationCheck:
        """Stored balance against a fresh derivation."""
        group = self._require_group(group_id)
        return ReconciliationCheck(
            billing_group_id=group.id,
            stored=quantize_money(group.current_balance, self._quantum),
            derived=self.derived_balance(group_id),
        )

    # ------------------------------------------------------------------
    # Groups, rules, overrides
    # ------------------------------------------------------------------

    def get_group(self, group_id: UUID) -> GroupInfo:
        return GroupInfo.from_model(self._require_group(group_id))

    def list_groups(self, tab_id: UUID, include_closed: bool = True) -> list[GroupInfo]:
        """Groups on a tab in creation order."""
        self._require_tab(tab_id)
        return [GroupInfo.from_model(g) for g in self._tab_groups(tab_id, include_closed)]

    def list_rules(self, billing_group_id: UUID, active_only: bool = False) -> list[RuleSpec]:
        """Rules owned by one group, in evaluation order."""
        self._require_group(billing_group_id)
        stmt = select(BillingGroupRule).where(
            BillingGroupRule.billing_group_id == billing_group_id
        )
        if active_only:
            stmt = stmt.where(BillingGroupRule.is_active.is_(True))
        rules = [RuleSpec.from_model(r) for r in self.session.execute(stmt).scalars().all()]
        return sorted(rules, key=lambda r: r.sort_key)

    def list_active_rules(self, tab_id: UUID) -> list[RuleSpec]:
        """
        Active rules of every active group on the tab, pooled and in
        evaluation order.
        """
        stmt = (
            select(BillingGroupRule)
            .join(BillingGroup, BillingGroupRule.billing_group_id == BillingGroup.id)
            .where(
                BillingGroup.tab_id == tab_id,
                BillingGroup.status == BillingGroupStatus.ACTIVE.value,
                BillingGroupRule.is_active.is_(True),
            )
        )
        rules = self.session.execute(stmt).scalars().all()
        return order_rules(RuleSpec.from_model(r) for r in rules)

    def list_overrides(
        self,
        line_item_id: UUID | None = None,
        billing_group_id: UUID | None = None,
    ) -> list[OverrideRecord]:
        """
        Override audit trail, newest first.

        billing_group_id matches overrides that moved an item into or out
        of the group.
        """
        stmt = select(BillingGroupOverride)
        if line_item_id is not None:
            stmt = stmt.where(BillingGroupOverride.line_item_id == line_item_id)
        if billing_group_id is not None:
            stmt = stmt.where(
                or_(
                    BillingGroupOverride.assigned_group_id == billing_group_id,
                    BillingGroupOverride.original_group_id == billing_group_id,
                )
            )
        stmt = stmt.order_by(
            BillingGroupOverride.created_at.desc(),
            BillingGroupOverride.id,
        )
        return [OverrideRecord.from_model(o) for o in self.session.execute(stmt).scalars().all()]

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def get_tab_billing_summary(self, tab_id: UUID) -> TabBillingSummary:
        """
        Per-group items and totals, unassigned items, and the grand total.

        Raises:
            TabNotFoundError: tab does not exist.
        """
        self._require_tab(tab_id)

        items = self.session.execute(
            select(LineItem)
            .where(LineItem.tab_id == tab_id)
            .order_by(LineItem.line_number)
        ).scalars().all()

        by_group: dict[UUID | None, list[LineItemInfo]] = {}
        for item in items:
            by_group.setdefault(item.billing_group_id, []).append(LineItemInfo.from_model(item))

        summaries = []
        for group in self._tab_groups(tab_id):
            summaries.append(
                GroupSummary(
                    group=GroupInfo.from_model(group),
                    items=tuple(by_group.get(group.id, ())),
                    total=self.derived_balance(group.id),
                )
            )

        unassigned = tuple(by_group.get(None, ()))
        unassigned_total = sum_money((i.total for i in unassigned), self._quantum)
        grand_total = quantize_money(
            sum((s.total for s in summaries), Decimal("0")) + unassigned_total,
            self._quantum,
        )

        return TabBillingSummary(
            tab_id=tab_id,
            groups=tuple(summaries),
            unassigned_items=unassigned,
            unassigned_total=unassigned_total,
            grand_total=grand_total,
        )

    # ------------------------------------------------------------------
    # Rule preview
    # ------------------------------------------------------------------

    def preview_rule(
        self,
        tab_id: UUID,
        conditions: Mapping[str, Any] | RuleConditions,
        at: datetime,
    ) -> RulePreview:
        """
        Which of the tab's items a candidate condition set would match at
        local time ``at``.  Nothing is persisted.

        Raises:
            RuleValidationError: malformed conditions.
            TabNotFoundError: tab does not exist.
        """
        parsed = validate_conditions(conditions)
        self._require_tab(tab_id)

        items = self.session.execute(
            select(LineItem)
            .where(LineItem.tab_id == tab_id)
            .order_by(LineItem.line_number)
        ).scalars().all()

        matched = [i for i in items if conditions_match(ItemSnapshot.from_model(i), parsed, at)]
        return RulePreview(
            tab_id=tab_id,
            conditions=parsed,
            evaluated_at=at,
            matched_item_ids=tuple(i.id for i in matched),
            matched_total=sum_money((i.total for i in matched), self._quantum),
        )
