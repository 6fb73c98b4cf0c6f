"""
AssignmentService -- places line items into billing groups.

Responsibility:
    The single write path for a line item's billing group pointer.
    Automatic mode consults the pooled rules of the tab and falls back to
    the default group; manual mode places the item where the actor says and
    audits it; bulk mode applies many manual placements as one unit.

Architecture position:
    Kernel > Services -- imperative shell.
    Pure decisions are delegated to domain.assignment_policy; balances to
    BalanceLedger; reads to BillingSelector.

Invariants enforced:
    - Manual placement never evaluates rules and always appends exactly one
      BillingGroupOverride capturing the group held before the move.
    - Automatic placement records the matched rule on the item and writes no
      override.  Only AUTO_ASSIGN (or the fallback) moves the pointer.
    - Every pointer change recomputes the losing and the winning group in
      the same unit of work.
    - Bulk: every pair is validated before anything is mutated.  The batch
      shares the caller's transaction, so a failure leaves nothing behind
      once the caller rolls back.

Failure modes:
    - LineItemNotFoundError, BillingGroupNotFoundError: unknown ids.
    - CrossTabAssignmentError: target group is not on the item's tab.
    - BillingGroupClosedError: target group is closed.
    - NoBillingGroupsError: automatic placement with no active group.
"""

from __future__ import annotations

from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_config import BillingSettings, get_settings
from billing_kernel.domain.assignment_policy import resolve_assignment
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.dtos import (
    AssignmentMode,
    AssignmentResult,
    GroupSnapshot,
    ItemSnapshot,
)
from billing_kernel.exceptions import (
    BillingGroupClosedError,
    BillingGroupNotFoundError,
    CrossTabAssignmentError,
    LineItemNotFoundError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.billing_group import BillingGroup, BillingGroupOverride
from billing_kernel.models.tab import LineItem
from billing_kernel.selectors.billing_selector import BillingSelector
from billing_kernel.services.balance_ledger import BalanceLedger
from billing_kernel.services.base import BaseService

logger = get_logger("services.assignment")


class AssignmentService(BaseService[LineItem]):
    """
    Automatic, manual and bulk line item assignment.

    Non-goals:
        - Does NOT act on require_approval / notify / reject.  Those
          outcomes are returned unapplied for the caller to route.
        - Does NOT commit.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        settings: BillingSettings | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._settings = settings or get_settings()
        self._ledger = BalanceLedger(session, money_quantum=self._settings.money_quantum)
        self._selector = BillingSelector(session, money_quantum=self._settings.money_quantum)

    @property
    def ledger(self) -> BalanceLedger:
        return self._ledger

    # ------------------------------------------------------------------
    # Lookups and validation
    # ------------------------------------------------------------------

    def _get_item(self, line_item_id: UUID) -> LineItem:
        item = self.session.get(LineItem, line_item_id)
        if item is None:
            raise LineItemNotFoundError(str(line_item_id))
        return item

    def _get_group(self, billing_group_id: UUID) -> BillingGroup:
        group = self.session.get(BillingGroup, billing_group_id)
        if group is None:
            raise BillingGroupNotFoundError(str(billing_group_id))
        return group

    def _validate_target(self, item: LineItem, group: BillingGroup) -> None:
        if group.tab_id != item.tab_id:
            raise CrossTabAssignmentError(
                line_item_id=str(item.id),
                billing_group_id=str(group.id),
                item_tab_id=str(item.tab_id),
                group_tab_id=str(group.tab_id) if group.tab_id else None,
            )
        if not group.is_active:
            raise BillingGroupClosedError(str(group.id))

    def _resolve_pair(self, line_item_id: UUID, billing_group_id: UUID) -> tuple[LineItem, BillingGroup]:
        item = self._get_item(line_item_id)
        group = self._get_group(billing_group_id)
        self._validate_target(item, group)
        return item, group

    # ------------------------------------------------------------------
    # Automatic
    # ------------------------------------------------------------------

    def assign_automatic(
        self,
        line_item_id: UUID,
        actor_id: UUID | None = None,
    ) -> AssignmentResult:
        """
        Place an item by rule, falling back to the default group.

        The evaluation moment is the injected clock's time in the configured
        billing timezone.

        Returns:
            AssignmentResult.  applied=False means a non-auto_assign rule
            matched; billing_group_id is then the proposed group and the
            item pointer is unchanged.

        Raises:
            LineItemNotFoundError: item does not exist.
            NoBillingGroupsError: the tab has no active billing group.
        """
        item = self._get_item(line_item_id)

        with LogContext.bind(line_item_id=item.id, tab_id=item.tab_id):
            groups = self.session.execute(
                select(BillingGroup)
                .where(BillingGroup.tab_id == item.tab_id)
                .order_by(BillingGroup.sequence)
            ).scalars().all()
            rules = self._selector.list_active_rules(item.tab_id)
            at = self._clock.now_in(self._settings.timezone)

            decision = resolve_assignment(
                ItemSnapshot.from_model(item),
                [GroupSnapshot.from_model(g) for g in groups],
                rules,
                at,
            )

            previous = item.billing_group_id
            if not decision.applied:
                logger.info(
                    "assignment_deferred",
                    extra={
                        "action": decision.action.value,
                        "rule_id": str(decision.matched_rule_id),
                        "proposed_group_id": str(decision.billing_group_id),
                    },
                )
                return AssignmentResult(
                    line_item_id=item.id,
                    mode=AssignmentMode.AUTOMATIC,
                    previous_group_id=previous,
                    billing_group_id=decision.billing_group_id,
                    applied=False,
                    matched_rule_id=decision.matched_rule_id,
                    action=decision.action,
                )

            item.billing_group_id = decision.billing_group_id
            item.assigned_rule_id = decision.matched_rule_id
            if actor_id is not None:
                item.updated_by_id = actor_id
            self.session.flush()

            self._ledger.recompute_many([previous, decision.billing_group_id])

            logger.info(
                "line_item_assigned",
                extra={
                    "mode": AssignmentMode.AUTOMATIC.value,
                    "previous_group_id": str(previous) if previous else None,
                    "assigned_group_id": str(decision.billing_group_id),
                    "rule_id": str(decision.matched_rule_id) if decision.matched_rule_id else None,
                    "via_fallback": decision.via_fallback,
                },
            )

            return AssignmentResult(
                line_item_id=item.id,
                mode=AssignmentMode.AUTOMATIC,
                previous_group_id=previous,
                billing_group_id=decision.billing_group_id,
                applied=True,
                matched_rule_id=decision.matched_rule_id,
                action=decision.action,
            )

    def assign_many_automatic(
        self,
        line_item_ids: Iterable[UUID],
        actor_id: UUID | None = None,
    ) -> list[AssignmentResult]:
        return [self.assign_automatic(i, actor_id=actor_id) for i in line_item_ids]

    # ------------------------------------------------------------------
    # Manual
    # ------------------------------------------------------------------

    def _place_manually(
        self,
        item: LineItem,
        group: BillingGroup | None,
        actor_id: UUID,
        reason: str | None,
        superseded_rule_id: UUID | None,
        mode: AssignmentMode,
    ) -> AssignmentResult:
        previous = item.billing_group_id
        target_id = group.id if group is not None else None

        override = BillingGroupOverride(
            line_item_id=item.id,
            original_group_id=previous,
            assigned_group_id=target_id,
            rule_id=superseded_rule_id,
            reason=reason,
            overridden_by=actor_id,
            created_at=self._clock.now_utc(),
        )
        self.session.add(override)

        item.billing_group_id = target_id
        item.assigned_rule_id = None
        item.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "override_recorded",
            extra={
                "override_id": str(override.id),
                "line_item_id": str(item.id),
                "mode": mode.value,
                "original_group_id": str(previous) if previous else None,
                "assigned_group_id": str(target_id) if target_id else None,
                "reason": reason,
            },
        )

        return AssignmentResult(
            line_item_id=item.id,
            mode=mode,
            previous_group_id=previous,
            billing_group_id=target_id,
            applied=True,
            matched_rule_id=None,
            action=None,
            override_id=override.id,
        )

    def assign_manual(
        self,
        line_item_id: UUID,
        billing_group_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
        superseded_rule_id: UUID | None = None,
    ) -> AssignmentResult:
        """
        Place an item in an explicit group, bypassing rules.

        Always records one override, even when the item is already in the
        target group.

        Args:
            superseded_rule_id: The rule that would otherwise have applied,
                if the caller knows it.  Recorded on the override.

        Raises:
            LineItemNotFoundError, BillingGroupNotFoundError,
            CrossTabAssignmentError, BillingGroupClosedError.
        """
        item, group = self._resolve_pair(line_item_id, billing_group_id)

        with LogContext.bind(line_item_id=item.id, tab_id=item.tab_id, actor_id=actor_id):
            result = self._place_manually(
                item, group, actor_id, reason, superseded_rule_id, AssignmentMode.MANUAL,
            )
            self._ledger.recompute_many([result.previous_group_id, group.id])
            return result

    def bulk_assign(
        self,
        assignments: Sequence[tuple[UUID, UUID]],
        actor_id: UUID,
        reason: str | None = None,
    ) -> list[AssignmentResult]:
        """
        Apply ordered (line_item_id, billing_group_id) pairs as manual
        placements, all or nothing.

        Every pair is validated first; the first invalid pair raises before
        any pointer moves or any override is written.  Balances of every
        touched group are recomputed once, at the end.

        Raises:
            Any error assign_manual raises, for the first invalid pair.
        """
        resolved = [self._resolve_pair(item_id, group_id) for item_id, group_id in assignments]

        with LogContext.bind(actor_id=actor_id):
            results = []
            touched: list[UUID | None] = []
            for item, group in resolved:
                touched.append(item.billing_group_id)
                result = self._place_manually(
                    item, group, actor_id, reason, None, AssignmentMode.MANUAL,
                )
                touched.append(group.id)
                results.append(result)

            self._ledger.recompute_many(touched)

            logger.info(
                "bulk_assignment_completed",
                extra={"assignment_count": len(results)},
            )
            return results

    def unassign(
        self,
        line_item_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
    ) -> AssignmentResult:
        """
        Clear an item's group pointer.

        Recorded as an override whose assigned group is NULL.
        """
        item = self._get_item(line_item_id)

        with LogContext.bind(line_item_id=item.id, tab_id=item.tab_id, actor_id=actor_id):
            result = self._place_manually(
                item, None, actor_id, reason, None, AssignmentMode.UNASSIGN,
            )
            self._ledger.recompute_many([result.previous_group_id])
            return result
