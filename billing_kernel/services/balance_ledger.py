"""
BalanceLedger -- re-derives and persists billing group balances and deposits.

Responsibility:
    Keeps ``BillingGroup.current_balance`` equal to the charges currently
    pointing at the group, and draws down group deposits without ever
    exceeding the deposit amount.

Architecture position:
    Kernel > Services -- imperative shell.
    Called by AssignmentService after every pointer change and by
    BillingGroupService when groups are closed or reassigned.

Invariants enforced:
    - Reconciliation: current_balance = sum(line item totals)
      + sum(invoice line charges) for items pointing at the group,
      quantised once at the money quantum.  Always a full re-derivation,
      never an incremental add or subtract.
    - Per-group critical section: the group row is locked with
      ``SELECT ... FOR UPDATE`` before its balance or deposit is written.
      Multiple groups are locked in ascending id order.
    - deposit_applied <= deposit_amount (also a database check constraint).

Failure modes:
    - BillingGroupNotFoundError for an unknown group id.
    - InvalidDepositAmountError when the amount to apply is not a positive,
      finite number.
    - NoDepositConfiguredError when the group has no deposit amount.
    - DepositExhaustedError when nothing remains to apply.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_kernel.domain.dtos import DepositApplication
from billing_kernel.domain.money import CENT, quantize_money, to_decimal
from billing_kernel.exceptions import (
    BillingGroupNotFoundError,
    DepositExhaustedError,
    InvalidDepositAmountError,
    NoDepositConfiguredError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.billing_group import BillingGroup
from billing_kernel.selectors.billing_selector import BillingSelector
from billing_kernel.services.base import BaseService

logger = get_logger("services.balance_ledger")


class BalanceLedger(BaseService[BillingGroup]):
    """
    Balance and deposit bookkeeping for billing groups.

    Non-goals:
        - Does NOT commit.  The lock taken on a group row is held until the
          caller's transaction ends.
    """

    def __init__(self, session: Session, money_quantum: Decimal = CENT):
        super().__init__(session)
        self._quantum = money_quantum

    def _lock_group(self, group_id: UUID) -> BillingGroup:
        group = self.session.execute(
            select(BillingGroup)
            .where(BillingGroup.id == group_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if group is None:
            raise BillingGroupNotFoundError(str(group_id))
        return group

    def derive_balance(self, group_id: UUID) -> Decimal:
        """Balance implied by the items currently pointing at the group."""
        self.session.flush()
        return BillingSelector(self.session, money_quantum=self._quantum).derived_balance(group_id)

    def recompute_balance(self, group_id: UUID) -> Decimal:
        """
        Lock the group, re-derive its balance and persist it.

        Idempotent: two calls with no assignment change in between return
        the same value.

        Returns:
            The persisted current balance.

        Raises:
            BillingGroupNotFoundError: group does not exist.
        """
        group = self._lock_group(group_id)
        previous = group.current_balance
        balance = self.derive_balance(group_id)

        group.current_balance = balance
        self.session.flush()

        logger.info(
            "balance_recomputed",
            extra={
                "billing_group_id": str(group_id),
                "previous_balance": str(previous),
                "current_balance": str(balance),
            },
        )
        return balance

    def recompute_many(self, group_ids: Iterable[UUID | None]) -> dict[UUID, Decimal]:
        """
        Recompute several groups, locking in ascending id order.

        ``None`` entries (an item that was unassigned) are ignored and
        duplicates are recomputed once.
        """
        unique = sorted({gid for gid in group_ids if gid is not None}, key=str)
        for gid in unique:
            self._lock_group(gid)
        return {gid: self.recompute_balance(gid) for gid in unique}

    def apply_deposit(
        self,
        group_id: UUID,
        amount: Decimal | int | str,
        actor_id: UUID | None = None,
    ) -> DepositApplication:
        """
        Apply up to ``amount`` of the group's deposit.

        Applies ``min(amount, deposit_amount - deposit_applied)``.  When the
        request exceeds what remains, the remainder is applied and the
        result reports ``clamped=True``.

        Raises:
            InvalidDepositAmountError: amount <= 0, NaN, infinite or unparseable.
            BillingGroupNotFoundError: group does not exist.
            NoDepositConfiguredError: the group has no deposit amount.
            DepositExhaustedError: nothing remains to apply.
        """
        try:
            requested = to_decimal(amount, "amount")
        except ValueError as exc:
            raise InvalidDepositAmountError(str(amount), "must be a finite number") from exc
        if requested <= 0:
            raise InvalidDepositAmountError(requested)

        group = self._lock_group(group_id)
        if group.deposit_amount is None:
            raise NoDepositConfiguredError(str(group_id))

        already_applied = group.deposit_applied or Decimal("0")
        available = group.deposit_amount - already_applied
        if available <= 0:
            logger.warning(
                "deposit_exhausted",
                extra={
                    "billing_group_id": str(group_id),
                    "deposit_amount": str(group.deposit_amount),
                    "deposit_applied": str(already_applied),
                },
            )
            raise DepositExhaustedError(
                str(group_id), group.deposit_amount, already_applied,
            )

        to_apply = min(requested, available)
        group.deposit_applied = already_applied + to_apply
        if actor_id is not None:
            group.updated_by_id = actor_id
        self.session.flush()

        result = DepositApplication(
            billing_group_id=group.id,
            requested=requested,
            applied=to_apply,
            deposit_amount=group.deposit_amount,
            deposit_applied=group.deposit_applied,
        )

        if result.clamped:
            logger.warning(
                "deposit_clamped",
                extra={
                    "billing_group_id": str(group_id),
                    "requested": str(requested),
                    "applied": str(to_apply),
                },
            )
        logger.info(
            "deposit_applied",
            extra={
                "billing_group_id": str(group_id),
                "applied": str(to_apply),
                "deposit_applied": str(result.deposit_applied),
                "deposit_remaining": str(result.remaining),
            },
        )
        return result

    def credit_available(self, group_id: UUID) -> Decimal | None:
        """``credit_limit - current_balance``; None when the group has no limit."""
        group = self.session.get(BillingGroup, group_id)
        if group is None:
            raise BillingGroupNotFoundError(str(group_id))
        available = group.credit_available
        return quantize_money(available, self._quantum) if available is not None else None

    def is_over_credit_limit(self, group_id: UUID) -> bool:
        available = self.credit_available(group_id)
        return available is not None and available < 0

