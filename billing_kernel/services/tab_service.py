"""
TabService -- minimal write path for tabs, line items and invoices.

Responsibility:
    Creates the records the billing engine consumes.  Line item totals are
    computed here (quantity * unit price) so that rule amount conditions and
    balances read one stored value.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - line_number is 1..n per tab (per invoice for invoice lines).
    - quantity > 0 and unit_price >= 0.
    - An item created with a billing group is validated like a manual
      placement target: same tab, active group.  The group balance is
      recomputed.

Failure modes:
    - TabNotFoundError, InvoiceNotFoundError, BillingGroupNotFoundError.
    - CrossTabAssignmentError, BillingGroupClosedError.
    - LineItemValidationError for non-positive quantity, negative price,
      non-finite amounts or a discount outside 0-100.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from billing_kernel.domain.money import CENT, line_item_total, to_decimal
from billing_kernel.exceptions import (
    BillingGroupClosedError,
    BillingGroupNotFoundError,
    CrossTabAssignmentError,
    InvoiceNotFoundError,
    LineItemValidationError,
    TabNotFoundError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.billing_group import BillingGroup
from billing_kernel.models.tab import Invoice, InvoiceLineItem, LineItem, Tab, TabStatus
from billing_kernel.services.balance_ledger import BalanceLedger
from billing_kernel.services.base import BaseService

logger = get_logger("services.tab")


def _amount(value: Decimal | int | str, field: str) -> Decimal:
    try:
        return to_decimal(value, field)
    except ValueError as exc:
        raise LineItemValidationError(field, str(exc)) from exc


def _check_amounts(quantity: Decimal, unit_price: Decimal) -> None:
    if quantity <= 0:
        raise LineItemValidationError("quantity", f"must be positive, got {quantity}")
    if unit_price < 0:
        raise LineItemValidationError("unit_price", f"must not be negative, got {unit_price}")


class TabService(BaseService[Tab]):
    """Create tabs, line items, invoices and invoice lines."""

    def __init__(self, session: Session, money_quantum: Decimal = CENT):
        super().__init__(session)
        self._ledger = BalanceLedger(session, money_quantum=money_quantum)

    def _get_tab(self, tab_id: UUID) -> Tab:
        tab = self.session.get(Tab, tab_id)
        if tab is None:
            raise TabNotFoundError(str(tab_id))
        return tab

    def _target_group(self, billing_group_id: UUID) -> BillingGroup:
        group = self.session.get(BillingGroup, billing_group_id)
        if group is None:
            raise BillingGroupNotFoundError(str(billing_group_id))
        if not group.is_active:
            raise BillingGroupClosedError(str(group.id))
        return group

    def create_tab(
        self,
        actor_id: UUID,
        customer_name: str | None = None,
        customer_email: str | None = None,
        currency: str = "USD",
    ) -> Tab:
        tab = Tab(
            customer_name=customer_name,
            customer_email=customer_email,
            currency=currency.upper(),
            status=TabStatus.OPEN.value,
            created_by_id=actor_id,
        )
        self.session.add(tab)
        self.session.flush()
        logger.info("tab_created", extra={"tab_id": str(tab.id)})
        return tab

    def add_line_item(
        self,
        tab_id: UUID,
        description: str,
        unit_price: Decimal | int | str,
        actor_id: UUID,
        quantity: Decimal | int | str = 1,
        metadata: Mapping[str, Any] | None = None,
        billing_group_id: UUID | None = None,
    ) -> LineItem:
        """
        Append a line item to a tab.  total = quantity * unit_price.

        The item is unassigned unless ``billing_group_id`` is given; use
        AssignmentService for rule-driven placement.
        """
        tab = self._get_tab(tab_id)
        qty = _amount(quantity, "quantity")
        price = _amount(unit_price, "unit_price")
        _check_amounts(qty, price)

        group = None
        if billing_group_id is not None:
            group = self._target_group(billing_group_id)
            if group.tab_id != tab.id:
                raise CrossTabAssignmentError(
                    line_item_id="(new)",
                    billing_group_id=str(group.id),
                    item_tab_id=str(tab.id),
                    group_tab_id=str(group.tab_id) if group.tab_id else None,
                )

        next_number = self.session.execute(
            select(func.coalesce(func.max(LineItem.line_number), 0))
            .where(LineItem.tab_id == tab.id)
        ).scalar_one() + 1

        item = LineItem(
            tab_id=tab.id,
            line_number=next_number,
            description=description,
            quantity=qty,
            unit_price=price,
            total=line_item_total(qty, price),
            item_metadata=dict(metadata) if metadata else None,
            billing_group_id=group.id if group else None,
            created_by_id=actor_id,
        )
        self.session.add(item)
        self.session.flush()

        if group is not None:
            self._ledger.recompute_balance(group.id)

        logger.info(
            "line_item_added",
            extra={
                "tab_id": str(tab.id),
                "line_item_id": str(item.id),
                "total": str(item.total),
            },
        )
        return item

    def create_invoice(
        self,
        invoice_number: str,
        actor_id: UUID,
        tab_id: UUID | None = None,
        customer_name: str | None = None,
        customer_email: str | None = None,
    ) -> Invoice:
        if tab_id is not None:
            self._get_tab(tab_id)
        invoice = Invoice(
            tab_id=tab_id,
            invoice_number=invoice_number,
            customer_name=customer_name,
            customer_email=customer_email,
            created_by_id=actor_id,
        )
        self.session.add(invoice)
        self.session.flush()
        logger.info("invoice_created", extra={"invoice_id": str(invoice.id)})
        return invoice

    def add_invoice_line_item(
        self,
        invoice_id: UUID,
        description: str,
        unit_price: Decimal | int | str,
        actor_id: UUID,
        quantity: Decimal | int | str = 1,
        tax_rate: Decimal | int | str | None = None,
        discount_percentage: Decimal | int | str | None = None,
        billing_group_id: UUID | None = None,
    ) -> InvoiceLineItem:
        """
        Append a charge to an invoice, optionally billed to a group.

        The group must belong to the invoice itself or to the invoice's tab.
        """
        invoice = self.session.get(Invoice, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        qty = _amount(quantity, "quantity")
        price = _amount(unit_price, "unit_price")
        _check_amounts(qty, price)
        tax = _amount(tax_rate, "tax_rate") if tax_rate is not None else None
        discount = (
            _amount(discount_percentage, "discount_percentage")
            if discount_percentage is not None
            else None
        )
        if discount is not None and not 0 <= discount <= 100:
            raise LineItemValidationError(
                "discount_percentage", f"must be between 0 and 100, got {discount}"
            )

        group = None
        if billing_group_id is not None:
            group = self._target_group(billing_group_id)
            on_invoice = group.invoice_id == invoice.id
            on_tab = invoice.tab_id is not None and group.tab_id == invoice.tab_id
            if not (on_invoice or on_tab):
                raise CrossTabAssignmentError(
                    line_item_id="(new invoice line)",
                    billing_group_id=str(group.id),
                    item_tab_id=str(invoice.tab_id),
                    group_tab_id=str(group.tab_id) if group.tab_id else None,
                )

        next_number = self.session.execute(
            select(func.coalesce(func.max(InvoiceLineItem.line_number), 0))
            .where(InvoiceLineItem.invoice_id == invoice.id)
        ).scalar_one() + 1

        line = InvoiceLineItem(
            invoice_id=invoice.id,
            line_number=next_number,
            description=description,
            quantity=qty,
            unit_price=price,
            tax_rate=tax,
            discount_percentage=discount,
            billing_group_id=group.id if group else None,
            created_by_id=actor_id,
        )
        self.session.add(line)
        self.session.flush()

        if group is not None:
            self._ledger.recompute_balance(group.id)

        logger.info(
            "invoice_line_item_added",
            extra={"invoice_id": str(invoice.id), "invoice_line_item_id": str(line.id)},
        )
        return line
