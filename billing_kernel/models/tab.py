"""
Module: billing_kernel.models.tab
Responsibility: ORM persistence for the tab-side records the billing engine
    consumes: tabs, their line items, invoices, and invoice line items.
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - LineItem.total is stored as quantity * unit_price at write time and is
      the amount rule conditions and balances read.
    - LineItem.billing_group_id is the only link between an item and a
      billing group.  NULL means unassigned.  Groups do not own items.

Failure modes:
    - IntegrityError on a line item whose tab does not exist.
"""

from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UUIDString


class TabStatus(str, Enum):
    """Tab lifecycle.  Only OPEN tabs take new line items."""

    OPEN = "open"
    CLOSED = "closed"


class Tab(TrackedBase):
    """
    A bill in progress for one customer.

    The customer identity seeds the personal billing group created when
    billing groups are first enabled.
    """

    __tablename__ = "tabs"

    __table_args__ = (
        Index("idx_tab_status", "status"),
    )

    customer_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    customer_email: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="USD",
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TabStatus.OPEN.value,
    )

    def __repr__(self) -> str:
        return f"<Tab {self.id} customer={self.customer_name or self.customer_email}>"


class LineItem(TrackedBase):
    """
    One chargeable entry on a tab.

    Guarantees:
        - line_number is unique per tab and gives a stable display order.
        - item_metadata may carry a ``category`` key and arbitrary custom
          keys consulted by rule conditions.
        - assigned_rule_id records the rule that placed the item, if any.
    """

    __tablename__ = "line_items"

    __table_args__ = (
        Index("idx_line_item_tab", "tab_id"),
        Index("idx_line_item_billing_group", "billing_group_id"),
    )

    tab_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tabs.id"),
        nullable=False,
    )

    line_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    description: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )

    quantity: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("1"),
    )

    unit_price: Mapped[Decimal] = mapped_column(
        nullable=False,
    )

    total: Mapped[Decimal] = mapped_column(
        nullable=False,
    )

    # Named item_metadata to avoid the SQLAlchemy reserved name
    item_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
    )

    billing_group_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("billing_groups.id"),
        nullable=True,
    )

    assigned_rule_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("billing_group_rules.id", ondelete="SET NULL"),
        nullable=True,
    )

    @property
    def category(self) -> str | None:
        return (self.item_metadata or {}).get("category")

    def __repr__(self) -> str:
        return f"<LineItem {self.id} #{self.line_number} total={self.total}>"


class Invoice(TrackedBase):
    """An invoice raised against a tab (or standalone)."""

    __tablename__ = "invoices"

    __table_args__ = (
        Index("idx_invoice_tab", "tab_id"),
    )

    tab_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("tabs.id"),
        nullable=True,
    )

    invoice_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
    )

    customer_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    customer_email: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Invoice {self.invoice_number}>"


class InvoiceLineItem(TrackedBase):
    """
    A charge on an invoice.

    Its contribution to a billing group balance is
    ``quantity * unit_price * (1 + tax_rate/100) * (1 - discount_percentage/100)``.
    """

    __tablename__ = "invoice_line_items"

    __table_args__ = (
        Index("idx_invoice_line_item_invoice", "invoice_id"),
        Index("idx_invoice_line_item_billing_group", "billing_group_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("invoices.id"),
        nullable=False,
    )

    line_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    description: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )

    quantity: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("1"),
    )

    unit_price: Mapped[Decimal] = mapped_column(
        nullable=False,
    )

    # Percentages, e.g. 8.25 for 8.25%
    tax_rate: Mapped[Decimal | None] = mapped_column(
        nullable=True,
    )

    discount_percentage: Mapped[Decimal | None] = mapped_column(
        nullable=True,
    )

    billing_group_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("billing_groups.id"),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<InvoiceLineItem {self.id} #{self.line_number}>"
