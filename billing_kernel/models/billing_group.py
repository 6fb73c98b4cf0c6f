"""
Module: billing_kernel.models.billing_group
Responsibility: ORM persistence for billing groups (payer buckets within a
    tab or invoice), their prioritized assignment rules, and the append-only
    override audit trail of manual assignments.
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - A billing group belongs to exactly one tab or one invoice
      (ck_billing_group_parent).
    - At most one payer identity per group (ck_billing_group_single_payer).
    - deposit_applied <= deposit_amount whenever a deposit is set
      (ck_billing_group_deposit_cap).
    - current_balance is written only by the balance ledger, which
      re-derives it from the items pointing at the group.
    - BillingGroupOverride rows are append-only (db/immutability.py).

Failure modes:
    - IntegrityError when a check constraint above is violated.
    - ImmutabilityViolationError on UPDATE/DELETE of an override row.

Audit relevance:
    The override table explains every manual move of a line item between
    groups: who, from where, to where, why, and which rule was bypassed.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import Base, TrackedBase, UUIDString


class BillingGroupStatus(str, Enum):
    """ACTIVE groups accept items.  CLOSED groups are historical only."""

    ACTIVE = "active"
    CLOSED = "closed"


class BillingGroup(TrackedBase):
    """
    One payer bucket within a tab or invoice.

    Guarantees:
        - group_number is globally unique and human readable (``BG-000042``).
        - sequence is the creation order used by the default-group fallback.
        - deposit_remaining and credit_available are derived, never stored.

    Non-goals:
        - Does NOT own its line items.  Items point at the group.
    """

    __tablename__ = "billing_groups"

    __table_args__ = (
        CheckConstraint(
            "(tab_id IS NOT NULL AND invoice_id IS NULL) "
            "OR (tab_id IS NULL AND invoice_id IS NOT NULL)",
            name="ck_billing_group_parent",
        ),
        CheckConstraint(
            "payer_email IS NULL OR payer_organization_id IS NULL",
            name="ck_billing_group_single_payer",
        ),
        CheckConstraint(
            "deposit_amount IS NULL OR deposit_applied <= deposit_amount",
            name="ck_billing_group_deposit_cap",
        ),
        CheckConstraint(
            "deposit_applied >= 0",
            name="ck_billing_group_deposit_applied_non_negative",
        ),
        Index("idx_billing_group_tab", "tab_id"),
        Index("idx_billing_group_invoice", "invoice_id"),
        Index("idx_billing_group_status", "status"),
    )

    tab_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("tabs.id"),
        nullable=True,
    )

    invoice_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("invoices.id"),
        nullable=True,
    )

    group_number: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        unique=True,
    )

    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # Open string: personal, standard, corporate, deposit, credit, ...
    group_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="standard",
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=BillingGroupStatus.ACTIVE.value,
    )

    payer_email: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    payer_organization_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    credit_limit: Mapped[Decimal | None] = mapped_column(
        nullable=True,
    )

    deposit_amount: Mapped[Decimal | None] = mapped_column(
        nullable=True,
    )

    deposit_applied: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    current_balance: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    authorization_code: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    po_number: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    # Named group_metadata to avoid the SQLAlchemy reserved name
    group_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
    )

    rules: Mapped[list["BillingGroupRule"]] = relationship(
        back_populates="billing_group",
        cascade="all, delete-orphan",
        order_by="[BillingGroupRule.priority, BillingGroupRule.sequence]",
    )

    @property
    def is_active(self) -> bool:
        return self.status == BillingGroupStatus.ACTIVE.value

    @property
    def deposit_remaining(self) -> Decimal | None:
        if self.deposit_amount is None:
            return None
        return self.deposit_amount - (self.deposit_applied or Decimal("0"))

    @property
    def credit_available(self) -> Decimal | None:
        if self.credit_limit is None:
            return None
        return self.credit_limit - (self.current_balance or Decimal("0"))

    def __repr__(self) -> str:
        return f"<BillingGroup {self.group_number}: {self.name} ({self.group_type})>"


class BillingGroupRule(TrackedBase):
    """
    A named, prioritized condition -> action mapping owned by one group.

    Guarantees:
        - Lower priority values are evaluated first.
        - sequence (creation order) breaks priority ties.
        - conditions holds the validated JSON form of the condition set.
    """

    __tablename__ = "billing_group_rules"

    __table_args__ = (
        Index("idx_billing_group_rule_group", "billing_group_id"),
        Index("idx_billing_group_rule_active", "billing_group_id", "is_active"),
    )

    billing_group_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("billing_groups.id"),
        nullable=False,
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=100,
    )

    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    conditions: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    action: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default="auto_assign",
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    rule_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
    )

    billing_group: Mapped["BillingGroup"] = relationship(
        back_populates="rules",
    )

    def __repr__(self) -> str:
        return f"<BillingGroupRule {self.name} priority={self.priority} action={self.action}>"


class BillingGroupOverride(Base):
    """
    Audit record of a manual (non-rule) assignment.

    Append-only: the ORM refuses UPDATE and DELETE.

    Guarantees:
        - original_group_id is the item's group before the move (NULL when
          the item was unassigned).
        - assigned_group_id is NULL only for an explicit unassignment.
        - rule_id is a historical reference to the bypassed rule; it is not
          a foreign key so that rules can be deleted later.
    """

    __tablename__ = "billing_group_overrides"

    __table_args__ = (
        Index("idx_billing_group_override_item", "line_item_id"),
        Index("idx_billing_group_override_assigned", "assigned_group_id"),
        Index("idx_billing_group_override_original", "original_group_id"),
    )

    line_item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("line_items.id"),
        nullable=False,
    )

    original_group_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("billing_groups.id"),
        nullable=True,
    )

    assigned_group_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("billing_groups.id"),
        nullable=True,
    )

    rule_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    overridden_by: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    # Set from the injected clock, not the database
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<BillingGroupOverride item={self.line_item_id} "
            f"{self.original_group_id} -> {self.assigned_group_id}>"
        )
