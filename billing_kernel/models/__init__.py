"""ORM models for the billing kernel."""

from billing_kernel.models.billing_group import (
    BillingGroup,
    BillingGroupOverride,
    BillingGroupRule,
    BillingGroupStatus,
)
from billing_kernel.models.tab import (
    Invoice,
    InvoiceLineItem,
    LineItem,
    Tab,
    TabStatus,
)

__all__ = [
    "Tab",
    "TabStatus",
    "LineItem",
    "Invoice",
    "InvoiceLineItem",
    "BillingGroup",
    "BillingGroupStatus",
    "BillingGroupRule",
    "BillingGroupOverride",
]
