"""Selectors for the billing kernel (read side)."""

from billing_kernel.selectors.billing_selector import BillingSelector

__all__ = [
    "BillingSelector",
]
