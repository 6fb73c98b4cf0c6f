"""
Billing Kernel - billing group rule-assignment engine for tabs

Splits a tab's line items across billing groups (payers) with:
- Prioritized, declarative assignment rules (first match wins)
- Audited manual overrides and all-or-nothing bulk placement
- Balances re-derived from assigned items, never trusted incrementally
- Capped deposit draw-down and derived credit exposure
"""

__version__ = "0.1.0"
