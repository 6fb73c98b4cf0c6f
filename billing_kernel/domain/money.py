"""
Money arithmetic for billing group balances.

Responsibility:
    The charge formulas the balance ledger re-derives from: a tab line
    item's stored total, and an invoice line item's tax- and
    discount-adjusted charge.  Quantisation to the money quantum happens
    once, on the aggregate, never per line.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Decimal-only arithmetic.  Floats, NaN and infinities are rejected.
    - ROUND_HALF_UP at the configured quantum (0.01 by default).
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")


def to_decimal(value: Decimal | int | str, field: str = "amount") -> Decimal:
    """
    Coerce an int/str/Decimal to a finite Decimal.

    Raises:
        TypeError: value is a float or bool.
        ValueError: value does not parse, or is NaN or infinite.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"{field} must be Decimal, int or str, not {type(value).__name__}")
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except InvalidOperation as exc:
            raise ValueError(f"{field} is not a number: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"{field} must be finite, got {amount}")
    return amount


def quantize_money(amount: Decimal, quantum: Decimal = CENT) -> Decimal:
    return amount.quantize(quantum, rounding=ROUND_HALF_UP)


def line_item_total(quantity: Decimal, unit_price: Decimal) -> Decimal:
    return quantity * unit_price


def invoice_line_charge(
    quantity: Decimal,
    unit_price: Decimal,
    tax_rate: Decimal | None = None,
    discount_percentage: Decimal | None = None,
) -> Decimal:
    """
    ``quantity * unit_price * (1 + tax_rate/100) * (1 - discount/100)``.

    Rates are percentages; a missing rate counts as zero.
    """
    tax = tax_rate or ZERO
    discount = discount_percentage or ZERO
    return quantity * unit_price * (1 + tax / HUNDRED) * (1 - discount / HUNDRED)


def sum_money(amounts: Iterable[Decimal], quantum: Decimal = CENT) -> Decimal:
    """Sum then quantise once."""
    return quantize_money(sum(amounts, ZERO), quantum)
