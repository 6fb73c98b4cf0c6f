"""
Rule model -- tagged condition dimensions and their validation.

Responsibility:
    Defines the declarative shape of a billing group rule: the action it
    prescribes and one optional condition per dimension (category, amount,
    time window, day of week, metadata).  Parses the JSON stored on a rule
    row into typed, immutable condition objects and rejects malformed input
    at rule-creation time.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    Consumed by the evaluator, the billing group service (validation before
    persistence) and the selector (rule previews).

Invariants enforced:
    - Amount bounds are non-negative and ``min <= max`` when both are set.
    - Time bounds are ``HH:MM`` 24-hour strings.
    - Days are integers 0-6 with 0 = Sunday.
    - A dimension that is absent means "don't care".  An empty category or
      day list also means "don't care".

Failure modes:
    - RuleValidationError for every malformed dimension, unknown dimension
      key, unknown action or out-of-range priority.

Wire shape (JSON column ``billing_group_rules.conditions``):
    {
        "category": ["food", "beverage"],
        "amount": {"min": "0", "max": "50.00"},
        "time": {"start": "18:00", "end": "23:00"},
        "dayOfWeek": [5, 6],
        "metadata": {"roomNumber": "101"}
    }
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import time
from decimal import Decimal, InvalidOperation
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from billing_kernel.exceptions import RuleValidationError

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

# Accepted JSON keys -> RuleConditions attribute
_DIMENSION_KEYS = {
    "category": "category",
    "amount": "amount",
    "time": "time",
    "dayOfWeek": "day_of_week",
    "day_of_week": "day_of_week",
    "metadata": "metadata",
}


class RuleAction(str, Enum):
    """
    What a matching rule prescribes.

    Only AUTO_ASSIGN moves the line item.  The other actions are surfaced to
    the caller, which owns approval queues, notifications and refusals.
    """

    AUTO_ASSIGN = "auto_assign"
    REQUIRE_APPROVAL = "require_approval"
    NOTIFY = "notify"
    REJECT = "reject"


@dataclass(frozen=True)
class CategoryCondition:
    """Item category (``metadata["category"]``) must be one of ``categories``."""

    categories: frozenset[str]

    def to_wire(self) -> list[str]:
        return sorted(self.categories)


@dataclass(frozen=True)
class AmountCondition:
    """Item total must lie in ``[min, max]``; either bound may be open."""

    min: Decimal | None = None
    max: Decimal | None = None

    def to_wire(self) -> dict[str, str]:
        wire = {}
        if self.min is not None:
            wire["min"] = str(self.min)
        if self.max is not None:
            wire["max"] = str(self.max)
        return wire


@dataclass(frozen=True)
class TimeWindowCondition:
    """
    Wall-clock window at minute resolution, inclusive at both ends.

    A window whose start is later than its end wraps past midnight.
    """

    start: time | None = None
    end: time | None = None

    @property
    def wraps_midnight(self) -> bool:
        return self.start is not None and self.end is not None and self.start > self.end

    def to_wire(self) -> dict[str, str]:
        wire = {}
        if self.start is not None:
            wire["start"] = self.start.strftime("%H:%M")
        if self.end is not None:
            wire["end"] = self.end.strftime("%H:%M")
        return wire


@dataclass(frozen=True)
class DayOfWeekCondition:
    """Day of the week (0 = Sunday ... 6 = Saturday) must be one of ``days``."""

    days: frozenset[int]

    def to_wire(self) -> list[int]:
        return sorted(self.days)


@dataclass(frozen=True)
class MetadataCondition:
    """Every expected key must exist on the item metadata with an equal value."""

    expected: Mapping[str, Any]

    def to_wire(self) -> dict[str, Any]:
        return dict(self.expected)


@dataclass(frozen=True)
class RuleConditions:
    """
    Conjunction of optional condition dimensions.

    Guarantees:
        - Each present dimension is already validated.
        - A condition set with no dimensions matches every item.
    """

    category: CategoryCondition | None = None
    amount: AmountCondition | None = None
    time: TimeWindowCondition | None = None
    day_of_week: DayOfWeekCondition | None = None
    metadata: MetadataCondition | None = None

    @property
    def is_empty(self) -> bool:
        return all(
            dim is None
            for dim in (self.category, self.amount, self.time, self.day_of_week, self.metadata)
        )

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> RuleConditions:
        """Parse and validate the JSON form.  ``None`` means no conditions."""
        if raw is None:
            return cls()
        if not isinstance(raw, Mapping):
            raise RuleValidationError("conditions", "must be an object")

        unknown = sorted(k for k in raw if k not in _DIMENSION_KEYS)
        if unknown:
            raise RuleValidationError("conditions", f"unknown condition keys: {unknown}")
        if "dayOfWeek" in raw and "day_of_week" in raw:
            raise RuleValidationError("dayOfWeek", "given twice (dayOfWeek and day_of_week)")

        parsed: dict[str, Any] = {}
        for key, value in raw.items():
            if value is None:
                continue
            attr = _DIMENSION_KEYS[key]
            parsed[attr] = _PARSERS[attr](value)
        return cls(**parsed)

    def to_dict(self) -> dict[str, Any]:
        """JSON form for persistence, omitting absent dimensions."""
        wire: dict[str, Any] = {}
        if self.category is not None:
            wire["category"] = self.category.to_wire()
        if self.amount is not None:
            wire["amount"] = self.amount.to_wire()
        if self.time is not None:
            wire["time"] = self.time.to_wire()
        if self.day_of_week is not None:
            wire["dayOfWeek"] = self.day_of_week.to_wire()
        if self.metadata is not None:
            wire["metadata"] = self.metadata.to_wire()
        return wire


def _parse_category(value: Any) -> CategoryCondition:
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise RuleValidationError("category", "must be a list of strings")
    for entry in value:
        if not isinstance(entry, str) or not entry.strip():
            raise RuleValidationError("category", f"invalid category {entry!r}")
    return CategoryCondition(categories=frozenset(value))


def _parse_amount_bound(name: str, value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise RuleValidationError(f"amount.{name}", "must be a number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise RuleValidationError(f"amount.{name}", f"not a number: {value!r}") from None
    if not amount.is_finite():
        raise RuleValidationError(f"amount.{name}", "must be finite")
    if amount < 0:
        raise RuleValidationError(f"amount.{name}", "must not be negative")
    return amount


def _parse_amount(value: Any) -> AmountCondition:
    if not isinstance(value, Mapping):
        raise RuleValidationError("amount", "must be an object with min and/or max")
    unknown = sorted(k for k in value if k not in ("min", "max"))
    if unknown:
        raise RuleValidationError("amount", f"unknown keys: {unknown}")
    low = _parse_amount_bound("min", value.get("min"))
    high = _parse_amount_bound("max", value.get("max"))
    if low is not None and high is not None and low > high:
        raise RuleValidationError("amount", f"min {low} is greater than max {high}")
    return AmountCondition(min=low, max=high)


def parse_hhmm(field: str, value: Any) -> time:
    """Parse a ``HH:MM`` 24-hour string."""
    if not isinstance(value, str):
        raise RuleValidationError(field, "must be a HH:MM string")
    match = _HHMM.match(value)
    if match is None:
        raise RuleValidationError(field, f"invalid time {value!r}, expected HH:MM")
    return time(int(match.group(1)), int(match.group(2)))


def _parse_time(value: Any) -> TimeWindowCondition:
    if not isinstance(value, Mapping):
        raise RuleValidationError("time", "must be an object with start and/or end")
    unknown = sorted(k for k in value if k not in ("start", "end"))
    if unknown:
        raise RuleValidationError("time", f"unknown keys: {unknown}")
    start = value.get("start")
    end = value.get("end")
    return TimeWindowCondition(
        start=parse_hhmm("time.start", start) if start is not None else None,
        end=parse_hhmm("time.end", end) if end is not None else None,
    )


def _parse_days(value: Any) -> DayOfWeekCondition:
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise RuleValidationError("dayOfWeek", "must be a list of integers 0-6")
    for day in value:
        if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
            raise RuleValidationError("dayOfWeek", f"invalid day {day!r}, expected 0-6")
    return DayOfWeekCondition(days=frozenset(value))


def _parse_metadata(value: Any) -> MetadataCondition:
    if not isinstance(value, Mapping):
        raise RuleValidationError("metadata", "must be an object")
    for key in value:
        if not isinstance(key, str):
            raise RuleValidationError("metadata", f"keys must be strings, got {key!r}")
    return MetadataCondition(expected=MappingProxyType(dict(value)))


_PARSERS = {
    "category": _parse_category,
    "amount": _parse_amount,
    "time": _parse_time,
    "day_of_week": _parse_days,
    "metadata": _parse_metadata,
}


def validate_conditions(raw: Mapping[str, Any] | RuleConditions | None) -> RuleConditions:
    """Accept either the JSON form or an already-typed condition set."""
    if isinstance(raw, RuleConditions):
        return raw
    return RuleConditions.from_dict(raw)


def validate_priority(priority: Any, minimum: int = 1, maximum: int = 1000) -> int:
    """Priority is an integer in ``[minimum, maximum]``; lower is evaluated first."""
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise RuleValidationError("priority", f"must be an integer, got {priority!r}")
    if not minimum <= priority <= maximum:
        raise RuleValidationError(
            "priority", f"{priority} outside allowed range {minimum}-{maximum}"
        )
    return priority


def parse_action(action: Any) -> RuleAction:
    if isinstance(action, RuleAction):
        return action
    try:
        return RuleAction(action)
    except ValueError:
        allowed = ", ".join(a.value for a in RuleAction)
        raise RuleValidationError(
            "action", f"unknown action {action!r}, expected one of: {allowed}"
        ) from None
