"""
Environment-backed settings (``billing_config.settings``).

The ONLY module that reads environment variables.  Everything else
receives a ``BillingSettings`` instance.

Variables:
    BILLING_DATABASE_URL           SQLAlchemy URL (default in-memory SQLite)
    BILLING_ECHO_SQL               "true" to log SQL statements
    BILLING_LOG_LEVEL              DEBUG / INFO / WARNING / ...
    BILLING_TIMEZONE               IANA zone for time / day-of-week rules
    BILLING_DEFAULT_RULE_PRIORITY  priority given to rules created without one
    BILLING_MIN_RULE_PRIORITY      lowest accepted priority (highest precedence)
    BILLING_MAX_RULE_PRIORITY      highest accepted priority
    BILLING_MONEY_QUANTUM          balance rounding quantum, e.g. "0.01"
    BILLING_GROUP_NUMBER_PREFIX    prefix for human-readable group numbers
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from billing_config.schema import BillingSettings

_TRUTHY = {"1", "true", "yes", "on"}


def _get_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from exc


def load_settings(env: Mapping[str, str] | None = None) -> BillingSettings:
    """
    Build settings from an environment mapping (``os.environ`` by default).

    Raises:
        ValueError: on non-numeric values, unknown time zones, a
            non-positive money quantum, or inconsistent priority bounds.
    """
    env = os.environ if env is None else env
    defaults = BillingSettings()

    timezone = env.get("BILLING_TIMEZONE", defaults.timezone)
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"BILLING_TIMEZONE is not a known zone: {timezone!r}") from exc

    raw_quantum = env.get("BILLING_MONEY_QUANTUM", str(defaults.money_quantum))
    try:
        money_quantum = Decimal(raw_quantum)
    except InvalidOperation as exc:
        raise ValueError(f"BILLING_MONEY_QUANTUM is not a decimal: {raw_quantum!r}") from exc
    if not money_quantum.is_finite() or money_quantum <= 0:
        raise ValueError("BILLING_MONEY_QUANTUM must be a positive, finite decimal")

    settings = BillingSettings(
        database_url=env.get("BILLING_DATABASE_URL", defaults.database_url),
        echo_sql=env.get("BILLING_ECHO_SQL", "").lower() in _TRUTHY,
        log_level=env.get("BILLING_LOG_LEVEL", defaults.log_level).upper(),
        timezone=timezone,
        default_rule_priority=_get_int(
            env, "BILLING_DEFAULT_RULE_PRIORITY", defaults.default_rule_priority
        ),
        min_rule_priority=_get_int(
            env, "BILLING_MIN_RULE_PRIORITY", defaults.min_rule_priority
        ),
        max_rule_priority=_get_int(
            env, "BILLING_MAX_RULE_PRIORITY", defaults.max_rule_priority
        ),
        money_quantum=money_quantum,
        group_number_prefix=env.get(
            "BILLING_GROUP_NUMBER_PREFIX", defaults.group_number_prefix
        ),
    )

    if not (
        settings.min_rule_priority
        <= settings.default_rule_priority
        <= settings.max_rule_priority
    ):
        raise ValueError(
            "Rule priority bounds are inconsistent: "
            f"min={settings.min_rule_priority} "
            f"default={settings.default_rule_priority} "
            f"max={settings.max_rule_priority}"
        )
    return settings
