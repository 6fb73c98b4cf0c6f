"""
Configuration schema (``billing_config.schema``).

Frozen dataclasses for every configuration artifact.  Parsed once from
YAML / environment and never mutated afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class TemplateGroup:
    """One billing group a template creates."""

    name: str
    group_type: str = "standard"


@dataclass(frozen=True)
class GroupTemplate:
    """
    Named starter set of billing groups (e.g. ``hotel``).

    Contract:
        ``groups`` is non-empty and ordered; groups are created in this
        order, so creation order (and therefore the default-group fallback)
        follows the YAML listing.
    """

    name: str
    description: str
    groups: tuple[TemplateGroup, ...]


@dataclass(frozen=True)
class TemplateCatalogue:
    """All group templates plus the name used when none is requested."""

    templates: dict[str, GroupTemplate]
    default_template: str
    checksum: str

    def names(self) -> list[str]:
        return sorted(self.templates)


@dataclass(frozen=True)
class BillingSettings:
    """
    Runtime settings for the billing kernel.

    Guarantees:
        - ``min_rule_priority <= default_rule_priority <= max_rule_priority``
          (checked by ``billing_config.settings.load_settings``).
        - ``money_quantum`` is a positive Decimal (cents by default).
    """

    database_url: str = "sqlite+pysqlite:///:memory:"
    echo_sql: bool = False
    log_level: str = "INFO"
    timezone: str = "UTC"
    default_rule_priority: int = 100
    min_rule_priority: int = 1
    max_rule_priority: int = 1000
    money_quantum: Decimal = field(default=Decimal("0.01"))
    group_number_prefix: str = "BG"
