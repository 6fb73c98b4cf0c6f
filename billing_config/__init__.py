"""
billing_config -- single public entrypoint for billing configuration.

Responsibility:
    Provides runtime settings (``get_settings()``) and the billing-group
    template catalogue (``get_templates()`` / ``get_template()``).  No
    other component reads environment variables or YAML files.

Architecture position:
    Configuration.  ``billing_kernel`` services receive a
    ``BillingSettings`` / ``TemplateCatalogue`` from here; this package
    never imports from ``billing_kernel``.

Failure modes:
    - ``ValueError`` -- invalid environment values or catalogue structure.
    - ``KeyError`` -- unknown template name passed to ``get_template()``.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from billing_config.loader import load_templates
from billing_config.schema import (
    BillingSettings,
    GroupTemplate,
    TemplateCatalogue,
    TemplateGroup,
)
from billing_config.settings import load_settings

_logger = logging.getLogger("billing_kernel.config")

__all__ = [
    "BillingSettings",
    "GroupTemplate",
    "TemplateCatalogue",
    "TemplateGroup",
    "get_settings",
    "get_template",
    "get_templates",
    "load_settings",
    "load_templates",
]


@lru_cache(maxsize=1)
def get_settings() -> BillingSettings:
    """Settings from the process environment, read once."""
    settings = load_settings()
    _logger.info(
        "billing_settings_loaded",
        extra={
            "timezone": settings.timezone,
            "default_rule_priority": settings.default_rule_priority,
            "money_quantum": str(settings.money_quantum),
        },
    )
    return settings


@lru_cache(maxsize=1)
def get_templates() -> TemplateCatalogue:
    """The bundled template catalogue, parsed once."""
    catalogue = load_templates()
    _logger.info(
        "billing_templates_loaded",
        extra={
            "templates": catalogue.names(),
            "checksum": catalogue.checksum,
        },
    )
    return catalogue


def get_template(name: str | None = None) -> GroupTemplate:
    """
    Look up a template by name; ``None`` selects the catalogue default.

    Raises:
        KeyError: if the name is not in the catalogue.
    """
    catalogue = get_templates()
    return catalogue.templates[name or catalogue.default_template]
