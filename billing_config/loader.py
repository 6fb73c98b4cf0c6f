"""
Template Loader (``billing_config.loader``).

Responsibility
--------------
Loads the billing-group template catalogue from YAML and parses it into
frozen ``billing_config.schema`` dataclasses.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Structurally invalid catalogue  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import GroupTemplate, TemplateCatalogue, TemplateGroup

DEFAULT_TEMPLATES_PATH = Path(__file__).parent / "templates.yaml"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """Deterministic SHA-256 of a parsed YAML document."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_template(name: str, data: dict[str, Any]) -> GroupTemplate:
    """
    Parse a ``GroupTemplate`` from a dict.

    Raises:
        KeyError: if ``groups`` or a group ``name`` is missing.
        ValueError: if the group list is empty or a name is blank.
    """
    raw_groups = data["groups"]
    if not raw_groups:
        raise ValueError(f"Template '{name}' defines no groups")

    groups = []
    for raw in raw_groups:
        group_name = str(raw["name"]).strip()
        if not group_name:
            raise ValueError(f"Template '{name}' has a group with a blank name")
        groups.append(
            TemplateGroup(
                name=group_name,
                group_type=str(raw.get("type", "standard")),
            )
        )

    return GroupTemplate(
        name=name,
        description=str(data.get("description", "")),
        groups=tuple(groups),
    )


def parse_catalogue(data: dict[str, Any]) -> TemplateCatalogue:
    """
    Parse the whole template catalogue.

    Raises:
        KeyError: if ``templates`` is missing.
        ValueError: if ``default_template`` names an unknown template.
    """
    templates = {
        name: parse_template(name, body)
        for name, body in data["templates"].items()
    }
    default_template = data.get("default_template", "general")
    if default_template not in templates:
        raise ValueError(
            f"default_template '{default_template}' is not a defined template"
        )
    return TemplateCatalogue(
        templates=templates,
        default_template=default_template,
        checksum=compute_checksum(data),
    )


def load_templates(path: Path | None = None) -> TemplateCatalogue:
    """Load and parse the template catalogue (defaults to the bundled file)."""
    return parse_catalogue(load_yaml_file(path or DEFAULT_TEMPLATES_PATH))
