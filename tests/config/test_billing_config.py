"""
Tests for billing_config: environment settings and the group template
catalogue.
"""

from decimal import Decimal

import pytest
import yaml

from billing_config import (
    BillingSettings,
    get_settings,
    get_template,
    get_templates,
    load_settings,
    load_templates,
)
from billing_config.loader import compute_checksum, parse_catalogue


class TestLoadSettings:
    def test_defaults_from_empty_environment(self):
        settings = load_settings({})

        assert settings == BillingSettings()
        assert settings.timezone == "UTC"
        assert settings.default_rule_priority == 100
        assert settings.money_quantum == Decimal("0.01")
        assert settings.group_number_prefix == "BG"

    def test_values_read_from_environment(self):
        settings = load_settings({
            "BILLING_TIMEZONE": "Europe/Lisbon",
            "BILLING_ECHO_SQL": "Yes",
            "BILLING_LOG_LEVEL": "debug",
            "BILLING_DEFAULT_RULE_PRIORITY": "50",
            "BILLING_MONEY_QUANTUM": "0.001",
            "BILLING_GROUP_NUMBER_PREFIX": "GRP",
        })

        assert settings.timezone == "Europe/Lisbon"
        assert settings.echo_sql is True
        assert settings.log_level == "DEBUG"
        assert settings.default_rule_priority == 50
        assert settings.money_quantum == Decimal("0.001")
        assert settings.group_number_prefix == "GRP"

    @pytest.mark.parametrize("env, fragment", [
        ({"BILLING_TIMEZONE": "Nowhere/Atlantis"}, "BILLING_TIMEZONE"),
        ({"BILLING_MONEY_QUANTUM": "cents"}, "BILLING_MONEY_QUANTUM"),
        ({"BILLING_MONEY_QUANTUM": "0"}, "BILLING_MONEY_QUANTUM"),
        ({"BILLING_MONEY_QUANTUM": "NaN"}, "BILLING_MONEY_QUANTUM"),
        ({"BILLING_MONEY_QUANTUM": "Infinity"}, "BILLING_MONEY_QUANTUM"),
        ({"BILLING_DEFAULT_RULE_PRIORITY": "high"}, "BILLING_DEFAULT_RULE_PRIORITY"),
        ({"BILLING_DEFAULT_RULE_PRIORITY": "2000"}, "inconsistent"),
        ({"BILLING_MIN_RULE_PRIORITY": "10", "BILLING_DEFAULT_RULE_PRIORITY": "5"}, "inconsistent"),
    ])
    def test_invalid_values(self, env, fragment):
        with pytest.raises(ValueError, match=fragment):
            load_settings(env)

    def test_get_settings_is_cached(self, monkeypatch):
        get_settings.cache_clear()
        monkeypatch.setenv("BILLING_TIMEZONE", "Asia/Tokyo")
        try:
            first = get_settings()
            monkeypatch.setenv("BILLING_TIMEZONE", "UTC")
            assert get_settings() is first
            assert first.timezone == "Asia/Tokyo"
        finally:
            get_settings.cache_clear()


class TestTemplateCatalogue:
    def test_bundled_templates(self, template_catalogue):
        assert template_catalogue.names() == ["corporate", "general", "hotel", "restaurant"]
        assert template_catalogue.default_template == "general"

        counts = {name: len(t.groups) for name, t in template_catalogue.templates.items()}
        assert counts == {"hotel": 4, "restaurant": 3, "corporate": 2, "general": 1}

    def test_group_order_follows_listing(self, template_catalogue):
        hotel = template_catalogue.templates["hotel"]
        assert hotel.groups[0].name == "Room Charges"
        assert hotel.groups[-1].name == "Incidentals"

    def test_checksum_is_stable(self, template_catalogue):
        assert load_templates().checksum == template_catalogue.checksum
        assert len(template_catalogue.checksum) == 64

    def test_get_template_default_and_unknown(self):
        assert get_template().name == "general"
        assert get_template("restaurant").groups[1].name == "Beverages"
        with pytest.raises(KeyError):
            get_template("casino")
        assert get_templates() is get_templates()

    def test_custom_file(self, tmp_path):
        path = tmp_path / "templates.yaml"
        path.write_text(yaml.safe_dump({
            "default_template": "spa",
            "templates": {
                "spa": {"groups": [{"name": "Treatments"}, {"name": "Retail", "type": "retail"}]},
            },
        }))

        catalogue = load_templates(path)

        spa = catalogue.templates["spa"]
        assert [(g.name, g.group_type) for g in spa.groups] == [
            ("Treatments", "standard"), ("Retail", "retail"),
        ]
        assert spa.description == ""

    def test_checksum_ignores_key_order(self):
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})


class TestCatalogueValidation:
    def test_unknown_default(self):
        with pytest.raises(ValueError, match="default_template"):
            parse_catalogue({
                "default_template": "missing",
                "templates": {"x": {"groups": [{"name": "X"}]}},
            })

    def test_empty_group_list(self):
        with pytest.raises(ValueError, match="defines no groups"):
            parse_catalogue({"templates": {"general": {"groups": []}}})

    def test_blank_group_name(self):
        with pytest.raises(ValueError, match="blank name"):
            parse_catalogue({"templates": {"general": {"groups": [{"name": "  "}]}}})

    def test_missing_templates_key(self):
        with pytest.raises(KeyError):
            parse_catalogue({"default_template": "general"})

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("templates: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_templates(path)
