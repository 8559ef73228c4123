"""Tests for settings, mapping configuration loading and logging setup."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest
import structlog

from src.crmsync.config import Environment, Settings
from src.crmsync.core.exceptions import ConfigurationError
from src.crmsync.core.logging import configure_structlog
from src.crmsync.sync.schemas import CustomField, MappingConfig

from tests.sync_factories import INDIVIDUAL, make_mapping_config


def _make_settings(**overrides) -> Settings:
    defaults = {"MAPPING_CONFIG_PATH": "", "ENVIRONMENT": Environment.development}
    defaults.update(overrides)
    return Settings(**defaults)


# ── Mapping configuration ──────────────────────────────────────────────────


class TestLoadMappingConfig:
    def test_no_path_gives_empty_config(self):
        config = _make_settings().load_mapping_config()

        assert config == MappingConfig()

    def test_loads_json_document(self, tmp_path):
        path = tmp_path / "mapping.json"
        path.write_text(make_mapping_config().model_dump_json(), encoding="utf-8")

        config = _make_settings(MAPPING_CONFIG_PATH=str(path)).load_mapping_config()

        assert config.mapped_type_for_b("person") == INDIVIDUAL
        selectors = {m.selector: m for m in config.fields_for(INDIVIDUAL)}
        assert selectors["field_photo"].target == CustomField(field_id=9)

    def test_type_mapped_twice_is_configuration_error(self, tmp_path):
        path = tmp_path / "mapping.json"
        path.write_text(
            json.dumps(
                {
                    "mapped_types": [
                        {"a_type": "Individual", "b_type": "person"},
                        {"a_type": "Individual", "b_type": "member"},
                    ]
                }
            ),
            encoding="utf-8",
        )

        with pytest.raises(ConfigurationError) as exc_info:
            _make_settings(MAPPING_CONFIG_PATH=str(path)).load_mapping_config()

        assert exc_info.value.operation == "load_mapping_config"
        assert exc_info.value.params["path"] == str(path)

    def test_unknown_field_kind_is_configuration_error(self, tmp_path):
        path = tmp_path / "mapping.json"
        path.write_text(
            json.dumps(
                {
                    "mapped_types": [{"a_type": "Individual", "b_type": "person"}],
                    "fields": {
                        "Individual:person": [
                            {"selector": "field_x", "target": {"kind": "magic", "code": "x"}}
                        ]
                    },
                }
            ),
            encoding="utf-8",
        )

        with pytest.raises(ConfigurationError, match="Invalid mapping configuration"):
            _make_settings(MAPPING_CONFIG_PATH=str(path)).load_mapping_config()


# ── Logging ────────────────────────────────────────────────────────────────


class TestConfigureStructlog:
    @pytest.fixture(autouse=True)
    def _reset_structlog(self):
        yield
        structlog.reset_defaults()

    def test_production_renders_json(self):
        with patch(
            "src.crmsync.core.logging.get_settings",
            return_value=_make_settings(ENVIRONMENT=Environment.production),
        ):
            configure_structlog()

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_development_renders_console(self):
        with patch("src.crmsync.core.logging.get_settings", return_value=_make_settings()):
            configure_structlog()

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
