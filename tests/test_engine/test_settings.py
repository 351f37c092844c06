"""Tests for engine.settings module."""
from __future__ import annotations

import pytest
import yaml
from pydantic import ValidationError

from engine.settings import EngineSettings, load_settings


class TestLoadSettings:
    """Tests for settings loading and overrides."""

    def test_defaults_from_config(self):
        settings = EngineSettings()
        assert settings.init_max_attempts == 3
        assert settings.execution_timeout_ms == 60000
        assert settings.execution_max_retries == 2
        assert 'psych' in settings.core_packages
        assert settings.optional_libraries == ['lavaan']

    def test_yaml_overrides(self, temp_dir):
        path = temp_dir / 'engine.yml'
        path.write_text(yaml.safe_dump({
            'execution_timeout_ms': 5000,
            'package_repositories': {'CRAN': 'https://example.org/cran'},
        }))

        settings = load_settings(path)

        assert settings.execution_timeout_ms == 5000
        assert settings.package_repositories == {'CRAN': 'https://example.org/cran'}

    def test_keyword_overrides_win(self, temp_dir):
        path = temp_dir / 'engine.yml'
        path.write_text(yaml.safe_dump({'execution_max_retries': 5}))

        settings = load_settings(path, execution_max_retries=1)

        assert settings.execution_max_retries == 1

    def test_empty_yaml(self, temp_dir):
        path = temp_dir / 'engine.yml'
        path.write_text('')
        assert load_settings(path).init_max_attempts == 3

    def test_non_mapping_yaml_rejected(self, temp_dir):
        path = temp_dir / 'engine.yml'
        path.write_text('- a\n- b\n')
        with pytest.raises(ValueError, match='mapping'):
            load_settings(path)

    def test_missing_file(self, temp_dir):
        with pytest.raises(FileNotFoundError):
            load_settings(temp_dir / 'absent.yml')

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            EngineSettings(init_max_attempts=0)
        with pytest.raises(ValidationError):
            EngineSettings(execution_timeout_ms=-1)
