"""Tests for workspace configuration."""

import pytest

from pillar.config import (
    Config,
    config_path,
    load_config,
    parse_config,
    render_config,
    write_config,
)
from pillar.errors import NotFound, ValidationError
from pillar.models import Priority, Status


class TestParseConfig:
    """Test config.toml parsing."""

    def test_full_config(self):
        config = parse_config(
            '[workspace]\nversion = "0.1.0"\nbase_directory = "data"\n\n'
            '[defaults]\npriority = "high"\nstatus = "todo"\n'
        )
        assert config.base_directory == "data"
        assert config.default_priority is Priority.HIGH
        assert config.default_status is Status.TODO

    def test_old_config_without_optional_keys(self):
        """Test configs missing base_directory and [defaults] still load."""
        config = parse_config('[workspace]\nversion = "0.1.0"\n')
        assert config == Config()

    def test_invalid_toml(self):
        with pytest.raises(ValidationError, match="config.toml"):
            parse_config("[workspace\nversion = ")

    def test_invalid_default_priority(self):
        with pytest.raises(ValidationError, match="priority"):
            parse_config('[defaults]\npriority = "critical"\n')

    def test_render_round_trip(self):
        config = Config(base_directory="projects", default_priority=Priority.LOW)
        assert parse_config(render_config(config)) == config


class TestLoadConfig:
    """Test loading config from a workspace root."""

    def test_not_a_workspace(self, tmp_path):
        with pytest.raises(NotFound):
            load_config(tmp_path)

    def test_marker_without_file(self, tmp_path):
        """Test a bare .pillar directory gets the defaults."""
        (tmp_path / ".pillar").mkdir()
        assert load_config(tmp_path) == Config()

    def test_write_then_load(self, tmp_path):
        config = Config(base_directory="data")
        path = write_config(tmp_path, config)
        assert path == config_path(tmp_path)
        assert load_config(tmp_path) == config
