"""Tests for tenantdb configuration management."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from pydantic import SecretStr

from tenantdb.core.settings import (
    CacheSettings,
    LoggingSettings,
    RedisSettings,
    StorageSettings,
    TenantDBSettings,
    _find_config_file,
    _load_yaml_config,
    _merge_sections,
    generate_example_config,
    get_cached_settings,
    get_settings,
)


class TestTenantDBSettings:
    """Tests for TenantDBSettings class."""

    def test_default_values(self) -> None:
        """Test default configuration values."""
        settings = TenantDBSettings(_skip_file_loading=True)
        assert settings.storage.base_url == "sqlite+aiosqlite:///./data"
        assert settings.storage.db_name_prefix == "tenant_"
        assert settings.storage.connect_timeout == 10
        assert settings.storage.idle_timeout == 1800
        assert settings.storage.sweep_interval == 300
        assert settings.cache.key_prefix == "models"
        assert settings.cache.l1_max_entries == 500
        assert settings.cache.l1_ttl == 300
        assert settings.cache.l1_max_bytes == 100 * 1024 * 1024
        assert settings.cache.l2_ttl == 1800
        assert settings.redis.enabled is True
        assert settings.redis.url == "redis://localhost:6379/0"
        assert settings.logging.level == "INFO"

    def test_custom_values(self) -> None:
        """Test configuration with custom section values."""
        settings = TenantDBSettings(
            _skip_file_loading=True,
            storage={"idle_timeout": 60, "db_name_prefix": "t_"},
            cache={"l1_ttl": 30, "key_prefix": "meta"},
            redis={"enabled": False},
        )
        assert settings.storage.idle_timeout == 60
        assert settings.storage.db_name_prefix == "t_"
        assert settings.cache.l1_ttl == 30
        assert settings.cache.key_prefix == "meta"
        assert settings.redis.enabled is False

    def test_log_level_validation(self) -> None:
        """Test log level validation."""
        settings = TenantDBSettings(_skip_file_loading=True, logging={"level": "debug"})
        assert settings.logging.level == "DEBUG"

        with pytest.raises(ValueError):
            TenantDBSettings(_skip_file_loading=True, logging={"level": "LOUD"})

    def test_timeout_validation(self) -> None:
        """Test timeouts must be positive."""
        with pytest.raises(ValueError):
            TenantDBSettings(_skip_file_loading=True, storage={"connect_timeout": 0})

        with pytest.raises(ValueError):
            TenantDBSettings(_skip_file_loading=True, storage={"idle_timeout": -1})

    def test_secret_str_for_passwords(self) -> None:
        """Test that passwords are stored as SecretStr."""
        settings = TenantDBSettings(
            _skip_file_loading=True,
            storage={"password": "db-secret"},
            redis={"password": "redis-secret"},
        )

        assert isinstance(settings.storage.password, SecretStr)
        assert settings.storage.password.get_secret_value() == "db-secret"
        assert "redis-secret" not in str(settings.redis.password)

    def test_to_dict_masks_secrets(self) -> None:
        """Test to_dict masks sensitive values by default."""
        settings = TenantDBSettings(
            _skip_file_loading=True, storage={"password": "db-secret"}
        )

        result = settings.to_dict()
        assert result["storage"]["password"] == "***"
        assert result["redis"]["password"] is None
        assert set(result) == {"storage", "cache", "redis", "logging"}

    def test_to_dict_reveals_secrets_when_disabled(self) -> None:
        """Test to_dict reveals secrets when mask_secrets=False."""
        settings = TenantDBSettings(
            _skip_file_loading=True, storage={"password": "db-secret"}
        )

        result = settings.to_dict(mask_secrets=False)
        assert result["storage"]["password"] == "db-secret"


class TestEnvironmentVariables:
    """Tests for environment variable loading."""

    def test_env_var_nested_delimiter(self) -> None:
        """Test nested environment variables with TENANTDB_ prefix and __."""
        with patch.dict(
            os.environ,
            {
                "TENANTDB_CACHE__L1_TTL": "120",
                "TENANTDB_STORAGE__BASE_URL": "postgresql+asyncpg://db:5432/",
                "TENANTDB_REDIS__ENABLED": "false",
            },
        ):
            settings = TenantDBSettings(_skip_file_loading=True)
            assert settings.cache.l1_ttl == 120
            assert settings.storage.base_url == "postgresql+asyncpg://db:5432/"
            assert settings.redis.enabled is False

    def test_env_var_secret(self) -> None:
        """Test loading a password from the environment."""
        with patch.dict(os.environ, {"TENANTDB_REDIS__PASSWORD": "env-secret"}):
            settings = TenantDBSettings(_skip_file_loading=True)
            assert settings.redis.password is not None
            assert settings.redis.password.get_secret_value() == "env-secret"


class TestConfigFileLoading:
    """Tests for YAML configuration file loading."""

    def test_load_yaml_config_valid(self, tmp_path: Path) -> None:
        """Test loading valid YAML config file."""
        config_file = tmp_path / "tenantdb.config.yaml"
        config_file.write_text("""
cache:
  l1_ttl: 60
storage:
  idle_timeout: 900
""")

        config = _load_yaml_config(config_file)
        assert config["cache"]["l1_ttl"] == 60
        assert config["storage"]["idle_timeout"] == 900

    def test_load_yaml_config_invalid(self, tmp_path: Path) -> None:
        """Test loading invalid YAML returns empty dict."""
        config_file = tmp_path / "invalid.yaml"
        config_file.write_text("invalid: yaml: content:")

        assert _load_yaml_config(config_file) == {}

    def test_load_yaml_config_not_a_mapping(self, tmp_path: Path) -> None:
        """Test a YAML list is treated as empty configuration."""
        config_file = tmp_path / "list.yaml"
        config_file.write_text("- a\n- b\n")

        assert _load_yaml_config(config_file) == {}

    def test_load_yaml_config_missing(self, tmp_path: Path) -> None:
        """Test loading missing file returns empty dict."""
        assert _load_yaml_config(tmp_path / "nonexistent.yaml") == {}

    def test_find_config_file_parent_dir(self, tmp_path: Path) -> None:
        """Test finding config file in parent directory."""
        config_file = tmp_path / "tenantdb.config.yaml"
        config_file.write_text("logging:\n  level: INFO\n")

        subdir = tmp_path / "subdir"
        subdir.mkdir()

        assert _find_config_file(subdir) == config_file

    def test_find_config_file_yml_extension(self, tmp_path: Path) -> None:
        """Test finding config file with .yml extension."""
        config_file = tmp_path / "tenantdb.config.yml"
        config_file.write_text("logging:\n  level: INFO\n")

        assert _find_config_file(tmp_path) == config_file

    def test_settings_loads_from_config_file(self, tmp_path: Path) -> None:
        """Test TenantDBSettings loads values from config file."""
        config_file = tmp_path / "tenantdb.config.yaml"
        config_file.write_text("""
logging:
  level: WARNING
cache:
  l1_max_entries: 42
""")

        with patch(
            "tenantdb.core.settings._find_config_file", return_value=config_file
        ):
            settings = TenantDBSettings()
            assert settings.logging.level == "WARNING"
            assert settings.cache.l1_max_entries == 42


class TestConfigHierarchy:
    """Tests for configuration hierarchy (defaults -> file -> env)."""

    def test_env_overrides_file(self, tmp_path: Path) -> None:
        """Test that environment variables override file values."""
        config_file = tmp_path / "tenantdb.config.yaml"
        config_file.write_text("""
cache:
  l1_ttl: 60
  l1_max_entries: 8
""")

        with patch(
            "tenantdb.core.settings._find_config_file", return_value=config_file
        ):
            with patch.dict(os.environ, {"TENANTDB_CACHE__L1_TTL": "90"}):
                settings = TenantDBSettings()
                assert settings.cache.l1_ttl == 90
                assert settings.cache.l1_max_entries == 8

    def test_explicit_overrides_file(self, tmp_path: Path) -> None:
        """Test that explicit values override file values within a section."""
        config_file = tmp_path / "tenantdb.config.yaml"
        config_file.write_text("""
storage:
  idle_timeout: 900
  sweep_interval: 30
""")

        with patch(
            "tenantdb.core.settings._find_config_file", return_value=config_file
        ):
            settings = TenantDBSettings(storage={"idle_timeout": 5})
            assert settings.storage.idle_timeout == 5
            assert settings.storage.sweep_interval == 30


class TestNestedSettings:
    """Tests for nested settings groups."""

    def test_cache_prefix_strips_separator(self) -> None:
        """Test a trailing ':' is dropped from cache prefixes."""
        settings = CacheSettings(key_prefix="models:", master_prefix=" master ")
        assert settings.key_prefix == "models"
        assert settings.master_prefix == "master"

    def test_cache_prefix_cannot_be_empty(self) -> None:
        """Test an empty cache prefix is rejected."""
        with pytest.raises(ValueError):
            CacheSettings(key_prefix=":")

    def test_logging_settings_defaults(self) -> None:
        """Test LoggingSettings default values."""
        settings = LoggingSettings()
        assert settings.level == "INFO"
        assert settings.json_output is False
        assert settings.file is None

    def test_nested_settings_in_tenantdb_settings(self) -> None:
        """Test nested settings are available in TenantDBSettings."""
        settings = TenantDBSettings(_skip_file_loading=True)
        assert isinstance(settings.storage, StorageSettings)
        assert isinstance(settings.cache, CacheSettings)
        assert isinstance(settings.redis, RedisSettings)
        assert isinstance(settings.logging, LoggingSettings)


class TestUtilityFunctions:
    """Tests for utility functions."""

    def test_merge_sections(self) -> None:
        """Test merging keeps file values not overridden in a section."""
        merged = _merge_sections(
            {"cache": {"l1_ttl": 60, "l2_ttl": 600}, "redis": {"enabled": True}},
            {"cache": {"l1_ttl": 5}},
        )
        assert merged == {
            "cache": {"l1_ttl": 5, "l2_ttl": 600},
            "redis": {"enabled": True},
        }

    def test_get_settings_overrides(self) -> None:
        """Test get_settings factory function with overrides."""
        settings = get_settings(_skip_file_loading=True, redis={"enabled": False})
        assert isinstance(settings, TenantDBSettings)
        assert settings.redis.enabled is False

    def test_get_settings_with_config_file(self, tmp_path: Path) -> None:
        """Test get_settings with explicit config file."""
        config_file = tmp_path / "custom.yaml"
        config_file.write_text("""
redis:
  url: redis://cache:6379/2
storage:
  pool_size: 20
""")

        settings = get_settings(config_file=config_file, storage={"echo": True})
        assert settings.redis.url == "redis://cache:6379/2"
        assert settings.storage.pool_size == 20
        assert settings.storage.echo is True

    def test_get_cached_settings(self) -> None:
        """Test cached settings singleton."""
        get_cached_settings.cache_clear()
        try:
            assert get_cached_settings() is get_cached_settings()
        finally:
            get_cached_settings.cache_clear()

    def test_generate_example_config(self) -> None:
        """Test example config is valid YAML loadable into settings."""
        example = generate_example_config()

        assert "TENANTDB_CACHE__L1_TTL" in example
        data = yaml.safe_load(example)
        settings = TenantDBSettings(_skip_file_loading=True, **data)
        assert settings.cache.l1_max_entries == 500
        assert settings.storage.idle_timeout == 1800

    def test_generate_example_config_to_file(self, tmp_path: Path) -> None:
        """Test example config generation to file."""
        output_path = tmp_path / "nested" / "example.yaml"
        example = generate_example_config(output_path)

        assert output_path.read_text() == example
