"""tenantdb configuration management.

Configuration is loaded from multiple sources with the following priority
(highest to lowest):
1. Explicit overrides passed to ``get_settings()``
2. Environment variables (with TENANTDB_ prefix, ``__`` for nested groups)
3. Configuration file (tenantdb.config.yaml, searched upward from cwd)
4. Default values

Example usage:
    from tenantdb.core.settings import get_settings

    settings = get_settings()
    print(settings.cache.l1_max_entries)

Environment variable support:
    TENANTDB_STORAGE__BASE_URL=postgresql+asyncpg://db.internal:5432/
    TENANTDB_REDIS__URL=redis://cache.internal:6379/0
    TENANTDB_CACHE__L1_TTL=120
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

CONFIG_FILE_NAMES = ["tenantdb.config.yaml", "tenantdb.config.yml"]

_SECTIONS = ("storage", "cache", "redis", "logging")


def _find_config_file(start_dir: Path | None = None) -> Path | None:
    """Find configuration file by searching current directory and parents.

    Args:
        start_dir: Directory to start search from.
            Defaults to current working directory.

    Returns:
        Path to config file if found, None otherwise.
    """
    search_dir = start_dir or Path.cwd()

    for _ in range(10):
        for filename in CONFIG_FILE_NAMES:
            config_path = search_dir / filename
            if config_path.exists():
                return config_path

        parent = search_dir.parent
        if parent == search_dir:
            break
        search_dir = parent

    return None


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load configuration from a YAML file.

    Unreadable or malformed files are logged and treated as empty.
    """
    try:
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}
            return config if isinstance(config, dict) else {}
    except yaml.YAMLError as e:
        logger.warning("Failed to parse config file %s: %s", config_path, e)
        return {}
    except OSError as e:
        logger.warning("Failed to read config file %s: %s", config_path, e)
        return {}


class StorageSettings(BaseSettings):
    """Tenant storage connection settings."""

    model_config = SettingsConfigDict(env_prefix="TENANTDB_STORAGE__", extra="ignore")

    base_url: str = Field(
        default="sqlite+aiosqlite:///./data",
        description=(
            "Shared storage endpoint. For SQLite the database part is a "
            "directory holding one file per tenant."
        ),
    )
    username: str | None = Field(default=None, description="Storage user name")
    password: SecretStr | None = Field(default=None, description="Storage password")
    db_name_prefix: str = Field(
        default="tenant_",
        description="Prefix of each tenant's isolated database name",
    )
    connect_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds allowed for opening a tenant connection",
    )
    idle_timeout: float = Field(
        default=30 * 60,
        gt=0,
        description="Seconds of inactivity after which a connection is closed",
    )
    sweep_interval: float = Field(
        default=5 * 60,
        gt=0,
        description="Seconds between idle-connection sweeps",
    )
    pool_size: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Connection pool size per tenant engine",
    )
    echo: bool = Field(default=False, description="Echo SQL statements")


class CacheSettings(BaseSettings):
    """Model metadata cache settings (tier 1 and tier 2)."""

    model_config = SettingsConfigDict(env_prefix="TENANTDB_CACHE__", extra="ignore")

    key_prefix: str = Field(
        default="models",
        description="Namespace prefix of model cache keys ({prefix}:{tenant})",
    )
    l1_max_entries: int = Field(
        default=500, ge=1, description="Maximum tier-1 entry count"
    )
    l1_ttl: float = Field(
        default=5 * 60, gt=0, description="Tier-1 time-to-live in seconds"
    )
    l1_max_bytes: int = Field(
        default=100 * 1024 * 1024,
        ge=1,
        description="Maximum aggregate serialized size of tier-1 entries",
    )
    l2_ttl: int = Field(
        default=30 * 60, ge=1, description="Tier-2 time-to-live in seconds"
    )
    master_prefix: str = Field(
        default="master", description="Namespace prefix of master-data cache keys"
    )
    master_ttl: int = Field(
        default=60 * 60, ge=1, description="Master-data cache TTL in seconds"
    )

    @field_validator("key_prefix", "master_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        """Prefixes must be non-empty and must not carry the separator."""
        v = v.strip().rstrip(":")
        if not v:
            raise ValueError("Cache key prefix cannot be empty")
        return v


class RedisSettings(BaseSettings):
    """Tier-2 (Redis) settings."""

    model_config = SettingsConfigDict(env_prefix="TENANTDB_REDIS__", extra="ignore")

    enabled: bool = Field(default=True, description="Use Redis as tier-2 cache")
    url: str = Field(
        default="redis://localhost:6379/0", description="Redis connection URL"
    )
    password: SecretStr | None = Field(default=None, description="Redis password")
    connect_timeout: float = Field(
        default=10.0, gt=0, description="Redis connect timeout in seconds"
    )
    command_timeout: float = Field(
        default=5.0, gt=0, description="Redis per-command timeout in seconds"
    )
    retry_backoff_cap: float = Field(
        default=2.0,
        gt=0,
        description="Upper bound in seconds of the reconnect backoff delay",
    )


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(env_prefix="TENANTDB_LOGGING__", extra="ignore")

    level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_output: bool = Field(default=False, description="Output logs as JSON")
    file: str | None = Field(default=None, description="Log file path (optional)")

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a valid Python logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v


class TenantDBSettings(BaseSettings):
    """Top-level tenantdb settings.

    Example:
        settings = TenantDBSettings(storage={"idle_timeout": 60})
        print(settings.storage.idle_timeout)
    """

    model_config = SettingsConfigDict(
        env_prefix="TENANTDB_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        validate_default=True,
    )

    storage: StorageSettings = Field(default_factory=StorageSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @model_validator(mode="before")
    @classmethod
    def load_from_config_file(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Merge values from the discovered YAML file under explicit data."""
        if data.get("_skip_file_loading"):
            data.pop("_skip_file_loading", None)
            return data

        config_path = _find_config_file()
        if not config_path:
            return data

        file_config = _load_yaml_config(config_path)
        if not file_config:
            return data

        logger.debug("Loaded configuration from %s", config_path)
        return _merge_sections(file_config, data)

    def to_dict(self, mask_secrets: bool = True) -> dict[str, Any]:
        """Convert settings to a nested dictionary.

        Args:
            mask_secrets: If True, replace secret values with ``***``.
        """
        result: dict[str, Any] = {}
        for section in _SECTIONS:
            group = getattr(self, section)
            values: dict[str, Any] = {}
            for field_name in type(group).model_fields:
                value = getattr(group, field_name)
                if isinstance(value, SecretStr):
                    value = "***" if mask_secrets else value.get_secret_value()
                values[field_name] = value
            result[section] = values
        return result


def _merge_sections(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Merge two raw settings dicts, section by section."""
    merged = {**base, **overrides}
    for section in _SECTIONS:
        base_section = base.get(section)
        override_section = overrides.get(section)
        if isinstance(base_section, dict):
            merged[section] = {
                **base_section,
                **(override_section if isinstance(override_section, dict) else {}),
            }
    return merged


def get_settings(
    config_file: Path | None = None,
    **overrides: Any,
) -> TenantDBSettings:
    """Get a tenantdb settings instance.

    Args:
        config_file: Optional explicit path to a YAML configuration file.
        **overrides: Explicit configuration overrides (section dicts).

    Example:
        settings = get_settings(cache={"l1_ttl": 60})
        settings = get_settings(config_file=Path("custom.yaml"))
    """
    if config_file and config_file.exists():
        file_config = _load_yaml_config(config_file)
        merged = _merge_sections(file_config, overrides)
        return TenantDBSettings(_skip_file_loading=True, **merged)

    return TenantDBSettings(**overrides)


@lru_cache
def get_cached_settings() -> TenantDBSettings:
    """Get cached settings instance.

    The cache can be cleared with ``get_cached_settings.cache_clear()``.
    """
    return get_settings()


def generate_example_config(output_path: Path | None = None) -> str:
    """Generate a commented example configuration file.

    Args:
        output_path: Optional path to write the example config to.

    Returns:
        Example configuration as YAML string.
    """
    example = """\
# tenantdb configuration
# Environment variables override these values with the TENANTDB_ prefix,
# nested groups separated by "__", e.g. TENANTDB_CACHE__L1_TTL=120

storage:
  base_url: sqlite+aiosqlite:///./data   # or postgresql+asyncpg://host:5432/
  # username: app
  # password: set via TENANTDB_STORAGE__PASSWORD
  db_name_prefix: tenant_
  connect_timeout: 10       # seconds
  idle_timeout: 1800        # close connections idle longer than this
  sweep_interval: 300       # seconds between idle sweeps
  pool_size: 10

cache:
  key_prefix: models
  l1_max_entries: 500
  l1_ttl: 300               # seconds
  l1_max_bytes: 104857600   # 100 MiB
  l2_ttl: 1800              # seconds
  master_prefix: master
  master_ttl: 3600

redis:
  enabled: true
  url: redis://localhost:6379/0
  connect_timeout: 10
  command_timeout: 5
  retry_backoff_cap: 2

logging:
  level: INFO
  json_output: false
  # file: /var/log/tenantdb.log
"""

    if output_path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w") as f:
            f.write(example)
        logger.info("Generated example config at %s", output_path)

    return example
