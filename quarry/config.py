"""
Config system - Layered database configuration with validation.

Sources merge with precedence (later overrides earlier):

    1. Defaults
    2. Config files (YAML or JSON, glob patterns supported)
    3. .env file (QUARRY_* keys)
    4. Environment variables (QUARRY_* prefix)
    5. Manual overrides

Nested keys use a double underscore: ``QUARRY_DATABASE__URL`` sets
``database.url``.

    config = ConfigLoader.load(["quarry.yaml"], env_file=".env")
    db = await connect(config)
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from glob import glob
from pathlib import Path
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import yaml
from dotenv import dotenv_values

from .faults.domains import ConfigError

if TYPE_CHECKING:
    from .db.engine import Database
    from .models.registry import SchemaRegistry

logger = logging.getLogger("quarry.config")

__all__ = ["DatabaseConfig", "ConfigLoader", "connect"]


@dataclass
class DatabaseConfig:
    """
    Connection settings for ``Database``.

    Attributes:
        url: Database URL (``sqlite:///path`` or ``sqlite:///:memory:``)
        echo: Log every statement at DEBUG level
        connect_retries: Connection attempts before giving up
        connect_retry_delay: Seconds between attempts
        options: Extra driver options passed to the adapter
    """

    url: str = "sqlite:///:memory:"
    echo: bool = False
    connect_retries: int = 3
    connect_retry_delay: float = 0.5
    options: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        _check_type("url", self.url, str)
        _check_type("echo", self.echo, bool)
        _check_type("connect_retries", self.connect_retries, int)
        _check_type("connect_retry_delay", self.connect_retry_delay, (int, float))
        _check_type("options", self.options, dict)
        if self.connect_retries < 1:
            raise ConfigError("database.connect_retries must be at least 1")
        self.connect_retry_delay = float(self.connect_retry_delay)

    def engine_options(self) -> Dict[str, Any]:
        return {
            "echo": self.echo,
            "connect_retries": self.connect_retries,
            "connect_retry_delay": self.connect_retry_delay,
            **self.options,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _check_type(name: str, value: Any, expected: Any) -> None:
    # bool is an int subclass; keep flags and counts apart
    if isinstance(value, bool) and expected is not bool:
        raise ConfigError(f"database.{name} must not be a boolean")
    if not isinstance(value, expected):
        raise ConfigError(f"database.{name} has invalid type {type(value).__name__}")


class ConfigLoader:
    """
    Loads and merges configuration from multiple sources.
    """

    def __init__(self, env_prefix: str = "QUARRY_"):
        self.env_prefix = env_prefix
        self.config_data: Dict[str, Any] = {}

    @classmethod
    def load(
        cls,
        paths: Optional[List[str]] = None,
        env_prefix: str = "QUARRY_",
        env_file: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> ConfigLoader:
        """
        Load configuration from multiple sources with proper merge strategy.

        Args:
            paths: List of config file paths (glob patterns supported)
            env_prefix: Prefix for environment variables
            env_file: Path to .env file
            overrides: Manual overrides (highest precedence)

        Returns:
            Configured ConfigLoader instance
        """
        loader = cls(env_prefix=env_prefix)

        for pattern in paths or []:
            loader._load_from_files(pattern)

        if env_file:
            loader._load_env_file(env_file)

        loader._load_from_env()

        if overrides:
            loader._merge_dict(loader.config_data, overrides)

        return loader

    def _load_from_files(self, pattern: str):
        """Load config from JSON or YAML files."""
        matches = sorted(glob(pattern))
        if not matches:
            logger.debug(f"No config files match {pattern}")
        for path_str in matches:
            path = Path(path_str)
            if path.suffix == ".json":
                self._load_json_file(path)
            elif path.suffix in (".yaml", ".yml"):
                self._load_yaml_file(path)
            else:
                raise ConfigError(f"Unsupported config file type: {path}")

    def _load_json_file(self, path: Path):
        """Load config from JSON file."""
        with open(path) as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as exc:
                raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
        self._merge_file_data(path, data)

    def _load_yaml_file(self, path: Path):
        """Load config from YAML file."""
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
        self._merge_file_data(path, data)

    def _merge_file_data(self, path: Path, data: Any):
        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        self._merge_dict(self.config_data, data)
        logger.debug(f"Loaded config from {path}")

    def _load_env_file(self, path: str):
        """Load config from .env file."""
        if not Path(path).exists():
            return
        for key, value in dotenv_values(path).items():
            if key.startswith(self.env_prefix) and value is not None:
                self._set_nested(key, value)

    def _load_from_env(self):
        """Load config from environment variables."""
        for key, value in os.environ.items():
            if key.startswith(self.env_prefix):
                self._set_nested(key, value)

    def _set_nested(self, key: str, value: str):
        """Convert QUARRY_DATABASE__URL to nested dict."""
        key = key[len(self.env_prefix):]
        parts = key.lower().split("__")

        current = self.config_data
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]

        current[parts[-1]] = self._parse_value(value)

    def _parse_value(self, value: str) -> Any:
        """Parse string value to appropriate type."""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if value.startswith(("{", "[")):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        return value

    def _merge_dict(self, target: dict, source: dict):
        """Deep merge source into target."""
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._merge_dict(target[key], value)
            else:
                target[key] = value

    def get(self, path: str, default: Any = None) -> Any:
        """Get config value by dot-separated path."""
        current = self.config_data
        for part in path.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return default
        return current

    def get_database_config(self) -> DatabaseConfig:
        """Validated ``database`` section."""
        section = self.get("database", {})
        if isinstance(section, str):
            section = {"url": section}
        if not isinstance(section, dict):
            raise ConfigError("database config must be a mapping or a URL string")

        known = {"url", "echo", "connect_retries", "connect_retry_delay", "options"}
        unknown = set(section) - known
        if unknown:
            raise ConfigError(f"Unknown database config keys: {', '.join(sorted(unknown))}")
        return DatabaseConfig(**section)

    def to_dict(self) -> Dict[str, Any]:
        return self.config_data


async def connect(
    config: Optional[ConfigLoader | DatabaseConfig] = None,
    registry: Optional[SchemaRegistry] = None,
) -> Database:
    """
    Open a ``Database`` from configuration and bind it to ``registry``.

    Usage:
        db = await connect(ConfigLoader.load(["quarry.yaml"]))
    """
    from .db.engine import Database
    from .models.registry import default_registry

    if config is None:
        config = ConfigLoader.load()
    db_config = config.get_database_config() if isinstance(config, ConfigLoader) else config

    db = Database(db_config.url, **db_config.engine_options())
    await db.connect()
    (registry or default_registry).bind(db)
    return db
