"""Configuration management for the portfolio ledger.

This module provides YAML configuration loading with environment overrides.
"""

import copy
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from libao_portfolio.utils.exceptions import ConfigurationError

# Environment variable -> (dotted config key, converter)
ENV_OVERRIDES = {
    "LIBAO_LOG_LEVEL": ("logging.level", str),
    "LIBAO_LOG_DIR": ("logging.log_dir", str),
    "LIBAO_PRICE_TTL": ("oracle.price_ttl_seconds", float),
    "LIBAO_INITIAL_CAPITAL": ("portfolio.initial_capital", float),
    "LIBAO_US_EXCHANGE_RATE": ("portfolio.us_exchange_rate", float),
}


class Config:
    """Simple configuration loader and accessor.

    Loads YAML configuration files and provides dict-like access to settings.

    Example:
        >>> config = Config.from_file("config/default.yaml")
        >>> ttl = config.get("oracle.price_ttl_seconds", 30)
    """

    def __init__(self, config_dict: dict[str, Any]) -> None:
        """Initialize with configuration dictionary.

        Args:
            config_dict: Configuration data as nested dictionary
        """
        self._config = config_dict

    @classmethod
    def from_file(cls, filepath: str | Path) -> "Config":
        """Load configuration from YAML file.

        Args:
            filepath: Path to YAML configuration file

        Returns:
            Config instance with loaded configuration

        Raises:
            FileNotFoundError: If config file doesn't exist
            yaml.YAMLError: If YAML parsing fails
        """
        path = Path(filepath)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {filepath}")

        with open(path, "r", encoding="utf-8") as f:
            config_dict = yaml.safe_load(f)

        if config_dict is None:
            config_dict = {}

        return cls(config_dict)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Supports nested keys using dot notation (e.g., "oracle.max_workers").

        Args:
            key: Configuration key (supports dot notation for nested keys)
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key.split(".")
        value = self._config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value using dot notation.

        Intermediate sections are created when missing.

        Args:
            key: Configuration key (supports dot notation)
            value: New value
        """
        keys = key.split(".")
        section = self._config
        for k in keys[:-1]:
            if not isinstance(section.get(k), dict):
                section[k] = {}
            section = section[k]
        section[keys[-1]] = value

    def __getitem__(self, key: str) -> Any:
        """Get configuration value using bracket notation.

        Args:
            key: Configuration key (supports dot notation)

        Returns:
            Configuration value

        Raises:
            KeyError: If key not found
        """
        value = self.get(key)
        if value is None:
            raise KeyError(f"Configuration key not found: {key}")
        return value

    def to_dict(self) -> dict[str, Any]:
        """Get the full configuration as dictionary.

        Returns:
            Deep copy of the configuration dictionary
        """
        return copy.deepcopy(self._config)


def apply_env_overrides(config: Config) -> Config:
    """Apply LIBAO_* environment variables on top of a loaded config.

    Args:
        config: Config to update in place

    Returns:
        The same Config instance

    Raises:
        ConfigurationError: If an override cannot be converted
    """
    for env_var, (key, converter) in ENV_OVERRIDES.items():
        raw = os.getenv(env_var)
        if raw is None or raw == "":
            continue
        try:
            config.set(key, converter(raw))
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid value for {env_var}: {raw!r}"
            ) from e
    return config


def load_config(filepath: str | Path = None) -> Config:
    """Load configuration from YAML, .env and the environment.

    Args:
        filepath: Path to YAML configuration file. If None, uses default path.

    Returns:
        Config instance

    Example:
        >>> config = load_config()
        >>> config.get("oracle.quote_relays")
        ['direct', 'corsproxy', 'allorigins']
    """
    root_dir = Path(__file__).parent.parent.parent
    if filepath is None:
        filepath = root_dir / "config" / "default.yaml"

    env_file = root_dir / ".env"
    if env_file.exists():
        load_dotenv(env_file)

    config = Config.from_file(filepath)
    return apply_env_overrides(config)
