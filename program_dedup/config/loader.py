"""
YAML configuration loader with validation.

Loads the deduplication configuration with:
- Environment variable substitution
- Packaged defaults overlaid by an optional user file
- Validation into an immutable DedupConfig
"""

import os
import re
from pathlib import Path
from typing import Optional

import structlog
import yaml

from .settings import ConfigError, DedupConfig

logger = structlog.get_logger(__name__)

DEFAULTS_FILE = "defaults.yml"


def substitute_env_vars(text: str) -> str:
    """
    Substitute environment variables in text.

    Supports formats:
    - ${VAR_NAME} - required, empty string (with warning) if missing
    - ${VAR_NAME:-default} - optional with default

    Args:
        text: Text with env var placeholders

    Returns:
        Text with substituted values
    """
    def replace(match):
        var_expr = match.group(1)
        if ":-" in var_expr:
            var_name, default = var_expr.split(":-", 1)
            return os.getenv(var_name, default)
        else:
            value = os.getenv(var_expr)
            if value is None:
                logger.warning("env_var_not_set", var=var_expr)
                return ""
            return value

    return re.sub(r"\$\{([^}]+)\}", replace, text)


def merge_overrides(base: dict, overrides: dict) -> dict:
    """
    Overlay user settings on defaults.

    Top-level keys replace; the "sources" table merges per family so a
    user file can register one new family without restating the rest.
    """
    merged = dict(base)
    for key, value in (overrides or {}).items():
        if key == "sources" and isinstance(value, dict):
            sources = dict(merged.get("sources") or {})
            sources.update(value)
            merged["sources"] = sources
        else:
            merged[key] = value
    return merged


class ConfigLoader:
    """
    Configuration loader for deduplication settings.

    Loads YAML config files and validates them into DedupConfig.
    """

    def __init__(self, config_dir: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_dir: Directory containing config files
                       (defaults to package config directory)
        """
        if config_dir:
            self.config_dir = Path(config_dir)
        else:
            self.config_dir = Path(__file__).parent

    def load_file(self, filename: str) -> dict:
        """
        Load YAML config file.

        Args:
            filename: Config file name (relative to config_dir)

        Returns:
            Parsed config dict
        """
        filepath = self.config_dir / filename

        if not filepath.exists():
            raise FileNotFoundError(f"Config file not found: {filepath}")

        logger.info("loading_config", file=str(filepath))

        with open(filepath, "r", encoding="utf-8") as f:
            content = f.read()

        content = substitute_env_vars(content)

        try:
            config = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {filepath}: {e}") from e

        if config is not None and not isinstance(config, dict):
            raise ConfigError(f"Config root must be a mapping: {filepath}")

        return config or {}

    def load_defaults(self) -> dict:
        """Load the packaged default configuration."""
        return ConfigLoader().load_file(DEFAULTS_FILE)


def load_config(config_path: Optional[str] = None) -> DedupConfig:
    """
    Load configuration: packaged defaults plus optional user overrides.

    Args:
        config_path: Optional path to a user YAML file

    Returns:
        Validated DedupConfig
    """
    loader = ConfigLoader()
    data = loader.load_defaults()

    if config_path:
        path = Path(config_path)
        user = ConfigLoader(str(path.parent)).load_file(path.name)
        data = merge_overrides(data, user)
        logger.info("config_overrides_applied", file=str(path), keys=sorted(user))

    return DedupConfig.from_dict(data)


def config_from_overrides(overrides: dict) -> DedupConfig:
    """Build configuration from defaults plus an in-memory overrides dict."""
    data = merge_overrides(ConfigLoader().load_defaults(), overrides)
    return DedupConfig.from_dict(data)
