"""
Configuration module for deduplication.

Provides:
- YAML config loading with environment substitution
- Immutable DedupConfig / SourceRule values
"""

from .loader import ConfigLoader, config_from_overrides, load_config
from .settings import ConfigError, DedupConfig, ExactIdPattern, GENERIC_RULE, SourceRule

__all__ = [
    "ConfigLoader",
    "ConfigError",
    "DedupConfig",
    "ExactIdPattern",
    "GENERIC_RULE",
    "SourceRule",
    "config_from_overrides",
    "load_config",
]
