"""Configuration system for the music voice service.

This module provides a small typed configuration layer with:
- Environment variable overrides on top of declared defaults
- Type, range, choice and pattern validation per field
"""

from .base import (
    BaseConfig,
    ConfigError,
    FieldDefinition,
    LoggingConfig,
    RequiredFieldError,
    ValidationError,
)
from .loader import load_config_from_env


__all__ = [
    "BaseConfig",
    "ConfigError",
    "ValidationError",
    "RequiredFieldError",
    "FieldDefinition",
    "LoggingConfig",
    "load_config_from_env",
]
