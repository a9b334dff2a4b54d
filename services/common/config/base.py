"""Core configuration primitives for the music voice service.

Configuration classes declare their fields once as ``FieldDefinition``
entries; values come from constructor kwargs and are overridden by
environment variables, then validated against type, choices, range and
pattern rules.
"""

from __future__ import annotations

import os
import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from services.common.structured_logging import get_logger

logger = get_logger(__name__)


class ConfigError(Exception):
    """Base exception for configuration-related errors."""

    pass


class ValidationError(ConfigError):
    """Exception raised when configuration validation fails."""

    def __init__(self, field_name: str, value: Any, message: str) -> None:
        self.field = field_name
        self.value = value
        self.message = message
        super().__init__(f"Validation failed for field '{field_name}': {message}")


class RequiredFieldError(ConfigError):
    """Exception raised when a required field is missing."""

    def __init__(self, field_name: str) -> None:
        self.field = field_name
        super().__init__(f"Required field '{field_name}' is missing")


@dataclass
class FieldDefinition:
    """Definition for a configuration field with validation rules."""

    name: str
    field_type: type[Any]
    default: Any = None
    required: bool = False
    description: str = ""
    validator: Callable[[Any], bool] | None = None
    env_var: str | None = None
    choices: list[Any] | None = None
    min_value: int | float | None = None
    max_value: int | float | None = None
    pattern: str | None = None

    def __post_init__(self) -> None:
        """Validate field definition after initialization."""
        if self.required and self.default is not None:
            raise ValueError(
                f"Field '{self.name}' cannot be both required and have a default value"
            )
        if self.choices and self.default not in self.choices:
            raise ValueError(f"Field '{self.name}' default value not in choices")


class BaseConfig(ABC):
    """Base configuration class with validation and environment loading."""

    def __init__(self, **kwargs: Any) -> None:
        """Initialize configuration with provided values."""
        self._values: dict[str, Any] = {}
        self._load_from_kwargs(kwargs)
        self._load_from_environment()
        self._validate()

    def _load_from_kwargs(self, kwargs: dict[str, Any]) -> None:
        """Load values from constructor kwargs."""
        known = {field_def.name for field_def in self.get_field_definitions()}
        for name, value in kwargs.items():
            if name not in known:
                raise ConfigError(
                    f"Unknown field '{name}' for {type(self).__name__}"
                )
            self._values[name] = value

    def _load_from_environment(self) -> None:
        """Load values from environment variables.

        Environment variables override constructor/default values to allow
        runtime configuration without code changes.
        """
        for field_def in self.get_field_definitions():
            if field_def.env_var:
                env_value = os.getenv(field_def.env_var)
                if env_value is not None:
                    self._values[field_def.name] = self._convert_env_value(
                        field_def, env_value
                    )

    def _convert_env_value(self, field_def: FieldDefinition, value: str) -> Any:
        """Convert environment variable string to the field's type."""
        field_type = field_def.field_type
        try:
            if field_type is bool:
                return value.lower() in ("true", "1", "yes", "on")
            elif field_type is int:
                return int(value)
            elif field_type is float:
                return float(value)
            elif field_type is list:
                return [item.strip() for item in value.split(",") if item.strip()]
            return value
        except ValueError as exc:
            raise ValidationError(
                field_def.name, value, f"Cannot convert to {field_type.__name__}"
            ) from exc

    def _validate(self) -> None:
        """Validate all configuration values."""
        for field_def in self.get_field_definitions():
            value = self._values.get(field_def.name, field_def.default)

            if field_def.required and value in (None, ""):
                raise RequiredFieldError(field_def.name)

            if value is not None:
                self._values[field_def.name] = self._validate_field(field_def, value)

    def _validate_field(self, field_def: FieldDefinition, value: Any) -> Any:
        """Validate a single field value and return its canonical form."""
        if (
            field_def.field_type is float
            and isinstance(value, int)
            and not isinstance(value, bool)
        ):
            value = float(value)

        if not isinstance(value, field_def.field_type):
            raise ValidationError(
                field_def.name, value, f"Expected {field_def.field_type.__name__}"
            )

        if field_def.choices:
            if isinstance(value, str):
                for choice in field_def.choices:
                    if isinstance(choice, str) and choice.upper() == value.upper():
                        value = choice
                        break
            if value not in field_def.choices:
                raise ValidationError(
                    field_def.name, value, f"Must be one of {field_def.choices}"
                )

        if field_def.min_value is not None and value < field_def.min_value:
            raise ValidationError(
                field_def.name, value, f"Must be >= {field_def.min_value}"
            )
        if field_def.max_value is not None and value > field_def.max_value:
            raise ValidationError(
                field_def.name, value, f"Must be <= {field_def.max_value}"
            )

        if (
            field_def.pattern
            and isinstance(value, str)
            and not re.match(field_def.pattern, value)
        ):
            raise ValidationError(
                field_def.name, value, f"Must match pattern {field_def.pattern}"
            )

        if field_def.validator and not field_def.validator(value):
            raise ValidationError(field_def.name, value, "Custom validation failed")

        return value

    @classmethod
    @abstractmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        """Get field definitions for this configuration class."""
        pass

    def __getattr__(self, name: str) -> Any:
        """Get configuration value by name."""
        values = self.__dict__.get("_values", {})
        if name in values:
            return values[name]
        raise AttributeError(f"Configuration field '{name}' not found")

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return self._values.copy()


class LoggingConfig(BaseConfig):
    """Logging configuration."""

    @classmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                name="level",
                field_type=str,
                default="INFO",
                description="Log level",
                env_var="LOG_LEVEL",
                choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            ),
            FieldDefinition(
                name="json_logs",
                field_type=bool,
                default=True,
                description="Use JSON logging format",
                env_var="LOG_JSON",
            ),
            FieldDefinition(
                name="service_name",
                field_type=str,
                default="music",
                description="Service name for logging",
                env_var="SERVICE_NAME",
            ),
        ]
