"""
Configuration Schema.

This module declares the engine's settings and validates values against them.

Key features:
- Type-safe field definitions with constraints
- Validation of a loaded [debplug] table against the schema
- Defaults for every field
"""

from dataclasses import dataclass
from typing import Any


class SchemaError(Exception):
    """Base exception for schema-related errors."""

    pass


class ValidationError(SchemaError):
    """Raised when value validation fails."""

    pass


@dataclass
class ConfigField:
    """
    Represents a configuration field with type and constraints.

    Attributes:
        type_: The expected type of the field value
        default: Default value for the field
        description: Human-readable description
        min: Minimum value (for numbers) or minimum length (for strings)
        max: Maximum value (for numbers) or maximum length (for strings)
        choices: List of allowed values (optional)
    """

    type_: type
    default: Any
    description: str = ""
    min: Any = None
    max: Any = None
    choices: list[Any] | None = None

    def __post_init__(self):
        """Validate field definition."""
        if not isinstance(self.default, self.type_):
            raise SchemaError(
                f"Default value {self.default!r} does not match type {self.type_.__name__}"
            )

        if (self.min is not None or self.max is not None) and self.type_ not in (
            int,
            float,
            str,
        ):
            raise SchemaError(
                f"min/max constraints only supported for int, float, str. Got {self.type_.__name__}"
            )

        if self.choices is not None and self.default not in self.choices:
            raise SchemaError(
                f"Default value {self.default!r} not in choices {self.choices}"
            )

    def coerce(self, value: Any) -> Any:
        """
        Widen ints to floats for float fields (TOML writes `30` for `30.0`).

        Args:
            value: Raw value from the config file

        Returns:
            Value of the field's type where a lossless widening exists
        """
        if self.type_ is float and isinstance(value, int) and not isinstance(value, bool):
            return float(value)
        return value

    def validate(self, value: Any) -> None:
        """
        Validate a value against this field's constraints.

        Args:
            value: The value to validate

        Raises:
            ValidationError: If validation fails
        """
        # bool is an int subclass; keep `true` out of int fields
        if not isinstance(value, self.type_) or (
            self.type_ is not bool and isinstance(value, bool)
        ):
            raise ValidationError(
                f"Expected type {self.type_.__name__}, got {type(value).__name__}"
            )

        if self.choices is not None and value not in self.choices:
            raise ValidationError(
                f"Value {value!r} not in allowed choices {self.choices}"
            )

        if self.type_ in (int, float):
            if self.min is not None and value < self.min:
                raise ValidationError(f"Value {value} is less than minimum {self.min}")
            if self.max is not None and value > self.max:
                raise ValidationError(
                    f"Value {value} is greater than maximum {self.max}"
                )

        if self.type_ is str:
            if self.min is not None and len(value) < self.min:
                raise ValidationError(
                    f"String length {len(value)} is less than minimum {self.min}"
                )
            if self.max is not None and len(value) > self.max:
                raise ValidationError(
                    f"String length {len(value)} is greater than maximum {self.max}"
                )


SETTINGS_SCHEMA: dict[str, ConfigField] = {
    "config_root": ConfigField(
        str, "/boot/optional/plugins", "Installed plugin descriptors and version directories", min=1
    ),
    "web_root": ConfigField(str, "/var/www/mos-plugins", "Web-facing plugin assets", min=1),
    "cache_root": ConfigField(
        str, "/var/mos/mos-plugins", "Release index cache and download staging", min=1
    ),
    "drivers_root": ConfigField(str, "/boot/optional/drivers", "Driver plugin packages", min=1),
    "hub_root": ConfigField(
        str, "/var/mos/hub/repositories", "Hub template repositories", min=1
    ),
    "bin_dir": ConfigField(str, "/usr/bin/plugins", "Plugin query commands", min=1),
    "temp_root": ConfigField(str, "/tmp", "Parent of per-operation extraction dirs", min=1),
    "notify_socket": ConfigField(
        str, "/var/run/mos-notify.sock", "Notification daemon socket"
    ),
    "token_file": ConfigField(
        str, "/boot/config/system/tokens.json", "JSON file holding an optional github token"
    ),
    "release_cache_ttl": ConfigField(
        float, 300.0, "Seconds a cached release index stays fresh", min=0.0
    ),
    "release_page_size": ConfigField(int, 50, "Releases per API page", min=1, max=100),
    "release_max_pages": ConfigField(int, 5, "Maximum release pages fetched", min=1, max=50),
    "http_timeout": ConfigField(float, 30.0, "HTTP timeout in seconds", min=1.0),
    "max_source_size": ConfigField(
        int, 10 * 1024 * 1024, "Source tarball size ceiling in bytes", min=1
    ),
    "package_manager_timeout": ConfigField(
        float, 120.0, "dpkg install/purge timeout in seconds", min=1.0
    ),
    "hook_timeout": ConfigField(float, 600.0, "Lifecycle hook timeout in seconds", min=1.0),
    "extract_timeout": ConfigField(float, 60.0, "Tarball extraction timeout in seconds", min=1.0),
    "checksum_algorithm": ConfigField(
        str, "md5", "Digest of the package checksum side-file", choices=["md5", "sha256"]
    ),
    "require_checksum": ConfigField(
        bool, False, "Fail installs whose release has no checksum side-file"
    ),
    "max_workers": ConfigField(int, 4, "Concurrent background operations", min=1, max=32),
    "log_level": ConfigField(
        str,
        "WARNING",
        "Console log level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    ),
}


def validate_config(config: dict[str, Any], schema: dict[str, ConfigField]) -> dict[str, Any]:
    """
    Validate a configuration dictionary against a schema.

    Missing fields take their defaults; unknown fields are rejected.

    Args:
        config: The configuration dictionary to validate
        schema: The schema dictionary (field_name -> ConfigField)

    Returns:
        A complete configuration dictionary

    Raises:
        ValidationError: If validation fails
    """
    for key in config:
        if key not in schema:
            raise ValidationError(f"Unknown configuration field: {key}")

    resolved: dict[str, Any] = {}
    for field_name, field in schema.items():
        if field_name not in config:
            resolved[field_name] = field.default
            continue

        value = field.coerce(config[field_name])
        try:
            field.validate(value)
        except ValidationError as e:
            raise ValidationError(f"Field '{field_name}': {e}") from e
        resolved[field_name] = value

    return resolved


def generate_default_config(schema: dict[str, ConfigField]) -> dict[str, Any]:
    """
    Generate a default configuration from a schema.

    Args:
        schema: The schema dictionary (field_name -> ConfigField)

    Returns:
        A dictionary with default values for all fields
    """
    return {field_name: field.default for field_name, field in schema.items()}
