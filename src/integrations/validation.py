"""Validation of tenant integration config against a template schema."""

from typing import Any

from src.errors import ValidationResult
from src.integrations.templates import ConfigSchema


def _matches_type(value: Any, expected: str) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "number":
        # bool is an int subclass but not a number here
        return isinstance(value, int | float) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    return True


def validate_config(config: dict[str, Any], schema: ConfigSchema) -> ValidationResult:
    """Validate a config against a schema, collecting every violation.

    - each required field missing, None or "" is an error;
    - each declared property present in the config must match its type;
    - when an enum is declared, the value must be one of its members.

    Never raises.

    Args:
        config: Submitted configuration.
        schema: Template config schema.

    Returns:
        ValidationResult listing every problem found.
    """
    result = ValidationResult()
    if not isinstance(config, dict):
        result.errors.append("Configuration must be an object")
        return result

    for field in schema.required:
        value = config.get(field)
        if value is None or value == "":
            result.errors.append(f"Missing required field: {field}")

    for field, prop in schema.properties.items():
        value = config.get(field)
        if value is None:
            continue

        if not _matches_type(value, prop.type):
            result.errors.append(f"Field {field} must be a {prop.type}")

        if prop.enum is not None and value not in prop.enum:
            result.errors.append(f"Field {field} must be one of: {', '.join(prop.enum)}")

    return result
