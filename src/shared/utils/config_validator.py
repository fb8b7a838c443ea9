"""
Configuration validation utilities.

Provides utilities for validating required environment variables with clear error messages.
"""

import os
from typing import Optional, Sequence


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def require_env(name: str, description: Optional[str] = None) -> str:
    """
    Require an environment variable to be set.

    Args:
        name: Environment variable name
        description: Optional description of what the variable is used for

    Returns:
        The value of the environment variable

    Raises:
        ConfigurationError: If the environment variable is not set or empty
    """
    value = os.getenv(name)

    if not value:
        desc_msg = f" ({description})" if description else ""
        raise ConfigurationError(
            f"Missing required environment variable: {name}{desc_msg}\n"
            f"Please set {name} in your .env file or environment."
        )

    return value


def require_any_env(names: Sequence[str], description: Optional[str] = None) -> str:
    """
    Return the first non-empty value among several environment variables.

    Used where a dedicated variable may override a shared one, e.g.
    ``OPENAI_API_KEY_SUMMARY`` before ``OPENAI_API_KEY``.

    Raises:
        ConfigurationError: If none of the variables is set
    """
    for name in names:
        value = os.getenv(name)
        if value:
            return value

    desc_msg = f" ({description})" if description else ""
    raise ConfigurationError(
        f"Missing required environment variable: one of {', '.join(names)}{desc_msg}\n"
        f"Please set it in your .env file or environment."
    )


def validate_int_env(name: str, default: Optional[int] = None, min_value: Optional[int] = None,
                     max_value: Optional[int] = None) -> int:
    """
    Validate an integer environment variable.

    Args:
        name: Environment variable name
        default: Default value if not set
        min_value: Minimum allowed value
        max_value: Maximum allowed value

    Returns:
        The validated integer value

    Raises:
        ConfigurationError: If the value is invalid
    """
    value_str = os.getenv(name)

    if not value_str:
        if default is None:
            raise ConfigurationError(f"Missing required integer environment variable: {name}")
        return default

    try:
        value = int(value_str)
    except ValueError:
        raise ConfigurationError(
            f"Invalid integer value for {name}: '{value_str}'\n"
            f"Expected an integer value."
        )

    if min_value is not None and value < min_value:
        raise ConfigurationError(
            f"Value for {name} ({value}) is below minimum allowed value ({min_value})"
        )

    if max_value is not None and value > max_value:
        raise ConfigurationError(
            f"Value for {name} ({value}) exceeds maximum allowed value ({max_value})"
        )

    return value


def validate_float_env(name: str, default: float, min_value: Optional[float] = None) -> float:
    """
    Validate a float environment variable.

    Raises:
        ConfigurationError: If the value is not a number or below ``min_value``
    """
    value_str = os.getenv(name)

    if not value_str:
        return default

    try:
        value = float(value_str)
    except ValueError:
        raise ConfigurationError(
            f"Invalid numeric value for {name}: '{value_str}'"
        )

    if min_value is not None and value < min_value:
        raise ConfigurationError(
            f"Value for {name} ({value}) is below minimum allowed value ({min_value})"
        )

    return value


def validate_bool_env(name: str, default: bool = False) -> bool:
    """
    Validate a boolean environment variable.

    Accepts: true, false, yes, no, 1, 0 (case-insensitive)

    Args:
        name: Environment variable name
        default: Default value if not set

    Returns:
        The validated boolean value

    Raises:
        ConfigurationError: If the value is invalid
    """
    value_str = os.getenv(name)

    if not value_str:
        return default

    value_lower = value_str.lower()

    if value_lower in ("true", "yes", "1"):
        return True
    elif value_lower in ("false", "no", "0"):
        return False
    else:
        raise ConfigurationError(
            f"Invalid boolean value for {name}: '{value_str}'\n"
            f"Expected one of: true, false, yes, no, 1, 0"
        )
