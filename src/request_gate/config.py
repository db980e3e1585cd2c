"""Configuration loading from environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Valid log levels
VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

DEFAULT_HTTP_TIMEOUT = 10.0


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment.

    This dataclass is frozen (immutable) to prevent accidental modification
    after creation. Backoff parameters live in ``RequestGateConfig``, which
    reads its own ``REQUEST_GATE_*`` variables per endpoint.
    """

    # Logging
    log_level: str = "INFO"
    log_json: bool = False
    diagnostic_tags: str = ""  # Comma-separated, "*" for all

    # Remote installation service
    base_url: str = ""  # e.g., "https://installations.example.com/v1"
    http_timeout: float = DEFAULT_HTTP_TIMEOUT  # seconds

    @property
    def service_configured(self) -> bool:
        """Check if the remote service URL is configured."""
        return bool(self.base_url)


def _validate_log_level(value: str, default: str = "INFO") -> str:
    """Validate and normalize a log level string.

    Args:
        value: The log level string to validate.
        default: The default value to use if invalid.

    Returns:
        The validated log level (uppercase), or the default if invalid.

    Logs a warning if the value is invalid.
    """
    normalized = value.upper()
    if normalized not in VALID_LOG_LEVELS:
        logging.warning(
            "Invalid REQUEST_GATE_LOG_LEVEL: '%s' is not valid, using default '%s'. "
            "Valid values: %s",
            value,
            default,
            ", ".join(sorted(VALID_LOG_LEVELS)),
        )
        return default
    return normalized


def _parse_bool(value: str) -> bool:
    """Parse a string as a boolean.

    Returns:
        True if value is "true", "1", or "yes" (case-insensitive), False otherwise.
    """
    return value.lower() in ("true", "1", "yes")


def _parse_positive_float(value: str, name: str, default: float) -> float:
    """Parse a string as a positive float with validation.

    Args:
        value: The string value to parse.
        name: The name of the setting (for error messages).
        default: The default value to use if parsing fails.

    Returns:
        The parsed positive float, or the default if invalid.

    Logs a warning if the value is invalid.
    """
    try:
        parsed = float(value)
    except ValueError:
        logging.warning(
            "Invalid %s: '%s' is not a valid number, using default %s",
            name,
            value,
            default,
        )
        return default
    if parsed <= 0:
        logging.warning(
            "Invalid %s: %s is not positive, using default %s",
            name,
            parsed,
            default,
        )
        return default
    return parsed


def load_config(env_file: Path | None = None) -> Config:
    """Load configuration from environment variables.

    Args:
        env_file: Optional path to .env file. If not provided,
                  looks for .env in current directory.

    Returns:
        Config object with loaded values.

    Invalid values never raise; a warning is logged and the default is used.
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    log_level = _validate_log_level(os.getenv("REQUEST_GATE_LOG_LEVEL", "INFO"))
    log_json = _parse_bool(os.getenv("REQUEST_GATE_LOG_JSON", ""))

    http_timeout = _parse_positive_float(
        os.getenv("REQUEST_GATE_HTTP_TIMEOUT", str(DEFAULT_HTTP_TIMEOUT)),
        "REQUEST_GATE_HTTP_TIMEOUT",
        DEFAULT_HTTP_TIMEOUT,
    )

    return Config(
        log_level=log_level,
        log_json=log_json,
        diagnostic_tags=os.getenv("REQUEST_GATE_DIAGNOSTIC_TAGS", ""),
        base_url=os.getenv("REQUEST_GATE_BASE_URL", "").rstrip("/"),
        http_timeout=http_timeout,
    )
