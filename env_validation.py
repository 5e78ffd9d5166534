"""Environment variable validation and management."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "LRS_URL": "Learning Record Store URL for activity forwarding",
        "LRS_AUTH": "Learning Record Store authentication",
        "ADMIN_TOKEN": "Shared secret required on /admin routes",
    }

    positive_ints = {"DB_MAX_CONNECTIONS": 10, "CHECKIN_XP": 5}
    for var, default in positive_ints.items():
        value = get_env_int(var, default)
        if value <= 0:
            raise EnvironmentError(f"{var} must be a positive integer, got {value}")

    try:
        busy_timeout = float(os.getenv("DB_BUSY_TIMEOUT", "5.0"))
    except ValueError as exc:
        raise EnvironmentError(
            f"Invalid number for DB_BUSY_TIMEOUT: {os.getenv('DB_BUSY_TIMEOUT')}"
        ) from exc
    if busy_timeout <= 0:
        raise EnvironmentError("DB_BUSY_TIMEOUT must be greater than zero")

    # Validate URLs
    url_vars = {"APP_BASE_URL", "LRS_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    # Log optional variables status
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}

def get_env_int(name: str, default: int) -> int:
    """Get integer value from environment variable."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise EnvironmentError(f"Invalid integer for {name}: {value}") from exc

def get_env_settings() -> Dict[str, object]:
    """Return the effective ledger settings, used by the health endpoint."""
    return {
        "db_path": os.getenv("DB_PATH", "data.db"),
        "db_max_connections": get_env_int("DB_MAX_CONNECTIONS", 10),
        "checkin_xp": get_env_int("CHECKIN_XP", 5),
        "activity_forwarding": bool(os.getenv("LRS_URL")),
        "admin_token_required": bool(os.getenv("ADMIN_TOKEN")),
    }
