"""Logging setup and log-context helpers."""

import logging
from typing import Any


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

SENSITIVE_KEYS = ("token", "password", "secret", "authorization", "key")
REDACTED = "[REDACTED]"
MAX_VALUE_LENGTH = 150


def configure_logging(level: str = "INFO", verbose: bool = False) -> None:
    """Configure root logging for the command line tool.

    Args:
        level: Level name from the configuration file
        verbose: Force DEBUG output regardless of ``level``
    """
    numeric_level = logging.DEBUG if verbose else getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT, force=True)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _is_sensitive(key: Any) -> bool:
    name = str(key).lower()
    return any(marker in name for marker in SENSITIVE_KEYS)


def sanitize(data: Any, max_length: int = MAX_VALUE_LENGTH) -> Any:
    """Make structured data safe to attach to a log record.

    Values under keys that look like credentials are replaced, long strings
    are truncated and containers are processed recursively.
    """
    if isinstance(data, dict):
        return {
            key: REDACTED if _is_sensitive(key) else sanitize(value, max_length)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple, set)):
        return [sanitize(item, max_length) for item in data]
    if isinstance(data, str) and len(data) > max_length:
        return data[:max_length] + "..."
    return data
