"""
Log sanitization utilities to prevent log injection.

Webhook payloads are untrusted; anything taken from them is passed through
here before it reaches a log line.
"""

import re
from typing import Any


def sanitize_for_log(value: Any, max_length: int = 100) -> str:
    """
    Sanitize a value for safe logging.

    Removes control characters and newlines that could be used to forge
    log entries, and truncates long values.

    Args:
        value: The value to sanitize
        max_length: Maximum length of the output (default 100)

    Returns:
        Sanitized string safe for logging
    """
    str_value = str(value)

    sanitized = re.sub(r"[\x00-\x1f\x7f-\x9f\r\n\t]", "", str_value)

    # Limit length to prevent log flooding
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized


def sanitize_ref(ref: str) -> str:
    """
    Sanitize a git ref for logging.

    Refs only legitimately contain a restricted character set.
    """
    sanitized = re.sub(r"[^a-zA-Z0-9_./-]", "", ref)
    return sanitized[:100]
