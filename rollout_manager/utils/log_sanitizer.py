"""
Log sanitization utilities to prevent log injection through operator input.

Target names and image references come from the command line and config
files, so they are cleaned before they reach a log line.
"""

import re
from typing import Any


def sanitize_for_log(value: Any, max_length: int = 100) -> str:
    """
    Sanitize a value for safe logging.

    Removes control characters and newlines, and truncates long values.

    Args:
        value: The value to sanitize
        max_length: Maximum length of the output (default 100)

    Returns:
        Sanitized string safe for logging
    """
    str_value = str(value)

    sanitized = re.sub(r"[\x00-\x1f\x7f-\x9f\r\n\t]", "", str_value)

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized


def sanitize_target_name(name: str) -> str:
    """
    Sanitize a target or namespace name for logging.

    Cluster object names only contain lowercase alphanumerics, hyphens and
    dots; anything else is dropped.
    """
    sanitized = re.sub(r"[^a-zA-Z0-9_.-]", "", name)
    return sanitized[:63]


def sanitize_image(image: str) -> str:
    """
    Sanitize an image reference for logging.

    Keeps the characters valid in ``registry/repo:tag@sha256:digest``.
    """
    sanitized = re.sub(r"[^\w./:@+-]", "", image)
    return sanitized[:200]
