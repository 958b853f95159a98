"""
Security Logging Utilities for KSIWatch
Prevents log injection (CWE-117) from values supplied by external evidence
collectors and monitoring feeds.

Control ids, evidence URIs and diagnostic messages arrive from outside the
process and are logged on every run, so they pass through these helpers.
"""

import logging
import re
from typing import Any, Optional
from urllib.parse import quote

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Patterns for detecting potentially malicious content
LOG_INJECTION_PATTERNS = [
    r"[\r\n]",  # CRLF injection
    r"%0[ad]",  # URL-encoded CRLF
    r"\\[rn]",  # Escaped newlines
    r"\x00",  # Null bytes
    r"[\x01-\x08\x0b\x0c\x0e-\x1f\x7f]",  # Control characters
]

# Pattern for safe characters in logs
SAFE_LOG_PATTERN = re.compile(r"^[a-zA-Z0-9._@\-\s]+$")


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for CLI entry points."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def sanitize_for_log(value: Optional[Any], max_length: int = 100, allow_special: bool = False) -> str:
    """
    Sanitize any value for safe logging.

    Args:
        value: Value to sanitize
        max_length: Maximum length of output
        allow_special: Whether to allow some special characters

    Returns:
        str: Sanitized string safe for logging
    """
    if value is None:
        return "null"

    str_value = str(value)

    if len(str_value) > max_length:
        str_value = str_value[:max_length] + "..."

    for pattern in LOG_INJECTION_PATTERNS:
        str_value = re.sub(pattern, "", str_value)

    if not allow_special and not SAFE_LOG_PATTERN.match(str_value):
        str_value = re.sub(r"[^a-zA-Z0-9._@\-\s]", "", str_value)

    if not str_value.strip():
        return "[sanitized]"

    return str_value.strip()


def sanitize_id_for_log(id_value: Optional[Any]) -> str:
    """
    Sanitize control, check or evidence ids for logging.

    Args:
        id_value: ID to sanitize

    Returns:
        str: Sanitized ID
    """
    if id_value is None:
        return "[no_id]"
    return sanitize_for_log(str(id_value), max_length=64)


def sanitize_uri_for_log(uri: Optional[str]) -> str:
    """
    Sanitize evidence source URIs for logging.

    Args:
        uri: URI or path to sanitize

    Returns:
        str: Sanitized URI
    """
    if not uri:
        return "[no_uri]"
    return sanitize_for_log(quote(uri, safe="/.:-_"), max_length=200, allow_special=True)


def sanitize_error_message_for_log(error_msg: Optional[str]) -> str:
    """
    Sanitize error messages to prevent information disclosure.

    Args:
        error_msg: Error message to sanitize

    Returns:
        str: Sanitized error message
    """
    if not error_msg:
        return "[no_error_message]"

    str_msg = str(error_msg)

    sensitive_patterns = [
        (r"password[=:\s]+[^\s]+", "password=[REDACTED]"),
        (r"token[=:\s]+[^\s]+", "token=[REDACTED]"),
        (r"secret[=:\s]+[^\s]+", "secret=[REDACTED]"),
        (r"api[_-]?key[=:\s]+[^\s]+", "apikey=[REDACTED]"),
    ]

    for pattern, replacement in sensitive_patterns:
        str_msg = re.sub(pattern, replacement, str_msg, flags=re.IGNORECASE)

    return sanitize_for_log(str_msg, max_length=500, allow_special=True)


def create_audit_log_entry(
    action: str,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    success: bool = True,
    error_message: Optional[str] = None,
    additional_context: Optional[dict] = None,
) -> str:
    """
    Create a standardized audit log entry for model and store mutations.

    Args:
        action: Action being performed (e.g. "ingest_evidence")
        resource_type: Type of resource being changed
        resource_id: Resource identifier
        success: Whether the action succeeded
        error_message: Error message if action failed
        additional_context: Additional context data

    Returns:
        str: Formatted audit log entry
    """
    safe_type = sanitize_for_log(resource_type) if resource_type else "unknown_type"
    parts = [
        f"action={sanitize_for_log(action)}",
        f"resource={safe_type}:{sanitize_id_for_log(resource_id)}",
        f"success={success}",
    ]

    if error_message and not success:
        parts.append(f"error={sanitize_error_message_for_log(error_message)}")

    if additional_context:
        for key in sorted(additional_context):
            safe_key = sanitize_for_log(key, max_length=20)
            safe_value = sanitize_for_log(additional_context[key], max_length=100, allow_special=True)
            parts.append(f"{safe_key}={safe_value}")

    return " | ".join(parts)
