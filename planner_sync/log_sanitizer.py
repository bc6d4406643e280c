"""
Log sanitization utilities to prevent credential leakage.

Tracker error bodies and authentication failures are routed through
these helpers before they reach a log line or stderr.
"""

import re


# Patterns that might indicate sensitive data
SENSITIVE_PATTERNS = [
    (re.compile(r'(api_token["\']?\s*[:=]\s*["\']?)([^"\'\s]+)', re.IGNORECASE), r'\1***REDACTED***'),
    (re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^"\'\s]+)', re.IGNORECASE), r'\1***REDACTED***'),
    (re.compile(r'(token["\']?\s*[:=]\s*["\']?)([^"\'\s]+)', re.IGNORECASE), r'\1***REDACTED***'),
    (re.compile(r'(pat["\']?\s*[:=]\s*["\']?)([^"\'\s]+)', re.IGNORECASE), r'\1***REDACTED***'),
    (re.compile(r'(bearer\s+)([a-zA-Z0-9\-._~+/]+=*)', re.IGNORECASE), r'\1***REDACTED***'),
    (re.compile(r'(basic\s+)([a-zA-Z0-9+/]+=*)', re.IGNORECASE), r'\1***REDACTED***'),
    (re.compile(r'(authorization["\']?\s*[:=]\s*["\']?)([^"\'\s]+)', re.IGNORECASE), r'\1***REDACTED***'),
    (re.compile(r'(https?://)([^:/\s@]+):([^@/\s]+)@', re.IGNORECASE), r'\1***REDACTED***@'),
]

# Error bodies can be whole HTML pages when a proxy answers instead of the tracker
MAX_LOGGED_BODY_LENGTH = 2000


def sanitize_log_message(message: str) -> str:
    """
    Sanitize a log message by redacting sensitive information.

    Args:
        message: The log message to sanitize

    Returns:
        Sanitized log message with sensitive data redacted
    """
    if not message:
        return message

    sanitized = message
    for pattern, replacement in SENSITIVE_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)

    return sanitized


def sanitize_response_body(body: str) -> str:
    """Redact and truncate a remote response body for logging."""
    if not body:
        return body

    sanitized = sanitize_log_message(body)
    if len(sanitized) > MAX_LOGGED_BODY_LENGTH:
        sanitized = sanitized[:MAX_LOGGED_BODY_LENGTH] + "...[truncated]"
    return sanitized


def sanitize_error(error: Exception) -> str:
    """
    Sanitize an exception message for safe logging.

    Args:
        error: The exception to sanitize

    Returns:
        Sanitized error message
    """
    error_str = str(error)
    return sanitize_log_message(error_str)


def safe_log_error(error: Exception, context: str = "") -> str:
    """
    Create a safe error message for logging.

    This combines the context with the sanitized error message.

    Args:
        error: The exception
        context: Additional context (e.g., "Authentication failed")

    Returns:
        Safe error message for logging
    """
    sanitized_error = sanitize_error(error)
    error_type = type(error).__name__

    if context:
        return f"{context}: {error_type}: {sanitized_error}"
    else:
        return f"{error_type}: {sanitized_error}"
