"""Secret handling helpers.

Redaction, hint derivation and log-safe views of request payloads.
"""

from __future__ import annotations

import hmac
from typing import Any

# Payload keys whose values must never be logged
SENSITIVE_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "raw_key",
        "code",
        "code_verifier",
        "device_code",
        "secret",
        "client_secret",
        "authorization",
        "api_key",
        "state",
    }
)


def redact(value: str | None) -> str:
    """Redact a potentially sensitive value for safe logging.

    Args:
        value: The value to redact

    Returns:
        "***" if value is non-empty, "<empty>" if empty/None
    """
    if value is None or value == "":
        return "<empty>"
    return "***"


def short_id(value: str | None) -> str:
    """Shorten an identifier such as a flow id for log lines."""
    if not value:
        return "<none>"
    return value[:8]


def secret_hint(secret: str | None) -> str | None:
    """Derive a partial hint that identifies a secret without revealing it.

    Args:
        secret: The full secret

    Returns:
        Hint such as "sk-a...wxyz", or None for an empty secret
    """
    if not secret:
        return None
    if len(secret) < 12:
        return "***"
    return f"{secret[:4]}...{secret[-4:]}"


def constant_time_equals(a: str | None, b: str | None) -> bool:
    """Compare two strings in constant time to prevent timing attacks.

    Args:
        a: First string to compare
        b: Second string to compare

    Returns:
        True if strings are equal, False otherwise
    """
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode(), b.encode())


def mask_sensitive_data(
    data: dict[str, Any], sensitive_keys: frozenset[str] | set[str] | None = None
) -> dict[str, Any]:
    """Mask sensitive values in a payload before it is logged.

    Args:
        data: Dictionary potentially containing sensitive data
        sensitive_keys: Keys to mask (uses SENSITIVE_KEYS if not provided)

    Returns:
        Copy of dictionary with sensitive values masked
    """
    keys = SENSITIVE_KEYS if sensitive_keys is None else sensitive_keys

    result: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            result[key] = mask_sensitive_data(value, keys)
        elif key.lower() in keys:
            result[key] = redact(value if isinstance(value, str) else str(value))
        else:
            result[key] = value

    return result
