"""Secret redaction for log lines and persisted error text.

Bearer tokens and refresh tokens travel through the API client on every
call; anything that echoes a request body or an error string into a log
record or a database column goes through this module first.
"""

import re
from typing import Any

# Matched case-insensitively as substrings of dict keys
SENSITIVE_KEY_PATTERNS = frozenset({
    "token", "authorization", "password", "secret", "api_key", "credential",
})

# Keys whose whole value is replaced regardless of type
_CONTAINER_KEYS = frozenset({"headers", "credentials", "auth"})

REDACTED = "***REDACTED***"

_SENSITIVE_TEXT = re.compile(
    r"(?i)"
    r"(?:"
    r"Bearer\s+[A-Za-z0-9\-_.=]+"
    r"|"
    r'"(?:access_?token|refresh_?token|token|password|secret)"\s*:\s*"[^"]*"'
    r"|"
    r"(?:access_?token|refresh_?token|token|password|secret)\s*[=:]\s*\S+"
    r")",
)


def _is_sensitive_key(key: str) -> bool:
    key_lower = key.lower()
    return any(pattern in key_lower for pattern in SENSITIVE_KEY_PATTERNS)


def redact_for_logging(obj: Any) -> Any:
    """Return a copy of ``obj`` with secret-bearing values replaced.

    Args:
        obj: Dict (possibly nested, possibly holding lists) to redact.
            Non-dict values are returned unchanged.

    Returns:
        New structure with sensitive values replaced by ``***REDACTED***``.
        The input is not mutated.
    """
    if isinstance(obj, list):
        return [redact_for_logging(item) for item in obj]
    if not isinstance(obj, dict):
        return obj

    result = {}
    for key, value in obj.items():
        key_str = str(key)
        if key_str.lower() in _CONTAINER_KEYS or _is_sensitive_key(key_str):
            result[key] = REDACTED
        elif isinstance(value, (dict, list)):
            result[key] = redact_for_logging(value)
        else:
            result[key] = value
    return result


def sanitize_error_message(msg: str | None, max_length: int = 1000) -> str | None:
    """Redact token-looking fragments and truncate an error message.

    Used before an error string is stored on a label intent.

    Args:
        msg: Message to sanitize (None passes through).
        max_length: Maximum length of the result.

    Returns:
        Sanitized message, or None.
    """
    if msg is None:
        return None
    sanitized = _SENSITIVE_TEXT.sub(REDACTED, msg)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length - 3] + "..."
    return sanitized
