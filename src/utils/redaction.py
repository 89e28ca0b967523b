"""Credential redaction for logged and persisted error context.

Remote API credentials (consumer key/secret), webhook secrets and
signatures must never reach the error_records table or the logs. Keys
are matched case-insensitively by substring; free-text messages are
scrubbed with a key=value pattern because httpx error strings can carry
query-string credentials.
"""

import re
from typing import Any

_SENSITIVE_PATTERNS = frozenset({
    "secret", "token", "password", "authorization", "credential",
    "consumer_key", "consumer_secret", "signature", "api_key",
})

_REDACTED = "***REDACTED***"


def _is_sensitive_key(key: str) -> bool:
    key_lower = key.lower()
    return any(pattern in key_lower for pattern in _SENSITIVE_PATTERNS)


def redact_for_logging(obj: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of obj with sensitive values replaced.

    Args:
        obj: Dict to redact. Not mutated.

    Returns:
        New dict; nested dicts and lists of dicts are redacted recursively.
    """
    result: dict[str, Any] = {}
    for key, value in obj.items():
        if _is_sensitive_key(str(key)):
            result[key] = _REDACTED
        elif isinstance(value, dict):
            result[key] = redact_for_logging(value)
        elif isinstance(value, list):
            result[key] = [
                redact_for_logging(item) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value
    return result


_SENSITIVE_KEYWORDS = (
    r"consumer_key|consumer_secret|secret|token|password|"
    r"authorization|credential|signature|api_key"
)
_SENSITIVE_VALUE_PATTERN = re.compile(
    r"(?i)"
    r"(?:"
    r"Authorization\s*:\s*(?:Basic|Bearer)\s+\S+"
    r"|"
    r'"(?:' + _SENSITIVE_KEYWORDS + r')"\s*:\s*"[^"]*"'
    r"|"
    r"(?:" + _SENSITIVE_KEYWORDS + r")\s*[=:]\s*[^\s&\"']+"
    r")",
)


def sanitize_error_message(msg: str | None, max_length: int = 2000) -> str | None:
    """Redact credential-looking fragments and truncate for persistence.

    Args:
        msg: Error message (None passes through).
        max_length: Maximum length of the result.

    Returns:
        Sanitized message, or None.
    """
    if msg is None:
        return None
    sanitized = _SENSITIVE_VALUE_PATTERN.sub(_REDACTED, msg)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length - 3] + "..."
    return sanitized
