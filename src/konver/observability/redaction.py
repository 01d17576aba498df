"""Redaction helpers for safe logging.

Phone numbers, WhatsApp JIDs and message bodies are personal data. Anything
taken from a webhook or an outbound request goes through these helpers before
it is attached to a log record.
"""

import hashlib
import re
from typing import Any

_JID_PATTERN = re.compile(r"\d{6,}@[\w.\-]+")
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

_REDACTED = "[REDACTED]"


def short_hash(value: str) -> str:
    """Non-reversible 12-char identifier for correlating log lines."""
    return hashlib.sha256(value.encode()).hexdigest()[:12]


def redact_string(value: str) -> str:
    """Replace JIDs, phone numbers and e-mail addresses in a string."""
    result = _JID_PATTERN.sub(_REDACTED, value)
    result = _PHONE_PATTERN.sub(_REDACTED, result)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    return result


def redact_value(value: Any) -> str:
    """Render any value as a log-safe string."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # structure only
        return f"dict(keys={sorted(str(k) for k in value.keys())})"
    if isinstance(value, (list, tuple)):
        return f"list(len={len(value)})"
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build an ``extra_fields`` dict with every value redacted."""
    return {k: redact_value(v) for k, v in kwargs.items()}
