from __future__ import annotations

import re

_SENSITIVE_ASSIGNMENT_RE = re.compile(
    r"(?i)\b(api[_-]?key|access[_-]?token|refresh[_-]?token|token|password|passwd|secret)\b(\s*[:=]\s*)([^\s,;]+)"
)
_SENSITIVE_QUERY_RE = re.compile(
    r"(?i)([?&](?:api[_-]?key|access[_-]?token|token|secret)=)([^&\s]+)"
)
_SENSITIVE_BEARER_RE = re.compile(r"(?i)\b(bearer\s+)([^\s,;'\"]+)")
_URL_USERINFO_RE = re.compile(r"(?i)(https?://)([^/@\s]+)@")


def redact_sensitive_text(value: str | None, *, extra_secrets: tuple[str, ...] = ()) -> str | None:
    """Mask credentials in upstream error text before it reaches the logs."""
    if value is None:
        return None

    redacted = _SENSITIVE_ASSIGNMENT_RE.sub(r"\1\2[REDACTED]", value)
    redacted = _SENSITIVE_QUERY_RE.sub(r"\1[REDACTED]", redacted)
    redacted = _SENSITIVE_BEARER_RE.sub(r"\1[REDACTED]", redacted)
    redacted = _URL_USERINFO_RE.sub(r"\1[REDACTED]@", redacted)
    for secret in extra_secrets:
        if secret:
            redacted = redacted.replace(secret, "[REDACTED]")
    return redacted
