"""Redaction of request bodies before they are written to logs."""

from __future__ import annotations

from typing import Any

REDACTED = "[REDACTED]"
MAX_LOGGED_CONTENT = 1000

_SENSITIVE_KEYS = frozenset(
    {"authorization", "api_key", "apikey", "token", "password", "secret", "key"}
)


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return lowered in _SENSITIVE_KEYS or "key" in lowered or "secret" in lowered


def truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + "...[truncated]"


def redact_body(body: Any) -> Any:
    """Return a redacted copy of a JSON body.

    Values under credential-like keys become ``[REDACTED]`` at any depth,
    and long string ``content`` fields are truncated.  Non-container values
    are returned unchanged.
    """
    if isinstance(body, list):
        return [redact_body(item) for item in body]
    if not isinstance(body, dict):
        return body

    result: dict[str, Any] = {}
    for key, value in body.items():
        if _is_sensitive(key):
            result[key] = REDACTED
        elif key == "content" and isinstance(value, str):
            result[key] = truncate(value, MAX_LOGGED_CONTENT)
        else:
            result[key] = redact_body(value)
    return result
