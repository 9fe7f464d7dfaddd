from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

REDACTED = "***REDACTED***"

SENSITIVE_KEYS = frozenset(
    {
        "EVENTS_WEBHOOK_TOKEN",
        "X_WEBHOOK_SIGNATURE",
        "AUTHORIZATION",
        "API_KEY",
        "PASSWORD",
        "SECRET",
        "TOKEN",
    }
)

# Any key containing one of these is treated as a secret.
_SENSITIVE_FRAGMENTS = tuple(key.casefold() for key in SENSITIVE_KEYS) + ("signature",)
_SENSITIVE_COMPACT_KEYS = frozenset({"apikey", "auth", "accesstoken"})

_HEADER_PATTERN = re.compile(
    r"(?im)\b(authorization|x-webhook-signature|events_webhook_token)(\s*[:=]\s*)(bearer\s+)?([^\s,;]+)"
)
_QUERY_PATTERN = re.compile(r"(?i)([?&]?)(api_?key|signature|token)=([^&\s]+)")


def is_sensitive_key(key: object) -> bool:
    normalized = str(key).replace("-", "_").casefold()
    if normalized.replace("_", "") in _SENSITIVE_COMPACT_KEYS:
        return True
    return any(fragment in normalized for fragment in _SENSITIVE_FRAGMENTS)


def mask_secret(value: str) -> str:
    """Keep just enough of a secret to tell two of them apart in a log line."""

    if not value:
        return REDACTED
    if len(value) > 8:
        return value[:4] + "*" * (len(value) - 8) + value[-4:]
    hidden = len(value) - 2 if len(value) > 2 else len(value)
    return "*" * hidden + value[hidden:]


def sanitize_text(text: str, known_secrets: Iterable[str] = ()) -> str:
    redacted = str(text)
    for secret in known_secrets:
        if secret:
            redacted = redacted.replace(secret, mask_secret(str(secret)))
    redacted = _HEADER_PATTERN.sub(
        lambda m: f"{m.group(1)}{m.group(2)}{m.group(3) or ''}[REDACTED]", redacted
    )
    return _QUERY_PATTERN.sub(
        lambda m: f"{m.group(1)}{m.group(2)}={mask_secret(m.group(3))}", redacted
    )


def sanitize_mapping(d: Mapping[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in d.items():
        if is_sensitive_key(key):
            sanitized[str(key)] = REDACTED if value is None else mask_secret(str(value))
        else:
            sanitized[str(key)] = redact_data(value)
    return sanitized


def redact_data(value: Any) -> Any:
    if isinstance(value, Mapping):
        return sanitize_mapping(value)
    if isinstance(value, (list, tuple)):
        return type(value)(redact_data(item) for item in value)
    if isinstance(value, str):
        return sanitize_text(value)
    return value
