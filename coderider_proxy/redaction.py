import re
from collections.abc import Mapping
from typing import Any
from urllib.parse import parse_qsl, urlencode

SENSITIVE_KEYS = {
    "authorization",
    "cookie",
    "x-api-key",
    "x-session-token",
    "x-access-token",
    "access_token",
    "refresh_token",
    "session_token",
    "api_key",
    "client_secret",
    "password",
    "token",
    "code",
}

REDACTION = "***REDACTED***"
BEARER_PATTERN = re.compile(r"(?i)(bearer\s+)\S+")


def redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: REDACTION if str(k).lower() in SENSITIVE_KEYS else redact(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    if isinstance(value, str):
        return BEARER_PATTERN.sub(rf"\1{REDACTION}", value)
    return value


def redact_mapping(payload: Mapping[str, Any]) -> dict[str, Any]:
    return redact(dict(payload))


def redact_query(query: str) -> str:
    # The OAuth callback carries the authorization code in its query string.
    if not query:
        return query
    pairs = parse_qsl(query, keep_blank_values=True)
    return urlencode([(k, REDACTION if k.lower() in SENSITIVE_KEYS else v) for k, v in pairs], safe="*")


def mask_secret(value: str | None, visible: int = 4) -> str:
    if not value:
        return "<unset>"
    if len(value) <= visible * 2:
        return REDACTION
    return f"{value[:visible]}...{value[-visible:]}"
