"""
Utility functions shared across the app. This includes:
- utcnow: naive UTC timestamp used for column defaults and comparisons.
- token_digest: stable digest for API bearer tokens.
- normalize_payload: camelCase -> snake_case keys for JSON bodies.
- parse_optional_int / client_ip: request parsing helpers.
"""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any, Mapping

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")


def utcnow() -> datetime:
    """Naive UTC 'now' (the database stores naive UTC datetimes)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def token_digest(token: str) -> str:
    """SHA-256 hex digest of an API token; only digests are stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def to_snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"_\1", name).lower()


def normalize_payload(data: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Return a flat dict with snake_case keys.

    Clients send either `supplierName` or `supplier_name`; forms only know the latter.
    Nested objects are kept as-is (only top-level keys are renamed).
    """
    if not data:
        return {}
    return {to_snake_case(str(key)): value for key, value in data.items()}


def parse_optional_int(value: Any) -> int | None:
    """Parse optional int from query/body. Returns None if empty/invalid."""
    if value is None:
        return None
    raw = str(value).strip()
    if raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def client_ip(request) -> str:
    """
    Client address for audit snapshots and anonymous throttling keys.

    SECURITY NOTE:
    - X-Forwarded-For is never read here. Behind a trusted proxy set PROXY_FIX_X_FOR so
      ProxyFix rewrites remote_addr.
    """
    return request.remote_addr or "local"
