"""
Helpers for parsing provider JSON event payloads (message-queue items and
webhook pushes).
"""

import json
from typing import Optional, Any


def safe_parse_json(raw_body) -> Optional[Any]:
    """Parse JSON bytes/str safely. Returns None on error."""
    try:
        if isinstance(raw_body, bytes):
            raw_body = raw_body.decode("utf-8", errors="replace")
        return json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
        return None


def first_present(data: dict, *keys: str) -> Any:
    """Value of the first key that is present and not empty."""
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def is_json_body(raw_body: bytes, content_type: str = "") -> bool:
    """Detect if the raw body is JSON (by content-type or by inspecting first byte)."""
    if "json" in content_type.lower():
        return True
    stripped = raw_body.lstrip()
    return stripped.startswith(b"{") or stripped.startswith(b"[")
