import json
from typing import Any, Optional


def compact_json(payload: Any, limit: Optional[int] = 512) -> str:
    """Render a payload on one line for log output, cut at ``limit`` chars."""
    try:
        text = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=safe_str)
    except (TypeError, ValueError):
        text = safe_str(payload)
    if limit is not None and len(text) > limit:
        return text[:limit] + "..."
    return text


def safe_str(value: Any) -> str:
    try:
        return str(value)
    except Exception:
        return "<unprintable>"
