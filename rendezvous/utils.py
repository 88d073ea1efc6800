"""Shared utility functions used across Rendezvous modules."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def join_or(items: list[str] | None, fallback: str = "Not specified") -> str:
    return ", ".join(i for i in (items or []) if i) or fallback


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
