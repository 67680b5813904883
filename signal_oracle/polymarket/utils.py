"""Shared utilities."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)


def safe_json(val: Any) -> list:
    """Parse a JSON-encoded string, or return as-is if already a list."""
    if isinstance(val, list):
        return val
    if isinstance(val, str):
        try:
            return json.loads(val)
        except (json.JSONDecodeError, TypeError):
            return []
    return []


def safe_float(val: Any, default: float = 0.0) -> float:
    """Coerce Gamma's stringly-typed numbers, falling back to ``default``."""
    try:
        return float(val)
    except (ValueError, TypeError):
        return default


def parse_timestamp(val: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string or epoch number into an aware datetime.

    Epoch values above 1e12 are treated as milliseconds.
    """
    if val is None or val == "":
        return None
    if isinstance(val, (int, float)):
        seconds = val / 1000 if val > 1e12 else val
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(val, str):
        text = val.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.debug("Unparseable timestamp: %s", val)
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None
