from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime
from typing import Any


def now_utc_iso() -> str:
    return datetime.now(UTC).isoformat()


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def normalize_text(text: str) -> str:
    squashed = normalize_whitespace(text).lower()
    alnum_only = re.sub(r"[^a-z0-9\s]+", " ", squashed)
    return normalize_whitespace(alnum_only)


def parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string, treating naive values as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def log_event(
    logger: logging.Logger,
    event: str,
    *,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    payload = {"event": event, **fields}
    logger.log(level, json.dumps(payload, default=str))
