"""Normalization helpers.

Centralizes defensive parsing of producer payloads (numbers sent as
strings, placeholder values, second vs. millisecond epochs).
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or value == "--":
        return None
    if isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def normalize_timestamp_seconds(value: Any) -> float | None:
    """Normalize epoch timestamps to seconds.

    - Empty/missing -> None
    - <= 0 -> None
    - Milliseconds (> 1e11) -> seconds
    """

    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(ts) or ts <= 0:
        return None
    if ts > 1e11:
        ts /= 1000.0
    return ts


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Coerce datetimes, ISO strings and epoch numbers to an aware UTC datetime.

    Unparseable numbers yield ``None``; malformed ISO strings raise
    :class:`ValueError` so Pydantic reports them as validation errors.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    ts = normalize_timestamp_seconds(value)
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=UTC)
