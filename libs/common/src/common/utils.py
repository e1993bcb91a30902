from __future__ import annotations

import hashlib
import math
from datetime import UTC, datetime


def now_utc() -> datetime:
    return datetime.now(UTC)


def now_utc_iso() -> str:
    return now_utc().isoformat()


def to_utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def parse_iso_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def content_digest(text: str) -> str:
    return hashlib.sha1(normalize_whitespace(text).encode()).hexdigest()


def unique_in_order(values: list[str]) -> list[str]:
    return list(dict.fromkeys(value for value in values if value))


def display_score(value: float) -> int:
    return math.floor(value + 0.5)
