"""Shared utilities."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import orjson

_WS_RE = re.compile(r"\s+")
_SECONDS_PER_DAY = 86_400.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


def json_dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode()


def json_loads(data: str | bytes) -> Any:
    return orjson.loads(data)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso_str(dt: datetime) -> str:
    # Fixed-width UTC strings so lexical order in sqlite matches time order.
    return ensure_utc(dt).isoformat(timespec="microseconds")


def parse_iso(s: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(s))


def age_in_days(dt: datetime, now: datetime | None = None) -> float:
    ref = now or utcnow()
    return max(0.0, (ensure_utc(ref) - ensure_utc(dt)).total_seconds() / _SECONDS_PER_DAY)


def collapse_whitespace(text: str) -> str:
    return _WS_RE.sub(" ", text or "").strip()


def clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def dedupe(items: list[str]) -> list[str]:
    """Drop duplicates, keeping first-seen order."""
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out
