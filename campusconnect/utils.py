"""Utility helpers for CampusConnect."""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def parse_timestamp(value: object) -> datetime | None:
    """Coerce a stored timestamp (datetime or ISO string) into naive UTC."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, str):
        try:
            return to_naive_utc(datetime.fromisoformat(value))
        except ValueError:
            return None
    return None


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def new_id() -> str:
    return uuid.uuid4().hex


def unique(values: Iterable[str] | None) -> tuple[str, ...]:
    """Return values de-duplicated, keeping first-seen order."""

    seen: dict[str, None] = {}
    for value in values or ():
        if isinstance(value, str):
            seen.setdefault(value, None)
    return tuple(seen)
