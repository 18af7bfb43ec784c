"""Time helpers shared by services that take an injectable clock."""

from __future__ import annotations

import datetime as dt
from typing import Callable

Clock = Callable[[], dt.datetime]


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: dt.datetime) -> dt.datetime:
    """Attach UTC to naive values (SQLite drops tzinfo) and convert the rest."""

    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def as_utc_optional(value: dt.datetime | None) -> dt.datetime | None:
    return as_utc(value) if value is not None else None


__all__ = ["Clock", "as_utc", "as_utc_optional", "utcnow"]
