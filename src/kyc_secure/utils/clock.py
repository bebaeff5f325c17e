"""Wall-clock and random-source helpers.

The engine takes both as injectable callables so tests can pin time and
simulate an unavailable random source.
"""

import secrets
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]
RandomSource = Callable[[int], bytes]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def secure_random(size: int) -> bytes:
    """Return ``size`` bytes from the OS CSPRNG."""
    return secrets.token_bytes(size)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are assumed UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def timestamp_token(value: datetime) -> str:
    """Render a datetime as a fixed-format UTC string for signing."""
    return to_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
