"""
auth/clock.py -- Injectable time source.

Every expiry decision in auth/ (session expiry, token exp/nbf, refresh record
expiry, OAuth state age, key rotation age) goes through a Clock passed in at
construction time. Nothing in auth/ calls datetime.now() directly, which lets
tests move time forward without sleeping.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Callable returning the current time as a timezone-aware UTC datetime."""

    def __call__(self) -> datetime: ...


def utcnow() -> datetime:
    """Default Clock implementation."""
    return datetime.now(timezone.utc)
