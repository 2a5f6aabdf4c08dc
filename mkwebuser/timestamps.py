"""Timezone-aware UTC timestamp helpers for the provisioning journal.

Journal entries are read back by operators on hosts with arbitrary local
timezones, so every serialized timestamp carries an explicit +00:00 offset.
"""

import time
from datetime import datetime, timezone


def now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def isonow() -> str:
    """Return the current UTC time as an ISO 8601 string with +00:00 offset."""
    return now().isoformat()


def deadline_after(seconds) -> float:
    """Monotonic deadline ``seconds`` from now, or infinity for no limit."""
    if seconds is None:
        return float("inf")
    return time.monotonic() + seconds


def expired(deadline: float) -> bool:
    """True once the monotonic clock has passed ``deadline``."""
    return time.monotonic() >= deadline
