import secrets
import time
import uuid
from datetime import UTC, datetime, timedelta


def new_id(sortable: bool = True) -> str:
    """Return a fresh local identifier.

    Sortable ids start with a 12 hex digit millisecond timestamp, so they
    order lexicographically by creation time. Non-sortable ids are UUID4s.
    """
    if not sortable:
        return str(uuid.uuid4())
    millis = time.time_ns() // 1_000_000
    return f"{millis:012x}{secrets.token_hex(10)}"


class MonotonicClock:
    """Wall clock that never returns the same instant twice."""

    _TICK = timedelta(microseconds=1)

    def __init__(self) -> None:
        self._last: datetime | None = None

    def __call__(self) -> datetime:
        now = datetime.now(UTC)
        if self._last is not None and now <= self._last:
            now = self._last + self._TICK
        self._last = now
        return now
