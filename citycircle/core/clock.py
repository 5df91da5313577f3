"""
Clock used by the check-in and settlement services.

All timestamps are naive UTC datetimes, matching the DateTime columns. Services
take a zero-argument callable returning "now" so tests can move time forward
without sleeping.
"""
from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.current = start or utcnow()

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value
