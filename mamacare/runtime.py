"""
Clock and cancellation primitives injected into every service.
"""

from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo

from mamacare.errors import Cancelled


class SystemClock:
    """Wall clock in the configured local time zone."""

    def __init__(self, tz_name: str = "UTC"):
        self.tz: tzinfo = ZoneInfo(tz_name)

    def now(self) -> datetime:
        return datetime.now(timezone.utc).astimezone(self.tz)


class FixedClock:
    """Clock frozen at a given instant; ``advance`` moves it forward."""

    def __init__(self, instant: datetime, tz: Optional[tzinfo] = None):
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=tz or timezone.utc)
        self.tz: tzinfo = tz or instant.tzinfo
        self._now = instant.astimezone(self.tz)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


class Deadline:
    """Cancellation token carried through a single request."""

    def __init__(self, expires_at: datetime, clock):
        self.expires_at = expires_at
        self.clock = clock

    @classmethod
    def after(cls, clock, seconds: float) -> "Deadline":
        return cls(clock.now() + timedelta(seconds=seconds), clock)

    def expired(self) -> bool:
        return self.clock.now() >= self.expires_at

    def remaining_seconds(self) -> float:
        return max(0.0, (self.expires_at - self.clock.now()).total_seconds())

    def check(self, operation: str = "operation") -> None:
        if self.expired():
            raise Cancelled(
                f"{operation} cancelled: deadline exceeded",
                {"deadline": self.expires_at.isoformat()},
            )


def check_deadline(deadline: Optional[Deadline], operation: str) -> None:
    """Raise ``Cancelled`` if ``deadline`` is set and has elapsed."""
    if deadline is not None:
        deadline.check(operation)
