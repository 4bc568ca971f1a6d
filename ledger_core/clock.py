"""
Clock abstraction

Supplies "today" to the ledger so grace periods, due dates and summaries can
be tested deterministically.
"""

from datetime import date, datetime, timedelta, timezone


class Clock:
    """Source of the current day and instant"""

    def today(self) -> date:
        raise NotImplementedError

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock in UTC"""

    def today(self) -> date:
        return datetime.now(timezone.utc).date()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock pinned to a given day, for tests and replays"""

    def __init__(self, today: date):
        self._today = today

    def today(self) -> date:
        return self._today

    def now(self) -> datetime:
        # Keep real time-of-day so created_at ordering stays monotonic
        current = datetime.now(timezone.utc)
        return datetime.combine(self._today, current.timetz())

    def set(self, today: date) -> None:
        self._today = today

    def advance(self, days: int = 1) -> date:
        self._today = self._today + timedelta(days=days)
        return self._today
