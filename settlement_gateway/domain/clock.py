"""Injectable time source.

Deadline and interest logic never call ``datetime.now()`` or ``date.today()``
directly; they receive a Clock. Times are naive wall-clock values in the
business timezone, so deadline and day-count math never crosses a DST shift.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current naive local time."""
        ...

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    """Production clock: real time, projected into the business timezone"""

    def __init__(self, timezone_name: str):
        self._tz = ZoneInfo(timezone_name)

    def now(self) -> datetime:
        return datetime.now(self._tz).replace(tzinfo=None, microsecond=0)


class FixedClock(Clock):
    """Test clock that only moves when told to"""

    def __init__(self, fixed_time: datetime | None = None):
        self._time = fixed_time or datetime(2025, 1, 15, 9, 0, 0)

    def now(self) -> datetime:
        return self._time

    def set_time(self, time: datetime) -> None:
        self._time = time

    def advance(self, **delta) -> datetime:
        """Advance by a timedelta spec, e.g. ``advance(minutes=61)``."""
        self._time = self._time + timedelta(**delta)
        return self._time
