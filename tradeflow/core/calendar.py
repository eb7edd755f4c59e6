"""Trading calendars used to turn signal durations into expiry instants."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Protocol

import pandas_market_calendars as mcal


class TradingCalendar(Protocol):
    """Anything that can step forward N trading sessions."""

    def add_sessions(self, start: datetime, sessions: int) -> datetime: ...


class ExchangeCalendar:
    """Exchange session calendar backed by pandas_market_calendars.

    Each instance keeps its own cache of trading days; nothing is shared
    across instances.
    """

    def __init__(self, name: str = "NYSE") -> None:
        self.name = name
        self._calendar = mcal.get_calendar(name)
        # Manual cache: (start_date, end_date) -> tuple of trading days
        self._cache: dict[tuple[date, date], tuple[date, ...]] = {}

    def get_trading_days(self, start: date, end: date) -> tuple[date, ...]:
        """Return sorted tuple of trading days in [start, end].

        Results are cached, so the expensive pandas_market_calendars call
        only runs once per unique (start, end) pair.
        """
        key = (start, end)
        if key in self._cache:
            return self._cache[key]
        schedule = self._calendar.schedule(start_date=str(start), end_date=str(end))
        result = tuple(ts.date() for ts in schedule.index)
        self._cache[key] = result
        return result

    def add_sessions(self, start: datetime, sessions: int) -> datetime:
        """Move ``start`` forward by ``sessions`` trading days, keeping the time of day."""
        if sessions <= 0:
            return start
        first = start.date() + timedelta(days=1)
        # Generous window: holidays never remove more than a few days per week.
        span = sessions * 2 + 10
        while True:
            days = self.get_trading_days(first, first + timedelta(days=span))
            if len(days) >= sessions:
                return datetime.combine(days[sessions - 1], start.timetz())
            span *= 2


class WeekdayCalendar:
    """Monday to Friday sessions, no holidays."""

    def add_sessions(self, start: datetime, sessions: int) -> datetime:
        current = start
        remaining = sessions
        while remaining > 0:
            current += timedelta(days=1)
            if current.weekday() < 5:
                remaining -= 1
        return current


class ContinuousCalendar:
    """Every calendar day is a session (crypto-style markets)."""

    def add_sessions(self, start: datetime, sessions: int) -> datetime:
        return start + timedelta(days=max(sessions, 0))


def get_calendar(name: str) -> TradingCalendar:
    """Resolve a calendar by name. ``"24/7"`` and ``"weekdays"`` are built in."""
    if name == "24/7":
        return ContinuousCalendar()
    if name == "weekdays":
        return WeekdayCalendar()
    return ExchangeCalendar(name)
