"""Date manipulation utilities"""

from datetime import date, datetime, timedelta


def add_days(from_date: date, days: int) -> date:
    """Calendar days, no business-day adjustment"""
    return from_date + timedelta(days=days)


def days_between(start: date, end: date) -> int:
    """Whole days from start to end; negative when end precedes start"""
    return (end - start).days


def add_minutes(moment: datetime, minutes: int) -> datetime:
    return moment + timedelta(minutes=minutes)
