"""Calendar helpers for slot dates and HH:MM times"""

from datetime import date, datetime, timedelta
from typing import Optional

from ...shared.validators import WEEKDAYS


def weekday_label(date_str: str) -> str:
    """'2024-05-01' -> 'WED'"""
    return WEEKDAYS[datetime.strptime(date_str, "%Y-%m-%d").weekday()]


def next_weekday_date(day: str, today: date) -> str:
    """Next calendar occurrence of a weekday label, counting today itself"""
    target = WEEKDAYS.index(day)
    days_ahead = (target - today.weekday() + 7) % 7
    return (today + timedelta(days=days_ahead)).isoformat()


def add_minutes(time_str: str, minutes: int) -> str:
    """Shift an HH:MM time, wrapping past midnight"""
    hours, mins = (int(part) for part in time_str.split(":"))
    total = (hours * 60 + mins + minutes) % (24 * 60)
    return f"{total // 60:02d}:{total % 60:02d}"


def slot_start(date_str: str, time_str: str) -> datetime:
    return datetime.strptime(f"{date_str} {time_str}", "%Y-%m-%d %H:%M")


def intervals_overlap(start_a: str, end_a: str, start_b: str, end_b: str) -> bool:
    # Zero-padded HH:MM strings compare chronologically
    return start_a < end_b and end_a > start_b


def in_date_range(date_str: Optional[str], start_date: Optional[str], end_date: Optional[str]) -> bool:
    if date_str is None:
        return False
    if start_date and date_str < start_date:
        return False
    if end_date and date_str > end_date:
        return False
    return True
