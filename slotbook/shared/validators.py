"""Shared validation utilities"""

import re
from datetime import datetime
from typing import Optional

WEEKDAYS = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

_WEEKDAY_ALIASES = {
    "MONDAY": "MON",
    "TUESDAY": "TUE",
    "WEDNESDAY": "WED",
    "THURSDAY": "THU",
    "FRIDAY": "FRI",
    "SATURDAY": "SAT",
    "SUNDAY": "SUN",
}


def validate_date_string(value: Optional[str]) -> Optional[str]:
    """
    Validate a calendar date and normalise it to zero-padded YYYY-MM-DD.

    Accepts "2024-5-1" and returns "2024-05-01".

    Raises:
        ValueError: If the value is not a real date in that format
    """
    if value is None:
        return value
    try:
        return datetime.strptime(value, "%Y-%m-%d").strftime("%Y-%m-%d")
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid date '{value}', expected YYYY-MM-DD") from e


def validate_time_string(value: Optional[str]) -> Optional[str]:
    """
    Validate and normalise a 24h clock time to HH:MM.

    Accepts "9:00" and returns "09:00".

    Raises:
        ValueError: If the value is not a valid time
    """
    if value is None:
        return value
    candidate = value.strip()
    if re.match(r"^\d:\d\d$", candidate):
        candidate = f"0{candidate}"
    if not _TIME_RE.match(candidate):
        raise ValueError(f"Invalid time '{value}', expected HH:MM")
    return candidate


def normalize_weekday(value: str) -> str:
    """Normalise 'monday', 'Mon' or 'MON' to the three-letter upper-case label"""
    token = (value or "").strip().upper()
    token = _WEEKDAY_ALIASES.get(token, token)
    if token not in WEEKDAYS:
        raise ValueError(f"Invalid weekday '{value}'")
    return token
