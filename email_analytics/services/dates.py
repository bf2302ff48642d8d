"""
Defensive date resolution for provider exports.

Provider exports mix several timestamp styles inside one account's history:
ISO dates, ISO date-times with or without offsets, US and European slashed
dates with two- or four-digit years, free text such as
"March 4, 2025 at 10:00 AM EST", and occasionally epoch numbers. parse_date
tries each strategy in turn and returns Ok(datetime) or Err(reason).

Resolution chain:
1. Native values: datetime / date / pandas Timestamp / epoch seconds or ms
2. ISO date (YYYY-MM-DD), local midnight
3. ISO date-time (offset or trailing Z converted to local wall time)
4. M/D/Y or D/M/Y with optional time and AM/PM; two-digit years pivot at 70
5. Free text with timezone abbreviations, parenthetical zone names,
   commas and "at" stripped
6. Raw constructor (pandas.to_datetime) with and without a trailing Z

Every accepted value must land inside the caller's plausible year range.
All returned datetimes are naive local wall time.
"""

import logging
import math
import re
import warnings
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, List, Optional
from zoneinfo import ZoneInfo

import numpy as np
import pandas as pd

from email_analytics.models.result import Err, Ok, Result

logger = logging.getLogger(__name__)

# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_MIN_YEAR: int = 1900
DEFAULT_MAX_YEAR: int = 2100
DEFAULT_YEAR_PIVOT: int = 70

# Epoch numbers at or above this are milliseconds
EPOCH_MS_THRESHOLD: float = 1e11

_ISO_DATE = re.compile(r'^(\d{4})[-/](\d{1,2})[-/](\d{1,2})$')
_ISO_DATETIME = re.compile(r'^\d{4}-\d{2}-\d{2}[T ]\d{1,2}:\d{2}')
_SLASHED = re.compile(
    r'^(\d{1,2})[/.-](\d{1,2})[/.-](\d{2}|\d{4})'
    r'(?:[ T]+(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])?)?$'
)
_EPOCH_DIGITS = re.compile(r'^\d{10}$|^\d{13}$')
_TZ_ABBREVIATIONS = re.compile(r'\b(?:UTC|GMT|EST|EDT|CST|CDT|MST|MDT|PST|PDT)\b', re.IGNORECASE)
_PARENTHETICAL = re.compile(r'\([^)]*\)')
_TRAILING_OFFSET = re.compile(r'\s*[+-]\d{2}:?\d{2}$')
_AT_WORD = re.compile(r'\s+at\s+', re.IGNORECASE)
_WHITESPACE = re.compile(r'\s+')

FREE_TEXT_FORMATS: List[str] = [
    '%B %d %Y %I:%M %p',
    '%B %d %Y %I:%M:%S %p',
    '%b %d %Y %I:%M %p',
    '%b %d %Y %I:%M:%S %p',
    '%B %d %Y %H:%M',
    '%B %d %Y %H:%M:%S',
    '%b %d %Y %H:%M',
    '%b %d %Y %H:%M:%S',
    '%B %d %Y',
    '%b %d %Y',
    '%d %B %Y',
    '%d %b %Y',
    '%a %b %d %Y %H:%M:%S',
    '%A %B %d %Y',
]


# =============================================================================
# LOCAL TIME HELPERS
# =============================================================================

def to_local(moment: datetime, tz_name: Optional[str] = None) -> datetime:
    """
    Convert an aware datetime to naive local wall time.

    Naive datetimes are assumed to already be local and are returned unchanged.

    Args:
        moment: The datetime to convert.
        tz_name: IANA zone name; None means the system zone.
    """
    if moment.tzinfo is None:
        return moment
    target = ZoneInfo(tz_name) if tz_name else None
    return moment.astimezone(target).replace(tzinfo=None)


def start_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.min)


def end_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.max)


def is_plausible(moment: Any, min_year: int, max_year: int) -> bool:
    """Secondary sanity check used by queries on already-loaded records."""
    return isinstance(moment, datetime) and min_year <= moment.year <= max_year


def expand_two_digit_year(year: int, pivot: int = DEFAULT_YEAR_PIVOT) -> int:
    """Map a two-digit year: 71 -> 1971, 25 -> 2025 with the default pivot."""
    if year >= 100:
        return year
    return 1900 + year if year > pivot else 2000 + year


# =============================================================================
# STRATEGIES
# =============================================================================

def _from_epoch(number: float, tz_name: Optional[str]) -> Optional[datetime]:
    if not math.isfinite(number) or number <= 0:
        return None
    seconds = number / 1000 if number >= EPOCH_MS_THRESHOLD else number
    try:
        aware = datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return to_local(aware, tz_name)


def _from_iso_date(text: str) -> Optional[datetime]:
    match = _ISO_DATE.match(text)
    if not match:
        return None
    year, month, day = (int(part) for part in match.groups())
    try:
        return datetime(year, month, day)
    except ValueError:
        return None


def _from_iso_datetime(text: str, tz_name: Optional[str]) -> Optional[datetime]:
    if not _ISO_DATETIME.match(text):
        return None
    candidate = text[:-1] + '+00:00' if text.endswith(('Z', 'z')) else text
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    return to_local(parsed, tz_name)


def _from_slashed(text: str, pivot: int) -> Optional[datetime]:
    match = _SLASHED.match(text)
    if not match:
        return None
    first, second, year_text, hour, minute, second_text, meridiem = match.groups()
    month, day = int(first), int(second)
    # 25/12/2024 can only be day-first
    if month > 12 and day <= 12:
        month, day = day, month
    year = int(year_text)
    if len(year_text) == 2:
        year = expand_two_digit_year(year, pivot)

    hours = int(hour) if hour else 0
    minutes = int(minute) if minute else 0
    seconds = int(second_text) if second_text else 0
    if meridiem:
        meridiem = meridiem.upper()
        if hours == 12:
            hours = 0
        if meridiem == 'PM':
            hours += 12
    try:
        return datetime(year, month, day, hours, minutes, seconds)
    except ValueError:
        return None


def normalize_free_text(text: str) -> str:
    """
    Strip the decorations the provider adds to human-readable timestamps.

    >>> normalize_free_text("March 4, 2025 at 10:00 AM EST")
    'March 4 2025 10:00 AM'
    """
    cleaned = _PARENTHETICAL.sub(' ', text)
    cleaned = _TZ_ABBREVIATIONS.sub(' ', cleaned)
    cleaned = cleaned.replace(',', ' ')
    cleaned = _AT_WORD.sub(' ', cleaned)
    cleaned = _WHITESPACE.sub(' ', cleaned).strip()
    cleaned = _TRAILING_OFFSET.sub('', cleaned)
    return cleaned


def _from_free_text(text: str) -> Optional[datetime]:
    for fmt in FREE_TEXT_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _from_constructor(text: str, tz_name: Optional[str]) -> Optional[datetime]:
    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        try:
            stamp = pd.to_datetime(text, errors='coerce')
        except (ValueError, TypeError, OverflowError):
            return None
    if stamp is None or pd.isna(stamp):
        return None
    return to_local(stamp.to_pydatetime(), tz_name)


# =============================================================================
# PUBLIC API
# =============================================================================

def parse_date(
    value: Any,
    min_year: int = DEFAULT_MIN_YEAR,
    max_year: int = DEFAULT_MAX_YEAR,
    pivot: int = DEFAULT_YEAR_PIVOT,
    tz_name: Optional[str] = None,
) -> Result[datetime]:
    """
    Resolve a raw export value to a local datetime.

    Args:
        value: Raw cell value (string, number, datetime, or empty).
        min_year: Earliest plausible year (inclusive).
        max_year: Latest plausible year (inclusive).
        pivot: Two-digit years above the pivot map to the 1900s.
        tz_name: IANA zone used for aware values; None = system zone.

    Returns:
        Ok(datetime) when a strategy succeeds and the year is plausible,
        otherwise Err describing why the value was rejected.

    Example:
        >>> parse_date("03/04/25").value
        datetime.datetime(2025, 3, 4, 0, 0)
        >>> parse_date("NEVER_SUBSCRIBED").ok
        False
    """
    resolved = _resolve(value, pivot, tz_name)
    if isinstance(resolved, Err):
        return resolved

    moment = resolved.value
    if not min_year <= moment.year <= max_year:
        return Err(f"Date {moment.isoformat()} outside plausible range {min_year}-{max_year}")
    return resolved


def _resolve(value: Any, pivot: int, tz_name: Optional[str]) -> Result[datetime]:
    if value is None:
        return Err("Empty date value")

    if isinstance(value, datetime):
        if pd.isna(value):
            return Err("Missing timestamp")
        if isinstance(value, pd.Timestamp):
            value = value.to_pydatetime()
        return Ok(to_local(value, tz_name))

    if isinstance(value, date):
        return Ok(datetime.combine(value, time.min))

    if isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool):
        moment = _from_epoch(float(value), tz_name)
        return Ok(moment) if moment else Err(f"Invalid epoch value: {value}")

    text = str(value).strip()
    if not text:
        return Err("Empty date value")

    if text.isdigit():
        if _EPOCH_DIGITS.match(text):
            moment = _from_epoch(float(text), tz_name)
            if moment:
                return Ok(moment)
        return Err(f"Unrecognized numeric date: {text}")

    for strategy in (
        lambda: _from_iso_date(text),
        lambda: _from_iso_datetime(text, tz_name),
        lambda: _from_slashed(text, pivot),
    ):
        moment = strategy()
        if moment is not None:
            return Ok(moment)

    cleaned = normalize_free_text(text)
    moment = _from_slashed(cleaned, pivot) or _from_free_text(cleaned)
    if moment is not None:
        return Ok(moment)

    moment = _from_constructor(cleaned, tz_name) or _from_constructor(text + 'Z', tz_name)
    if moment is not None:
        return Ok(moment)

    return Err(f"Unparseable date: {text!r}")


def add_years(moment: datetime, years: int) -> datetime:
    """Shift by whole years; Feb 29 falls back to Feb 28."""
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        return moment.replace(year=moment.year + years, day=28)


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from start to end (floor), matching lifetime calculations."""
    return math.floor((end - start) / timedelta(days=1))


__all__ = [
    'parse_date',
    'normalize_free_text',
    'expand_two_digit_year',
    'to_local',
    'start_of_day',
    'end_of_day',
    'is_plausible',
    'add_years',
    'days_between',
]
