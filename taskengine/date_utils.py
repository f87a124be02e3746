# taskengine/date_utils.py

from __future__ import annotations
import logging
from typing import Iterable, Optional, Tuple, Union
from datetime import datetime, date, time, timedelta, timezone
import re

logger = logging.getLogger(__name__)

DeadlineValue = Union[str, date, datetime, None]


def parse_deadline(value: DeadlineValue) -> Optional[datetime]:
    """
    Strict deadline parsing: ISO dates and date-times only.

    Returns an aware UTC datetime, or None when the value is absent or
    unparseable. Naive values are read as UTC. Never raises.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def earliest_deadline(values: Iterable[DeadlineValue]) -> Optional[str]:
    """
    Returns the earliest valid deadline, in the form it was given.
    Invalid or missing entries are skipped.
    """
    best_value: Optional[str] = None
    best_dt: Optional[datetime] = None
    for value in values:
        parsed = parse_deadline(value)
        if parsed is None:
            if value:
                logger.debug("Ignoring unparseable deadline %r", value)
            continue
        if best_dt is None or parsed < best_dt:
            best_dt = parsed
            best_value = value if isinstance(value, str) else value.isoformat()
    return best_value


def normalize_deadline(value: Optional[str], reference_datetime: Optional[datetime] = None) -> Optional[str]:
    """
    Deadline as stored on an extracted task: ISO strings pass through,
    natural phrases ("tomorrow at 3pm") are resolved against the
    reference time, anything else is dropped.
    """
    if not value:
        return None
    if parse_deadline(value) is not None:
        return value.strip()

    due_date, due_time, confidence = parse_natural_due_datetime(value, reference_datetime)
    if due_date is None:
        logger.debug("Dropping unparseable deadline %r", value)
        return None
    if due_time is None:
        return due_date
    return f"{due_date}T{due_time}:00"


def parse_natural_due_datetime(
    text: str,
    reference_datetime: Optional[datetime] = None
) -> Tuple[Optional[str], Optional[str], float]:
    """
    Parse natural language due date/time from text.

    Returns:
      (due_date_iso, due_time_24h, confidence)
      due_date_iso: YYYY-MM-DD or None
      due_time_24h: HH:MM or None
      confidence: float in [0,1]
    """
    ref_dt = reference_datetime or datetime.now(timezone.utc)
    t = (text or "").lower()

    due_date: Optional[date] = None
    due_time: Optional[str] = None
    confidence = 0.30

    # Relative dates
    if "today" in t:
        due_date = ref_dt.date()
        confidence = max(confidence, 0.85)
    elif "tomorrow" in t:
        due_date = (ref_dt + timedelta(days=1)).date()
        confidence = max(confidence, 0.90)
    elif "tonight" in t:
        due_date = ref_dt.date()
        due_time = "20:00"
        confidence = max(confidence, 0.80)

    # "next Monday" / "by Friday"
    m = re.search(r"\b(?:next|by|on)\s+(monday|mon|tuesday|tue|tues|wednesday|wed|thursday|thu|thur|thurs|friday|fri|saturday|sat|sunday|sun)\b", t)
    if m:
        wd = _weekday_to_int(m.group(1))
        due_date = _next_weekday(ref_dt.date(), wd)
        confidence = max(confidence, 0.88)

    # "Feb 20" / "February 20, 2026"
    m = re.search(
        r"\b(jan|january|feb|february|mar|march|apr|april|may|jun|june|jul|july|aug|august|sep|sept|september|oct|october|nov|november|dec|december)"
        r"\s+(\d{1,2})(?:st|nd|rd|th)?(?:,\s*(\d{4}))?\b",
        t
    )
    if m:
        month = _month_to_int(m.group(1))
        day = int(m.group(2))
        year = int(m.group(3)) if m.group(3) else ref_dt.year
        candidate = _safe_date(year, month, day)
        if candidate is not None:
            if m.group(3) is None and candidate < ref_dt.date():
                candidate = _safe_date(ref_dt.year + 1, month, day) or candidate
            due_date = candidate
            confidence = max(confidence, 0.92)

    # numeric date MM/DD or MM/DD/YYYY
    m = re.search(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?\b", t)
    if m:
        mm, dd = int(m.group(1)), int(m.group(2))
        yy = m.group(3)
        if yy is None:
            candidate = _safe_date(ref_dt.year, mm, dd)
            if candidate is not None and candidate < ref_dt.date():
                candidate = _safe_date(ref_dt.year + 1, mm, dd)
        else:
            year = int(yy)
            if year < 100:
                year += 2000
            candidate = _safe_date(year, mm, dd)
        if candidate is not None:
            due_date = candidate
            confidence = max(confidence, 0.90)

    # Time: 3pm / 3:30 pm / 15:30
    tm = re.search(
        r"\b(at\s+)?(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b|\b(at\s+)?([01]?\d|2[0-3]):([0-5]\d)\b",
        t
    )
    if tm:
        if tm.group(2) is not None:
            h = int(tm.group(2)) % 12
            minute = int(tm.group(3)) if tm.group(3) else 0
            if tm.group(4) == "pm":
                h += 12
            due_time = f"{h:02d}:{minute:02d}"
        else:
            h = int(tm.group(6))
            minute = int(tm.group(7))
            due_time = f"{h:02d}:{minute:02d}"

        confidence = max(confidence, 0.88 if due_date else 0.72)

    return (due_date.isoformat() if due_date else None, due_time, confidence)


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _weekday_to_int(day: str) -> int:
    d = day[:3].lower()
    mapping = {"mon": 0, "tue": 1, "wed": 2, "thu": 3, "fri": 4, "sat": 5, "sun": 6}
    return mapping[d]


def _next_weekday(d: date, target_weekday: int) -> date:
    days_ahead = (target_weekday - d.weekday()) % 7
    if days_ahead == 0:
        days_ahead = 7
    return d + timedelta(days=days_ahead)


def _month_to_int(month_str: str) -> int:
    m = month_str.strip().lower()
    month_map = {
        "jan": 1, "january": 1,
        "feb": 2, "february": 2,
        "mar": 3, "march": 3,
        "apr": 4, "april": 4,
        "may": 5,
        "jun": 6, "june": 6,
        "jul": 7, "july": 7,
        "aug": 8, "august": 8,
        "sep": 9, "sept": 9, "september": 9,
        "oct": 10, "october": 10,
        "nov": 11, "november": 11,
        "dec": 12, "december": 12
    }
    return month_map[m]
