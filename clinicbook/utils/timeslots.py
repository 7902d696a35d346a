"""Helpers for HH:MM time labels and calendar ranges."""
import re
from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator, List, Optional, Tuple

TIME_LABEL_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"
_TIME_LABEL_RE = re.compile(TIME_LABEL_PATTERN)

def parse_time_label(label: str) -> time:
    """Parse a zero-padded ``HH:MM`` label."""
    if not isinstance(label, str) or not _TIME_LABEL_RE.match(label):
        raise ValueError(f"Time '{label}' must be in HH:MM format")
    hours, minutes = label.split(":")
    return time(int(hours), int(minutes))

def build_time_labels(start_time: str, end_time: str, granularity_minutes: int) -> List[str]:
    """Labels at fixed granularity covering ``[start_time, end_time)``."""
    start = parse_time_label(start_time)
    end = parse_time_label(end_time)
    if granularity_minutes <= 0:
        raise ValueError("Granularity must be a positive number of minutes")
    if start >= end:
        raise ValueError("Start time must be before end time")

    labels = []
    cursor = start.hour * 60 + start.minute
    stop = end.hour * 60 + end.minute
    while cursor < stop:
        labels.append(f"{cursor // 60:02d}:{cursor % 60:02d}")
        cursor += granularity_minutes
    return labels

def iter_dates(date_from: date, date_to: date, days_of_week: Optional[Iterable[int]] = None) -> Iterator[date]:
    """Dates in the inclusive range, optionally limited to ISO weekdays (1=Monday)."""
    allowed = set(days_of_week) if days_of_week else None
    current = date_from
    while current <= date_to:
        if allowed is None or current.isoweekday() in allowed:
            yield current
        current += timedelta(days=1)

def slot_datetime(day: date, label: str) -> datetime:
    return datetime.combine(day, parse_time_label(label))

def _minutes(label: str) -> int:
    parsed = parse_time_label(label)
    return parsed.hour * 60 + parsed.minute

def end_label(start_label: str, duration_minutes: int) -> str:
    """Label at which an interval ends; ``24:00`` stands for midnight."""
    end = _minutes(start_label) + duration_minutes
    if duration_minutes <= 0 or end > 24 * 60:
        raise ValueError("Appointment must start and end on the same day")
    return f"{end // 60:02d}:{end % 60:02d}"

def covering_run(
    slots: Iterable[Tuple[str, int]], start_label: str, duration_minutes: Optional[int] = None
) -> Optional[List[str]]:
    """Labels of the contiguous slots that cover an interval.

    ``slots`` are ``(time_label, duration_minutes)`` pairs of one physician
    and day. The run must begin exactly at ``start_label``. Returns ``None``
    when the slots leave a gap before the interval ends.
    """
    by_start = {_minutes(label): (label, length) for label, length in slots}
    cursor = _minutes(start_label)
    if cursor not in by_start:
        return None
    stop = cursor + (duration_minutes or by_start[cursor][1])

    run = []
    while cursor < stop:
        if cursor not in by_start:
            return None
        label, length = by_start[cursor]
        run.append(label)
        cursor += length
    return run
