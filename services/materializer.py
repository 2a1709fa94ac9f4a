"""
Occurrence materialization: rule expansion with the exception overlay applied.

Nothing here writes to the database, so the same inputs always give the same
ordered output and reads can run in parallel.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy import or_

from models import Series, SeriesException, db
from services import exception_store
from services.ownership import get_owned_series
from services.recurrence_rules import expand, occurs_on, rule_for_series

DEFAULT_MAX_OCCURRENCES = 1000


@dataclass
class Occurrence:
    series_id: int
    instance_date: date
    start: datetime
    end: Optional[datetime]
    title: str
    description: Optional[str]
    exception_type: Optional[str] = None
    original_date: Optional[date] = None
    reminder_minutes: Optional[int] = None
    recurring: bool = True

    @property
    def sort_key(self):
        return (self.start, self.series_id, self.instance_date)

    def to_dict(self):
        return {
            'series_id': self.series_id,
            'instance_date': self.instance_date.isoformat(),
            'start': self.start.isoformat(),
            'end': self.end.isoformat() if self.end else None,
            'title': self.title,
            'description': self.description,
            'exception_type': self.exception_type,
            'original_date': self.original_date.isoformat() if self.original_date else None,
            'reminder_minutes': self.reminder_minutes,
            'recurring': self.recurring,
        }


def _max_occurrences():
    try:
        return int(current_app.config.get('SERIES_MAX_OCCURRENCES', DEFAULT_MAX_OCCURRENCES))
    except (TypeError, ValueError):
        return DEFAULT_MAX_OCCURRENCES


def _duration(series):
    if series.anchor_end is None:
        return None
    return series.anchor_end - series.anchor_start


def _at(day_value, time_of_day, not_before=None):
    value = datetime.combine(day_value, time_of_day)
    if not_before is not None and value < not_before:
        value += timedelta(days=1)
    return value


def _from_series(series, day_value):
    start = _at(day_value, series.anchor_start.time())
    duration = _duration(series)
    return Occurrence(
        series_id=series.id,
        instance_date=day_value,
        start=start,
        end=start + duration if duration is not None else None,
        title=series.title,
        description=series.description,
        reminder_minutes=series.reminder_minutes,
        recurring=series.is_recurring,
    )


def _modified(series, day_value, exc):
    occ = _from_series(series, day_value)
    occ.exception_type = 'modified'
    if exc.title is not None:
        occ.title = exc.title
    if exc.description is not None:
        occ.description = exc.description
    if exc.instance_start is not None:
        occ.start = _at(day_value, exc.instance_start.time())
        duration = _duration(series)
        if exc.instance_end is None and duration is not None:
            occ.end = occ.start + duration
    if exc.instance_end is not None:
        occ.end = _at(day_value, exc.instance_end.time(), not_before=occ.start)
    return occ


def _moved(series, exc):
    occ = _from_series(series, exc.instance_date)
    occ.exception_type = 'moved'
    occ.original_date = exc.original_date or exc.instance_date
    if exc.title is not None:
        occ.title = exc.title
    if exc.description is not None:
        occ.description = exc.description
    occ.start = exc.instance_start
    duration = _duration(series)
    if exc.instance_end is not None:
        occ.end = exc.instance_end
    else:
        occ.end = exc.instance_start + duration if duration is not None else None
    return occ


def materialize(series, window_start, window_end, exceptions=None, moved_in=None):
    """
    Occurrences of one series whose effective start falls in [window_start, window_end],
    sorted by start then series id.
    """
    if window_start is None or window_end is None or window_start > window_end:
        return []
    rule = rule_for_series(series)
    anchor = series.anchor_date
    if exceptions is None:
        exceptions = exception_store.get_exceptions(series.id, window_start, window_end)
    if moved_in is None:
        moved_in = exception_store.get_moved_into(series.id, window_start, window_end)

    limit = _max_occurrences()
    occurrences = []
    for day_value in expand(rule, anchor, window_start, window_end, series.recurrence_end_date):
        exc = exceptions.get(day_value) if series.is_recurring else None
        if exc is None:
            occurrences.append(_from_series(series, day_value))
        elif exc.exception_type == 'cancelled':
            continue
        elif exc.exception_type == 'moved' and exc.instance_start is not None:
            # Shown once, in whichever window holds its new start.
            if window_start <= exc.instance_start.date() <= window_end:
                occurrences.append(_moved(series, exc))
        else:
            occurrences.append(_modified(series, day_value, exc))
        if len(occurrences) >= limit:
            current_app.logger.warning(
                "Series %s expansion hit the %s occurrence limit for %s..%s",
                series.id, limit, window_start, window_end
            )
            break

    if series.is_recurring:
        for exc in moved_in:
            if window_start <= exc.instance_date <= window_end:
                continue
            if not occurs_on(rule, anchor, exc.instance_date, series.recurrence_end_date):
                continue
            occurrences.append(_moved(series, exc))

    occurrences.sort(key=lambda occ: occ.sort_key)
    return occurrences


def expand_occurrences(owner_id, series_id, window_start, window_end):
    """Read-only operation surface: the ordered occurrences of one owned series."""
    series = get_owned_series(owner_id, series_id)
    return materialize(series, window_start, window_end)


def _series_for_window(owner_id, window_start, window_end):
    window_from = datetime.combine(window_start, datetime.min.time())
    window_to = datetime.combine(window_end, datetime.max.time())
    moved_series_ids = db.session.query(SeriesException.series_id).filter(
        SeriesException.exception_type == 'moved',
        SeriesException.instance_start >= window_from,
        SeriesException.instance_start <= window_to
    )
    return Series.query.filter(
        Series.owner_id == owner_id,
        or_(
            Series.anchor_start <= window_to,
            Series.id.in_(moved_series_ids)
        ),
        or_(
            Series.recurrence_end_date.is_(None),
            Series.recurrence_end_date >= window_start,
            Series.id.in_(moved_series_ids)
        )
    ).order_by(Series.id).all()


def materialize_for_owner(owner_id, window_start, window_end):
    """Every occurrence of every series the owner has, merged into one ordered list."""
    if window_start is None or window_end is None or window_start > window_end:
        return []
    occurrences = []
    for series in _series_for_window(owner_id, window_start, window_end):
        occurrences.extend(materialize(series, window_start, window_end))
    occurrences.sort(key=lambda occ: occ.sort_key)
    return occurrences
