"""
Per-date occurrence overrides, keyed by (series_id, instance_date).

The low-level adapter (get/upsert/delete) only enforces the one-row-per-key
rule. The public operations upsert_exception/delete_exception add the
ownership and validity checks callers need.
"""

from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import EXCEPTION_TYPES, SeriesException, db
from services.errors import BadRequest, InternalError
from services.overrides import OCCURRENCE_FIELDS, Overrides
from services.ownership import get_owned_series
from services.recurrence_rules import occurs_on, rule_for_series


def get_exceptions(series_id, start_day, end_day):
    """Map of instance_date -> SeriesException for one series inside [start_day, end_day]."""
    if start_day is None or end_day is None or start_day > end_day:
        return {}
    rows = SeriesException.query.filter(
        SeriesException.series_id == series_id,
        SeriesException.instance_date >= start_day,
        SeriesException.instance_date <= end_day
    ).all()
    return {row.instance_date: row for row in rows}


def get_moved_into(series_id, start_day, end_day):
    """Moved exceptions whose new start falls inside the window, wherever they came from."""
    if start_day is None or end_day is None or start_day > end_day:
        return []
    window_start = datetime.combine(start_day, datetime.min.time())
    window_end = datetime.combine(end_day, datetime.max.time())
    return SeriesException.query.filter(
        SeriesException.series_id == series_id,
        SeriesException.exception_type == 'moved',
        SeriesException.instance_start >= window_start,
        SeriesException.instance_start <= window_end
    ).order_by(SeriesException.instance_start).all()


def _apply(row, exception_type, overrides):
    row.exception_type = exception_type
    for name in OCCURRENCE_FIELDS:
        if overrides.provided(name):
            setattr(row, name, overrides.get(name))
    if exception_type == 'moved':
        if overrides.provided('original_date') and overrides.get('original_date'):
            row.original_date = overrides.get('original_date')
        elif row.original_date is None:
            row.original_date = row.instance_date
    else:
        row.original_date = None
    return row


def upsert(series_id, instance_date, exception_type, overrides=None):
    """
    Insert or update the single exception for (series_id, instance_date).
    A concurrent insert of the same key turns into an update of that row.
    """
    overrides = overrides or Overrides()
    row = SeriesException.query.filter_by(series_id=series_id, instance_date=instance_date).first()
    if row is None:
        row = SeriesException(series_id=series_id, instance_date=instance_date)
        db.session.add(row)
    _apply(row, exception_type, overrides)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        row = SeriesException.query.filter_by(series_id=series_id, instance_date=instance_date).first()
        if row is None:
            raise
        _apply(row, exception_type, overrides)
        db.session.commit()
    return row


def delete(series_id, instance_date):
    deleted = SeriesException.query.filter_by(series_id=series_id, instance_date=instance_date).delete()
    db.session.commit()
    return bool(deleted)


def delete_from(series_id, first_day):
    """Drop every exception on or after `first_day` (no commit)."""
    return SeriesException.query.filter(
        SeriesException.series_id == series_id,
        SeriesException.instance_date >= first_day
    ).delete(synchronize_session=False)


def _validate_overrides(series, instance_date, exception_type, overrides):
    if exception_type not in EXCEPTION_TYPES:
        raise BadRequest(f"Invalid exception type: {exception_type}")
    if exception_type == 'cancelled':
        # Field overrides mean nothing on a suppressed occurrence.
        return Overrides(title=None, description=None, instance_start=None, instance_end=None)
    start = overrides.get('instance_start')
    end = overrides.get('instance_end')
    if exception_type == 'moved':
        if start is None:
            raise BadRequest("A moved occurrence needs instance_start")
        if not overrides.provided('instance_end') and series.anchor_end is not None:
            overrides = Overrides(
                instance_end=start + (series.anchor_end - series.anchor_start),
                **{name: overrides.get(name) for name in overrides.fields_set}
            )
            end = overrides.get('instance_end')
    if start is not None and end is not None and end < start:
        raise BadRequest("instance_end must not be before instance_start")
    return overrides


def upsert_exception(owner_id, series_id, instance_date, exception_type, overrides=None):
    """Create or update the override for one occurrence of an owned series."""
    overrides = overrides or Overrides()
    series = get_owned_series(owner_id, series_id)
    exception_type = (exception_type or '').lower()
    if not series.is_recurring:
        raise BadRequest("Only recurring series have per-occurrence exceptions")
    if instance_date is None:
        raise BadRequest("Invalid instance date")
    overrides = _validate_overrides(series, instance_date, exception_type, overrides)
    rule = rule_for_series(series)
    if not occurs_on(rule, series.anchor_date, instance_date, series.recurrence_end_date):
        raise BadRequest(f"{instance_date.isoformat()} is not an occurrence of this series")

    try:
        row = upsert(series.id, instance_date, exception_type, overrides)
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("Exception upsert failed for series %s on %s: %s", series.id, instance_date, exc)
        raise InternalError("Could not save the occurrence change") from exc
    current_app.logger.info("Saved %s exception for series %s on %s", exception_type, series.id, instance_date)
    return row


def delete_exception(owner_id, series_id, instance_date):
    """Remove the override for one date. Returns False when there was none."""
    series = get_owned_series(owner_id, series_id)
    try:
        return delete(series.id, instance_date)
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise InternalError("Could not remove the occurrence change") from exc
