"""
Series lifecycle: create, update, truncate, delete and split.

Writes that move a series' end date go through a compare-and-set UPDATE that
re-checks owner, recurrence type and row version in the same statement, so
two requests racing on one series cannot both win.
"""

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from models import Series, SeriesException, SeriesTag, db
from services import exception_store
from services.conflict_service import MaterializedConflictDetector
from services.errors import BadRequest, Conflict, InternalError, OverlapConflict
from services.overrides import Overrides
from services.ownership import get_owned_series, get_owned_tags
from services.recurrence_rules import (
    count_before,
    first_occurrence,
    occurs_on,
    parse_rule,
    rule_for_series,
)
from services.validation_service import parse_bool, parse_int

series_table = Series.__table__

SERIES_FIELDS = (
    'title', 'description', 'anchor_start', 'anchor_end', 'recurrence_type',
    'rule', 'end_date', 'reminder_minutes', 'tag_ids',
)


def _strict_tag_copy():
    return parse_bool(current_app.config.get('SERIES_STRICT_TAG_COPY'), default=False)


def _clean_title(raw):
    title = (raw or '').strip()
    if not title:
        raise BadRequest("Title is required")
    return title


def _check_anchor(anchor_start, anchor_end):
    if anchor_start is None:
        raise BadRequest("anchor_start is required")
    if anchor_end is not None and anchor_end < anchor_start:
        raise BadRequest("anchor_end must not be before anchor_start")


def _check_bounds(rule, anchor_date, end_date):
    """End date must not come before the first occurrence; returns that occurrence."""
    if not rule.is_recurring:
        return anchor_date
    if end_date is not None and end_date < anchor_date:
        raise BadRequest("Recurrence end date is before the series start")
    first = first_occurrence(rule, anchor_date, end_date)
    if first is None:
        if end_date is not None or rule.count is not None or rule.until is not None:
            raise BadRequest("Recurrence ends before its first occurrence")
        raise BadRequest("Recurrence rule produces no occurrences")
    return first


def _check_conflicts(owner_id, anchor_start, anchor_end, first_day, detector, exclude_series_id=None):
    start = datetime.combine(first_day, anchor_start.time())
    end = start + (anchor_end - anchor_start) if anchor_end is not None else None
    overlaps = detector.find_overlaps(owner_id, start, end, exclude_series_id=exclude_series_id)
    if overlaps:
        first = overlaps[0]
        raise OverlapConflict(
            f'"{first.title}" is scheduled during this time. Create anyway?',
            overlaps,
        )


def create_series(owner_id, title, anchor_start, anchor_end=None, recurrence_type='none', rule=None,
                  end_date=None, description=None, tag_ids=None, reminder_minutes=None,
                  check_conflicts=False, detector=None):
    """Validate and persist a new series. Nothing is written when validation fails."""
    title = _clean_title(title)
    _check_anchor(anchor_start, anchor_end)
    parsed_rule = parse_rule(recurrence_type, rule)
    if not parsed_rule.is_recurring:
        end_date = None
    first_day = _check_bounds(parsed_rule, anchor_start.date(), end_date)
    tags = get_owned_tags(owner_id, tag_ids)
    if check_conflicts:
        _check_conflicts(owner_id, anchor_start, anchor_end, first_day,
                         detector or MaterializedConflictDetector())

    series = Series(
        owner_id=owner_id,
        title=title,
        description=description,
        anchor_start=anchor_start,
        anchor_end=anchor_end,
        recurrence_type=parsed_rule.type,
        recurrence_rule=parsed_rule.to_rrule(),
        recurrence_end_date=end_date,
        reminder_minutes=reminder_minutes,
    )
    try:
        db.session.add(series)
        db.session.flush()
        for tag in tags:
            db.session.add(SeriesTag(series_id=series.id, tag_id=tag.id))
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("Creating series for user %s failed: %s", owner_id, exc)
        raise InternalError("Could not create the series") from exc
    current_app.logger.info("Created %s series %s for user %s", series.recurrence_type, series.id, owner_id)
    return series


def _prune_stale_exceptions(series):
    """Drop exceptions whose date the current rule no longer produces (no commit)."""
    rule = rule_for_series(series)
    stale = [
        ex for ex in SeriesException.query.filter_by(series_id=series.id).all()
        if not series.is_recurring
        or not occurs_on(rule, series.anchor_date, ex.instance_date, series.recurrence_end_date)
    ]
    for ex in stale:
        db.session.delete(ex)
    return len(stale)


def _replace_tag_links(series, tag_ids):
    # Keep surviving rows so the (series_id, tag_id) constraint never sees a duplicate mid-flush.
    for link in list(series.tag_links):
        if link.tag_id not in tag_ids:
            series.tag_links.remove(link)
    existing = set(series.tag_ids())
    for tag_id in tag_ids:
        if tag_id not in existing:
            series.tag_links.append(SeriesTag(tag_id=tag_id))


def update_series(owner_id, series_id, changes, expected_version=None):
    """
    Apply a partial update to the series itself (the "all" edit scope).
    `changes` is an Overrides over SERIES_FIELDS; absent keys are left alone.
    """
    series = get_owned_series(owner_id, series_id)
    if expected_version is not None:
        seen_version = parse_int(expected_version)
        if seen_version is None or isinstance(expected_version, bool):
            raise BadRequest("Invalid version")
        if seen_version != series.version:
            raise Conflict("The series was changed by another request; reload and try again")

    title = _clean_title(changes.get('title')) if changes.provided('title') else series.title
    anchor_start = changes.get('anchor_start') if changes.provided('anchor_start') else series.anchor_start
    anchor_end = changes.get('anchor_end') if changes.provided('anchor_end') else series.anchor_end
    _check_anchor(anchor_start, anchor_end)

    rule_changed = changes.provided('recurrence_type') or changes.provided('rule')
    recurrence_type = changes.get('recurrence_type') if changes.provided('recurrence_type') else series.recurrence_type
    rule_input = changes.get('rule') if changes.provided('rule') else series.recurrence_rule
    if changes.provided('recurrence_type') and not changes.provided('rule') and recurrence_type != series.recurrence_type:
        rule_input = None
    parsed_rule = parse_rule(recurrence_type, rule_input)
    end_date = changes.get('end_date') if changes.provided('end_date') else series.recurrence_end_date
    if not parsed_rule.is_recurring:
        end_date = None
    _check_bounds(parsed_rule, anchor_start.date(), end_date)
    tags = get_owned_tags(owner_id, changes.get('tag_ids')) if changes.provided('tag_ids') else None

    timeline_changed = (
        rule_changed
        or anchor_start.date() != series.anchor_date
        or end_date != series.recurrence_end_date
    )
    series.title = title
    if changes.provided('description'):
        series.description = changes.get('description')
    series.anchor_start = anchor_start
    series.anchor_end = anchor_end
    series.recurrence_type = parsed_rule.type
    series.recurrence_rule = parsed_rule.to_rrule()
    series.recurrence_end_date = end_date
    if changes.provided('reminder_minutes'):
        series.reminder_minutes = changes.get('reminder_minutes')
    try:
        if tags is not None:
            _replace_tag_links(series, [tag.id for tag in tags])
        pruned = _prune_stale_exceptions(series) if timeline_changed else 0
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        raise Conflict("The series was changed by another request; reload and try again") from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("Updating series %s failed: %s", series_id, exc)
        raise InternalError("Could not update the series") from exc
    if pruned:
        current_app.logger.info("Pruned %s stale exceptions from series %s", pruned, series.id)
    return series


def _compare_and_set_end_date(series_id, owner_id, seen_version, end_date, updated_at):
    """
    Move the end date only if the row is still the one we read: same owner,
    still recurring, same version. Bumps the version. Does not commit.
    """
    result = db.session.execute(
        update(series_table)
        .where(
            series_table.c.id == series_id,
            series_table.c.owner_id == owner_id,
            series_table.c.recurrence_type != 'none',
            series_table.c.version == seen_version,
        )
        .values(
            recurrence_end_date=end_date,
            updated_at=updated_at,
            version=seen_version + 1,
        )
    )
    if result.rowcount != 1:
        db.session.rollback()
        raise Conflict("The series was changed by another request; reload and try again")
    return seen_version + 1


def truncate_series(owner_id, series_id, from_date):
    """End the series the day before `from_date` and drop exceptions past the new end."""
    series = get_owned_series(owner_id, series_id)
    if not series.is_recurring:
        raise BadRequest("Only recurring series can be ended early")
    rule = rule_for_series(series)
    first_day = first_occurrence(rule, series.anchor_date, series.recurrence_end_date)
    if first_day is None or from_date <= first_day:
        raise BadRequest("Ending the series before its first occurrence would leave nothing; delete it instead")
    new_end = from_date - timedelta(days=1)
    if series.recurrence_end_date is not None and new_end >= series.recurrence_end_date:
        return series

    series_pk, seen_version = series.id, series.version
    try:
        _compare_and_set_end_date(series_pk, owner_id, seen_version, new_end, datetime.utcnow())
        dropped = exception_store.delete_from(series_pk, from_date)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise InternalError("Could not end the series") from exc
    current_app.logger.info("Series %s now ends %s (%s exceptions dropped)", series_pk, new_end, dropped)
    db.session.expire_all()
    return get_owned_series(owner_id, series_pk)


def delete_series(owner_id, series_id):
    series = get_owned_series(owner_id, series_id)
    series_pk = series.id
    try:
        db.session.delete(series)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise InternalError("Could not delete the series") from exc
    current_app.logger.info("Deleted series %s for user %s", series_pk, owner_id)
    return True


# --- split -------------------------------------------------------------------

def _split_anchor(parent, split_date, overrides):
    """
    New anchor: the parent's time of day (and duration) on the split date.
    Supplied instance_start/instance_end win, but their time of day is what
    moves; the anchor date stays on the split date so the timeline has no gap.
    """
    duration = parent.anchor_end - parent.anchor_start if parent.anchor_end is not None else None
    start = datetime.combine(split_date, parent.anchor_start.time())
    override_start = overrides.get('instance_start')
    override_end = overrides.get('instance_end')
    if override_start is not None:
        start = datetime.combine(split_date, override_start.time())
        if override_end is not None:
            duration = override_end - override_start
    end = start + duration if duration is not None else None
    if override_end is not None and override_start is None:
        end = datetime.combine(split_date, override_end.time())
        if end < start:
            end += timedelta(days=1)
    elif overrides.provided('instance_end') and override_end is None:
        end = None
    if end is not None and end < start:
        raise BadRequest("instance_end must not be before instance_start")
    return start, end


def _insert_split_series(values, split_date, parent_id):
    """Create the new series and hand it the parent's exceptions from split_date on."""
    child = Series(**values)
    db.session.add(child)
    db.session.flush()
    SeriesException.query.filter(
        SeriesException.series_id == parent_id,
        SeriesException.instance_date >= split_date
    ).update({'series_id': child.id}, synchronize_session=False)
    db.session.commit()
    return child.id


def _copy_tag_links(child_id, tag_ids):
    for tag_id in tag_ids:
        db.session.add(SeriesTag(series_id=child_id, tag_id=tag_id))
    db.session.commit()


def _restore_parent(parent_id, owner_id, version, end_date, updated_at):
    """Put the parent's end date and timestamp back after a failed split."""
    try:
        _compare_and_set_end_date(parent_id, owner_id, version, end_date, updated_at)
        db.session.commit()
    except (Conflict, SQLAlchemyError) as exc:
        db.session.rollback()
        current_app.logger.error("Restoring series %s after a failed split failed: %s", parent_id, exc)
        raise InternalError(
            "The split failed and the original series could not be restored"
        ) from exc
    current_app.logger.info("Restored series %s after a failed split", parent_id)


def _discard_child(child_id, parent_id):
    """Remove a half-made split series, handing its exceptions back to the parent."""
    try:
        child = db.session.get(Series, child_id)
        if child is not None:
            SeriesException.query.filter_by(series_id=child_id).update(
                {'series_id': parent_id}, synchronize_session=False
            )
            db.session.expire(child, ['exceptions'])
            db.session.delete(child)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("Removing series %s after a failed tag copy failed: %s", child_id, exc)
        raise InternalError("The split failed part-way and could not be undone") from exc


def split_series(owner_id, series_id, split_date, overrides=None):
    """
    End the series the day before `split_date` and continue it as a new,
    independent series from `split_date` on.

    Returns {'parent_id', 'new_series_id', 'split_date'}. If creating the new
    series fails the parent's end date and updated_at are restored before the
    InternalError surfaces. A failed tag copy is only logged unless
    SERIES_STRICT_TAG_COPY is set.
    """
    overrides = overrides or Overrides()
    parent = get_owned_series(owner_id, series_id)
    if not parent.is_recurring:
        raise BadRequest("A non-recurring series cannot be split")
    if split_date is None:
        raise BadRequest("Invalid split date")

    rule = rule_for_series(parent)
    anchor = parent.anchor_date
    original_end = parent.recurrence_end_date
    if not occurs_on(rule, anchor, split_date, original_end):
        raise BadRequest(f"{split_date.isoformat()} is not an occurrence of this series")
    if split_date == first_occurrence(rule, anchor, original_end):
        raise BadRequest("Cannot split a series at its first occurrence")

    parent_id = parent.id
    seen_version = parent.version
    seen_updated_at = parent.updated_at
    tag_ids = parent.tag_ids()

    new_start, new_end = _split_anchor(parent, split_date, overrides)
    child_rule = rule.with_anchor_defaults(anchor)
    if child_rule.count is not None:
        child_rule.count -= count_before(rule, anchor, split_date, original_end)
    title = (overrides.value_or('title', '') or '').strip() or parent.title
    description = overrides.get('description') if overrides.provided('description') else parent.description
    child_values = {
        'owner_id': owner_id,
        'title': title,
        'description': description,
        'anchor_start': new_start,
        'anchor_end': new_end,
        'recurrence_type': parent.recurrence_type,
        'recurrence_rule': child_rule.to_rrule(),
        'recurrence_end_date': original_end,
        'reminder_minutes': parent.reminder_minutes,
    }

    # Step 1: the parent now ends the day before the split.
    try:
        parent_version = _compare_and_set_end_date(
            parent_id, owner_id, seen_version, split_date - timedelta(days=1), datetime.utcnow()
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise InternalError("Could not split the series") from exc

    # Step 2: the continuation series.
    try:
        child_id = _insert_split_series(child_values, split_date, parent_id)
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("Split of series %s at %s failed creating the new series: %s",
                                 parent_id, split_date, exc)
        _restore_parent(parent_id, owner_id, parent_version, original_end, seen_updated_at)
        raise InternalError("Could not split the series; no changes were made") from exc

    # Step 3: tag links are copied, never shared.
    try:
        _copy_tag_links(child_id, tag_ids)
    except SQLAlchemyError as exc:
        db.session.rollback()
        if _strict_tag_copy():
            current_app.logger.error("Tag copy for split series %s failed, undoing split: %s", child_id, exc)
            _discard_child(child_id, parent_id)
            _restore_parent(parent_id, owner_id, parent_version, original_end, seen_updated_at)
            raise InternalError("Could not copy tags to the new series; no changes were made") from exc
        current_app.logger.warning("Tag copy from series %s to %s failed; new series has no tags: %s",
                                   parent_id, child_id, exc)

    current_app.logger.info("Split series %s at %s into %s", parent_id, split_date, child_id)
    db.session.expire_all()
    return {'parent_id': parent_id, 'new_series_id': child_id, 'split_date': split_date}
