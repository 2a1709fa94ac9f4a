"""
Edit and delete requests made from one occurrence, resolved by scope:

  this           one exception for that date
  thisAndFuture  split at that date (edits) or end the series there (deletes)
  all            the series itself
"""

from datetime import datetime, timedelta

from services import exception_store, series_service
from services.errors import BadRequest
from services.overrides import OCCURRENCE_FIELDS, Overrides
from services.ownership import get_owned_series
from services.recurrence_rules import first_occurrence, rule_for_series

SCOPE_THIS = 'this'
SCOPE_THIS_AND_FUTURE = 'thisAndFuture'
SCOPE_ALL = 'all'
SCOPES = (SCOPE_THIS, SCOPE_THIS_AND_FUTURE, SCOPE_ALL)

# Fields that live on the series only and are applied after a split.
SERIES_ONLY_FIELDS = ('reminder_minutes', 'tag_ids')


def _normalize_scope(scope):
    if scope not in SCOPES:
        raise BadRequest(f"Invalid edit scope: {scope}")
    return scope


def _is_first_occurrence(series, instance_date):
    rule = rule_for_series(series)
    return instance_date == first_occurrence(rule, series.anchor_date, series.recurrence_end_date)


def _series_changes(series, changes):
    """
    Turn occurrence-level fields into a partial update of the series anchor.
    A recurring series only takes the time of day; a one-off event moves to
    the given datetimes.
    """
    values = {}
    for name in ('title', 'description') + SERIES_ONLY_FIELDS:
        if changes.provided(name):
            values[name] = changes.get(name)
    start = changes.get('instance_start')
    end = changes.get('instance_end')
    if start is not None:
        new_start = datetime.combine(series.anchor_date, start.time()) if series.is_recurring else start
        values['anchor_start'] = new_start
        if end is not None:
            values['anchor_end'] = new_start + (end - start)
        elif not changes.provided('instance_end') and series.anchor_end is not None:
            values['anchor_end'] = new_start + (series.anchor_end - series.anchor_start)
    if changes.provided('instance_end') and 'anchor_end' not in values:
        if end is None:
            values['anchor_end'] = None
        elif not series.is_recurring:
            values['anchor_end'] = end
        else:
            anchor_end = datetime.combine(series.anchor_date, end.time())
            if anchor_end < series.anchor_start:
                anchor_end += timedelta(days=1)
            values['anchor_end'] = anchor_end
    return Overrides(**values)


def _edit_type(instance_date, changes):
    start = changes.get('instance_start')
    if start is not None and start.date() != instance_date:
        return 'moved'
    return 'modified'


def apply_scoped_edit(owner_id, series_id, scope, instance_date, changes):
    """Apply `changes` (an Overrides) made on the occurrence at `instance_date`."""
    scope = _normalize_scope(scope)
    series = get_owned_series(owner_id, series_id)
    if not series.is_recurring:
        scope = SCOPE_ALL

    if scope == SCOPE_THIS:
        exception = exception_store.upsert_exception(
            owner_id, series.id, instance_date, _edit_type(instance_date, changes),
            changes.only(*OCCURRENCE_FIELDS)
        )
        return {'scope': scope, 'exception': exception.to_dict()}

    if scope == SCOPE_THIS_AND_FUTURE and not _is_first_occurrence(series, instance_date):
        result = series_service.split_series(
            owner_id, series.id, instance_date, changes.only(*OCCURRENCE_FIELDS)
        )
        remaining = changes.only(*SERIES_ONLY_FIELDS)
        if remaining:
            child = series_service.update_series(owner_id, result['new_series_id'], remaining)
        else:
            child = get_owned_series(owner_id, result['new_series_id'])
        return {
            'scope': scope,
            'parent_id': result['parent_id'],
            'new_series_id': result['new_series_id'],
            'split_date': result['split_date'].isoformat(),
            'series': child.to_dict(),
        }

    # "all", or "thisAndFuture" from the very first occurrence.
    updated = series_service.update_series(owner_id, series.id, _series_changes(series, changes))
    return {'scope': SCOPE_ALL, 'series': updated.to_dict()}


def apply_scoped_delete(owner_id, series_id, scope, instance_date):
    scope = _normalize_scope(scope)
    series = get_owned_series(owner_id, series_id)
    if not series.is_recurring:
        scope = SCOPE_ALL

    if scope == SCOPE_THIS:
        exception = exception_store.upsert_exception(owner_id, series.id, instance_date, 'cancelled')
        return {'scope': scope, 'exception': exception.to_dict()}

    if scope == SCOPE_THIS_AND_FUTURE and not _is_first_occurrence(series, instance_date):
        truncated = series_service.truncate_series(owner_id, series.id, instance_date)
        return {'scope': scope, 'series': truncated.to_dict()}

    series_service.delete_series(owner_id, series.id)
    return {'scope': SCOPE_ALL, 'deleted': True}
