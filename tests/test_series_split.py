from datetime import date, datetime

import pytest
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from models import Series, SeriesException, SeriesTag, db
from services import exception_store, series_service
from services.errors import BadRequest, Conflict, InternalError, NotFound
from services.materializer import expand_occurrences, materialize_for_owner
from services.overrides import Overrides


def _split(owner, series, day, **overrides):
    return series_service.split_series(owner.id, series.id, day, Overrides(**overrides))


def test_split_with_new_title(owner, weekly_monday):
    result = _split(owner, weekly_monday, date(2024, 1, 15), title='New title')
    assert result['parent_id'] == weekly_monday.id
    assert result['split_date'] == date(2024, 1, 15)

    parent = db.session.get(Series, weekly_monday.id)
    assert parent.recurrence_end_date == date(2024, 1, 14)

    occurrences = materialize_for_owner(owner.id, date(2024, 1, 1), date(2024, 1, 28))
    assert [(occ.instance_date, occ.title) for occ in occurrences] == [
        (date(2024, 1, 1), 'Standup'),
        (date(2024, 1, 8), 'Standup'),
        (date(2024, 1, 15), 'New title'),
        (date(2024, 1, 22), 'New title'),
    ]


def test_split_boundary_has_no_gap_or_overlap(owner, weekly_monday):
    window = (date(2024, 1, 1), date(2024, 3, 31))
    before = [occ.instance_date for occ in expand_occurrences(owner.id, weekly_monday.id, *window)]
    result = _split(owner, weekly_monday, date(2024, 2, 5))

    parent_days = [occ.instance_date for occ in expand_occurrences(owner.id, result['parent_id'], *window)]
    child_days = [occ.instance_date for occ in expand_occurrences(owner.id, result['new_series_id'], *window)]
    assert all(d < date(2024, 2, 5) for d in parent_days)
    assert all(d >= date(2024, 2, 5) for d in child_days)
    assert parent_days + child_days == before


def test_split_keeps_count_across_both_series(owner):
    series = series_service.create_series(
        owner.id, 'Course', datetime(2024, 1, 1, 18, 0), recurrence_type='daily', rule='FREQ=DAILY;COUNT=10'
    )
    result = _split(owner, series, date(2024, 1, 4))
    child = db.session.get(Series, result['new_series_id'])
    assert child.recurrence_rule == 'FREQ=DAILY;COUNT=7'
    occurrences = materialize_for_owner(owner.id, date(2024, 1, 1), date(2024, 1, 31))
    assert len(occurrences) == 10
    assert occurrences[-1].instance_date == date(2024, 1, 10)


def test_split_override_moves_time_of_day(owner, weekly_monday):
    result = _split(owner, weekly_monday, date(2024, 1, 15), instance_start=datetime(2024, 1, 15, 13, 0))
    child = db.session.get(Series, result['new_series_id'])
    assert child.anchor_start == datetime(2024, 1, 15, 13, 0)
    assert child.anchor_end == datetime(2024, 1, 15, 14, 0)
    assert child.title == 'Standup'


def test_split_description_absent_keeps_and_null_clears(owner):
    series = series_service.create_series(
        owner.id, 'Standup', datetime(2024, 1, 1, 9, 0), recurrence_type='weekly', description='Bring notes'
    )
    first = _split(owner, series, date(2024, 1, 15))
    kept = db.session.get(Series, first['new_series_id'])
    assert kept.description == 'Bring notes'

    second = _split(owner, kept, date(2024, 1, 29), description=None)
    cleared = db.session.get(Series, second['new_series_id'])
    assert cleared.description is None
    assert db.session.get(Series, first['new_series_id']).description == 'Bring notes'


def test_split_copies_tag_links(owner, make_tag):
    work = make_tag(owner, 'work')
    series = series_service.create_series(
        owner.id, 'Standup', datetime(2024, 1, 1, 9, 0), recurrence_type='weekly', tag_ids=[work.id]
    )
    result = _split(owner, series, date(2024, 1, 15))
    parent_links = SeriesTag.query.filter_by(series_id=series.id).all()
    child_links = SeriesTag.query.filter_by(series_id=result['new_series_id']).all()
    assert [link.tag_id for link in child_links] == [work.id]
    assert child_links[0].id != parent_links[0].id

    series_service.update_series(owner.id, result['new_series_id'], Overrides(tag_ids=[]))
    assert [link.tag_id for link in SeriesTag.query.filter_by(series_id=series.id)] == [work.id]


def test_split_hands_later_exceptions_to_new_series(owner, weekly_monday):
    exception_store.upsert_exception(owner.id, weekly_monday.id, date(2024, 1, 8), 'cancelled')
    exception_store.upsert_exception(owner.id, weekly_monday.id, date(2024, 1, 22), 'cancelled')
    result = _split(owner, weekly_monday, date(2024, 1, 15))

    assert [ex.instance_date for ex in SeriesException.query.filter_by(series_id=weekly_monday.id)] == [
        date(2024, 1, 8)
    ]
    assert [ex.instance_date for ex in SeriesException.query.filter_by(series_id=result['new_series_id'])] == [
        date(2024, 1, 22)
    ]
    occurrences = materialize_for_owner(owner.id, date(2024, 1, 1), date(2024, 1, 28))
    assert [occ.instance_date for occ in occurrences] == [date(2024, 1, 1), date(2024, 1, 15)]


def test_non_recurring_series_cannot_be_split(owner):
    event = series_service.create_series(owner.id, 'Dentist', datetime(2024, 1, 10, 15, 0))
    with pytest.raises(BadRequest):
        _split(owner, event, date(2024, 1, 10))


@pytest.mark.parametrize('day', [date(2024, 1, 1), date(2024, 1, 16), date(2023, 12, 25)])
def test_split_date_must_be_a_later_occurrence(owner, weekly_monday, day):
    with pytest.raises(BadRequest):
        _split(owner, weekly_monday, day)
    assert Series.query.count() == 1
    assert db.session.get(Series, weekly_monday.id).recurrence_end_date is None


def test_other_users_series_cannot_be_split(other_user, weekly_monday):
    with pytest.raises(NotFound):
        _split(other_user, weekly_monday, date(2024, 1, 15))


def test_failed_insert_restores_parent(monkeypatch, owner, weekly_monday):
    seen_updated_at = weekly_monday.updated_at

    def boom(values, split_date, parent_id):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(series_service, '_insert_split_series', boom)
    with pytest.raises(InternalError):
        _split(owner, weekly_monday, date(2024, 1, 15))

    db.session.expire_all()
    parent = db.session.get(Series, weekly_monday.id)
    assert parent.recurrence_end_date is None
    assert parent.updated_at == seen_updated_at
    assert Series.query.count() == 1


def test_failed_tag_copy_is_not_fatal_by_default(monkeypatch, owner, make_tag):
    work = make_tag(owner, 'work')
    series = series_service.create_series(
        owner.id, 'Standup', datetime(2024, 1, 1, 9, 0), recurrence_type='weekly', tag_ids=[work.id]
    )

    def boom(child_id, tag_ids):
        raise SQLAlchemyError("locked")

    monkeypatch.setattr(series_service, '_copy_tag_links', boom)
    result = _split(owner, series, date(2024, 1, 15))
    assert db.session.get(Series, series.id).recurrence_end_date == date(2024, 1, 14)
    assert SeriesTag.query.filter_by(series_id=result['new_series_id']).count() == 0


def test_strict_tag_copy_undoes_the_split(monkeypatch, app_ctx, owner, make_tag):
    app_ctx.config['SERIES_STRICT_TAG_COPY'] = True
    work = make_tag(owner, 'work')
    series = series_service.create_series(
        owner.id, 'Standup', datetime(2024, 1, 1, 9, 0), recurrence_type='weekly', tag_ids=[work.id]
    )
    exception_store.upsert_exception(owner.id, series.id, date(2024, 1, 22), 'cancelled')

    def boom(child_id, tag_ids):
        raise SQLAlchemyError("locked")

    monkeypatch.setattr(series_service, '_copy_tag_links', boom)
    with pytest.raises(InternalError):
        _split(owner, series, date(2024, 1, 15))

    db.session.expire_all()
    assert Series.query.count() == 1
    assert db.session.get(Series, series.id).recurrence_end_date is None
    assert [ex.series_id for ex in SeriesException.query.all()] == [series.id]


def test_concurrent_change_raises_conflict(monkeypatch, owner, weekly_monday):
    original = series_service._split_anchor
    table = Series.__table__

    def racing(parent, split_date, overrides):
        # Another request bumps the row between our read and our write.
        db.session.execute(
            update(table).where(table.c.id == parent.id).values(version=table.c.version + 1)
        )
        db.session.commit()
        return original(parent, split_date, overrides)

    monkeypatch.setattr(series_service, '_split_anchor', racing)
    with pytest.raises(Conflict):
        _split(owner, weekly_monday, date(2024, 1, 15))

    db.session.expire_all()
    assert Series.query.count() == 1
    assert db.session.get(Series, weekly_monday.id).recurrence_end_date is None
