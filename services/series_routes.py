"""Recurring series routes extracted from app.py for readability."""


def _json_body():
    """The request's JSON object body; any other JSON value is a BadRequest."""
    import app as a

    BadRequest = a.BadRequest
    request = a.request

    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise BadRequest("Request body must be a JSON object")
    return data


def _window_from_args(args):
    import app as a

    parse_day_value = a.parse_day_value

    start_raw = args.get('start')
    end_raw = args.get('end')
    if not start_raw or not end_raw:
        return None, None, 'start and end are required'
    start_day = parse_day_value(start_raw)
    if not start_day:
        return None, None, 'Invalid start date'
    end_day = parse_day_value(end_raw)
    if not end_day:
        return None, None, 'Invalid end date'
    if end_day < start_day:
        return None, None, 'end must not be before start'
    return start_day, end_day, None


def _series_changes(data):
    """Partial series payload -> Overrides, accepting a nested or flat recurrence block."""
    import app as a

    BadRequest = a.BadRequest
    Overrides = a.Overrides
    parse_day_value = a.parse_day_value

    values = Overrides.from_payload(
        data, allowed=('title', 'description', 'anchor_start', 'anchor_end', 'reminder_minutes')
    )
    values = {name: values.get(name) for name in values.fields_set}
    recurrence = data.get('recurrence') if isinstance(data.get('recurrence'), dict) else data
    if 'type' in recurrence or 'recurrence_type' in recurrence:
        values['recurrence_type'] = recurrence.get('type', recurrence.get('recurrence_type'))
    if 'rule' in recurrence:
        values['rule'] = recurrence.get('rule')
    if 'end_date' in recurrence:
        end_raw = recurrence.get('end_date')
        end_date = parse_day_value(end_raw) if end_raw else None
        if end_raw and not end_date:
            raise BadRequest("Invalid end date")
        values['end_date'] = end_date
    if 'tag_ids' in data:
        tag_ids = data.get('tag_ids') or []
        if not isinstance(tag_ids, list):
            raise BadRequest("tag_ids must be a list")
        values['tag_ids'] = tag_ids
    return Overrides(**values)


def series_collection():
    import app as a

    Series = a.Series
    create_series = a.series_service.create_series
    get_current_user = a.get_current_user
    jsonify = a.jsonify
    parse_bool = a.parse_bool
    request = a.request

    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    if request.method == 'GET':
        rows = Series.query.filter_by(owner_id=user.id).order_by(Series.title, Series.id).all()
        return jsonify([s.to_dict() for s in rows])

    data = _json_body()
    changes = _series_changes(data)
    series = create_series(
        user.id,
        changes.get('title'),
        changes.get('anchor_start'),
        anchor_end=changes.get('anchor_end'),
        recurrence_type=changes.get('recurrence_type') or 'none',
        rule=changes.get('rule'),
        end_date=changes.get('end_date'),
        description=changes.get('description'),
        tag_ids=changes.get('tag_ids'),
        reminder_minutes=changes.get('reminder_minutes'),
        check_conflicts=not parse_bool(data.get('force_overlap')),
    )
    return jsonify(series.to_dict()), 201


def series_detail(series_id):
    import app as a

    get_current_user = a.get_current_user
    get_owned_series = a.get_owned_series
    jsonify = a.jsonify
    request = a.request
    series_service = a.series_service

    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    if request.method == 'GET':
        return jsonify(get_owned_series(user.id, series_id).to_dict())

    if request.method == 'DELETE':
        series_service.delete_series(user.id, series_id)
        return '', 204

    data = _json_body()
    series = series_service.update_series(
        user.id, series_id, _series_changes(data), expected_version=data.get('version')
    )
    return jsonify(series.to_dict())


def series_occurrences(series_id):
    import app as a

    expand_occurrences = a.expand_occurrences
    get_current_user = a.get_current_user
    jsonify = a.jsonify
    request = a.request

    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    start_day, end_day, error = _window_from_args(request.args)
    if error:
        return jsonify({'error': error}), 400
    occurrences = expand_occurrences(user.id, series_id, start_day, end_day)
    return jsonify({
        'series_id': series_id,
        'start': start_day.isoformat(),
        'end': end_day.isoformat(),
        'occurrences': [occ.to_dict() for occ in occurrences],
    })


def owner_occurrences():
    import app as a

    get_current_user = a.get_current_user
    jsonify = a.jsonify
    materialize_for_owner = a.materialize_for_owner
    request = a.request

    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    start_day, end_day, error = _window_from_args(request.args)
    if error:
        return jsonify({'error': error}), 400
    occurrences = materialize_for_owner(user.id, start_day, end_day)
    return jsonify({
        'start': start_day.isoformat(),
        'end': end_day.isoformat(),
        'occurrences': [occ.to_dict() for occ in occurrences],
    })


def series_exception_detail(series_id, day):
    import app as a

    Overrides = a.Overrides
    exception_store = a.exception_store
    get_current_user = a.get_current_user
    jsonify = a.jsonify
    parse_day_value = a.parse_day_value
    request = a.request

    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    instance_date = parse_day_value(day)
    if not instance_date:
        return jsonify({'error': 'Invalid date'}), 400

    if request.method == 'DELETE':
        deleted = exception_store.delete_exception(user.id, series_id, instance_date)
        return jsonify({'deleted': deleted})

    data = _json_body()
    overrides = Overrides.from_payload(data)
    if data.get('original_date'):
        original_date = parse_day_value(data.get('original_date'))
        if not original_date:
            return jsonify({'error': 'Invalid original date'}), 400
        overrides = Overrides(original_date=original_date,
                              **{name: overrides.get(name) for name in overrides.fields_set})
    exception = exception_store.upsert_exception(
        user.id, series_id, instance_date, data.get('exception_type'), overrides
    )
    return jsonify(exception.to_dict())


def split_series_route(series_id):
    import app as a

    Overrides = a.Overrides
    get_current_user = a.get_current_user
    jsonify = a.jsonify
    parse_day_value = a.parse_day_value
    split_series = a.series_service.split_series

    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    data = _json_body()
    split_date = parse_day_value(data.get('split_date'))
    if not split_date:
        return jsonify({'error': 'Invalid split date'}), 400
    overrides = data.get('overrides')
    if overrides is not None and not isinstance(overrides, dict):
        return jsonify({'error': 'overrides must be an object'}), 400
    result = split_series(user.id, series_id, split_date, Overrides.from_payload(overrides))
    return jsonify({
        'parent_id': result['parent_id'],
        'new_series_id': result['new_series_id'],
        'split_date': result['split_date'].isoformat(),
    }), 201


def _scoped_request():
    import app as a

    jsonify = a.jsonify
    parse_day_value = a.parse_day_value

    data = _json_body()
    scope = data.get('scope') or 'this'
    instance_date = parse_day_value(data.get('instance_date')) if data.get('instance_date') else None
    if data.get('instance_date') and not instance_date:
        return data, scope, None, (jsonify({'error': 'Invalid instance date'}), 400)
    if scope != 'all' and not instance_date:
        return data, scope, None, (jsonify({'error': 'instance_date is required'}), 400)
    return data, scope, instance_date, None


def scoped_edit_route(series_id):
    import app as a

    Overrides = a.Overrides
    apply_scoped_edit = a.apply_scoped_edit
    get_current_user = a.get_current_user
    jsonify = a.jsonify

    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    data, scope, instance_date, error = _scoped_request()
    if error:
        return error
    body = data.get('changes') or {}
    if not isinstance(body, dict):
        return jsonify({'error': 'changes must be an object'}), 400
    changes = Overrides.from_payload(
        body, allowed=('title', 'description', 'instance_start', 'instance_end', 'reminder_minutes')
    )
    if 'tag_ids' in body:
        changes = Overrides(tag_ids=body.get('tag_ids') or [],
                            **{name: changes.get(name) for name in changes.fields_set})
    return jsonify(apply_scoped_edit(user.id, series_id, scope, instance_date, changes))


def scoped_delete_route(series_id):
    import app as a

    apply_scoped_delete = a.apply_scoped_delete
    get_current_user = a.get_current_user
    jsonify = a.jsonify

    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    _, scope, instance_date, error = _scoped_request()
    if error:
        return error
    return jsonify(apply_scoped_delete(user.id, series_id, scope, instance_date))


def tags_collection():
    import app as a

    Tag = a.Tag
    db = a.db
    get_current_user = a.get_current_user
    jsonify = a.jsonify
    normalize_tag_names = a.normalize_tag_names
    request = a.request

    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    if request.method == 'GET':
        tags = Tag.query.filter_by(owner_id=user.id).order_by(Tag.name).all()
        return jsonify([t.to_dict() for t in tags])

    data = _json_body()
    names = normalize_tag_names(data.get('name'))
    if not names:
        return jsonify({'error': 'Name is required'}), 400
    existing = Tag.query.filter_by(owner_id=user.id, name=names[0]).first()
    if existing:
        return jsonify(existing.to_dict())
    tag = Tag(owner_id=user.id, name=names[0])
    db.session.add(tag)
    db.session.commit()
    return jsonify(tag.to_dict()), 201
