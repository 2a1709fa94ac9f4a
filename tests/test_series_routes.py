from sqlalchemy.exc import SQLAlchemyError

from models import Series, db
from services import series_service

WEEKLY_PAYLOAD = {
    'title': 'Standup',
    'anchor_start': '2024-01-01T09:00',
    'anchor_end': '2024-01-01T10:00',
    'recurrence': {'type': 'weekly'},
}


def _create(client, headers, payload=None):
    resp = client.post('/api/series', json=payload or WEEKLY_PAYLOAD, headers=headers)
    assert resp.status_code == 201
    return resp.get_json()


def test_requests_without_a_user_are_rejected(client):
    resp = client.get('/api/series')
    assert resp.status_code == 401
    assert resp.get_json() == {'error': 'No user selected'}


def test_create_and_list(client, auth_headers):
    created = _create(client, auth_headers)
    assert created['recurrence']['type'] == 'weekly'
    assert created['version'] == 1

    listed = client.get('/api/series', headers=auth_headers).get_json()
    assert [s['id'] for s in listed] == [created['id']]


def test_invalid_rule_is_a_bad_request(client, auth_headers):
    payload = dict(WEEKLY_PAYLOAD, recurrence={'type': 'weekly', 'rule': 'FREQ=MONTHLY'})
    resp = client.post('/api/series', json=payload, headers=auth_headers)
    assert resp.status_code == 400
    assert resp.get_json()['reason'] == 'badRequest'


def test_overlapping_series_needs_confirmation(client, auth_headers):
    _create(client, auth_headers)
    clash = dict(WEEKLY_PAYLOAD, title='Clash')
    resp = client.post('/api/series', json=clash, headers=auth_headers)
    assert resp.status_code == 409
    body = resp.get_json()
    assert body['conflict_warning'] is True
    assert body['conflicts'][0]['title'] == 'Standup'

    resp = client.post('/api/series', json=dict(clash, force_overlap=True), headers=auth_headers)
    assert resp.status_code == 201


def test_occurrences_window(client, auth_headers):
    series_id = _create(client, auth_headers)['id']
    resp = client.get(f'/api/series/{series_id}/occurrences', headers=auth_headers)
    assert resp.status_code == 400

    resp = client.get(f'/api/series/{series_id}/occurrences?start=2024-01-01&end=2024-01-28',
                      headers=auth_headers)
    assert resp.status_code == 200
    assert len(resp.get_json()['occurrences']) == 4


def test_cancel_one_occurrence(client, auth_headers):
    series_id = _create(client, auth_headers)['id']
    resp = client.put(f'/api/series/{series_id}/exceptions/2024-01-08',
                      json={'exception_type': 'cancelled'}, headers=auth_headers)
    assert resp.status_code == 200

    resp = client.get('/api/occurrences?start=2024-01-01&end=2024-01-28', headers=auth_headers)
    assert [occ['instance_date'] for occ in resp.get_json()['occurrences']] == [
        '2024-01-01', '2024-01-15', '2024-01-22',
    ]

    resp = client.delete(f'/api/series/{series_id}/exceptions/2024-01-08', headers=auth_headers)
    assert resp.get_json() == {'deleted': True}


def test_split_route(client, auth_headers):
    series_id = _create(client, auth_headers)['id']
    resp = client.post(f'/api/series/{series_id}/split',
                       json={'split_date': '2024-01-15', 'overrides': {'title': 'New title'}},
                       headers=auth_headers)
    assert resp.status_code == 201
    body = resp.get_json()
    assert body['parent_id'] == series_id
    assert body['split_date'] == '2024-01-15'

    resp = client.post(f'/api/series/{series_id}/split', json={'split_date': 'soon'}, headers=auth_headers)
    assert resp.status_code == 400


def test_split_of_single_event_is_a_bad_request(client, auth_headers):
    payload = {'title': 'Dentist', 'anchor_start': '2024-01-10T15:00'}
    series_id = _create(client, auth_headers, payload)['id']
    resp = client.post(f'/api/series/{series_id}/split', json={'split_date': '2024-01-10'},
                       headers=auth_headers)
    assert resp.status_code == 400


def test_split_storage_failure_is_a_server_error(monkeypatch, client, auth_headers):
    series_id = _create(client, auth_headers)['id']

    def boom(values, split_date, parent_id):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(series_service, '_insert_split_series', boom)
    resp = client.post(f'/api/series/{series_id}/split', json={'split_date': '2024-01-15'},
                       headers=auth_headers)
    assert resp.status_code == 500
    assert resp.get_json()['reason'] == 'internalError'
    db.session.expire_all()
    assert db.session.get(Series, series_id).recurrence_end_date is None


def test_other_users_series_is_hidden(client, auth_headers, other_user):
    series_id = _create(client, auth_headers)['id']
    headers = {'X-API-Key': 'test-shared-key', 'X-User-Id': str(other_user.id)}
    resp = client.get(f'/api/series/{series_id}', headers=headers)
    assert resp.status_code == 404
    resp = client.post(f'/api/series/{series_id}/split', json={'split_date': '2024-01-15'}, headers=headers)
    assert resp.status_code == 404


def test_other_users_tag_is_forbidden(client, auth_headers, other_user, make_tag):
    tag = make_tag(other_user, 'private')
    resp = client.post('/api/series', json=dict(WEEKLY_PAYLOAD, tag_ids=[tag.id]), headers=auth_headers)
    assert resp.status_code == 403


def test_stale_version_is_a_conflict(client, auth_headers):
    series_id = _create(client, auth_headers)['id']
    resp = client.put(f'/api/series/{series_id}', json={'title': 'Renamed', 'version': 7}, headers=auth_headers)
    assert resp.status_code == 409

    resp = client.put(f'/api/series/{series_id}', json={'title': 'Renamed', 'version': 1}, headers=auth_headers)
    assert resp.status_code == 200
    assert resp.get_json()['title'] == 'Renamed'


def test_malformed_version_is_a_bad_request(client, auth_headers):
    series_id = _create(client, auth_headers)['id']
    resp = client.put(f'/api/series/{series_id}', json={'title': 'Renamed', 'version': 'abc'}, headers=auth_headers)
    assert resp.status_code == 400
    assert resp.get_json()['reason'] == 'badRequest'


def test_non_object_bodies_are_bad_requests(client, auth_headers):
    assert client.post('/api/series', json=[WEEKLY_PAYLOAD], headers=auth_headers).status_code == 400
    series_id = _create(client, auth_headers)['id']
    resp = client.put(f'/api/series/{series_id}/exceptions/2024-01-08', json='cancelled', headers=auth_headers)
    assert resp.status_code == 400
    resp = client.post(f'/api/series/{series_id}/split', json=['2024-01-15'], headers=auth_headers)
    assert resp.status_code == 400
    resp = client.post(f'/api/series/{series_id}/edit',
                       json={'scope': 'this', 'instance_date': '2024-01-08', 'changes': ['Planning']},
                       headers=auth_headers)
    assert resp.status_code == 400
    assert client.post('/api/tags', json='work', headers=auth_headers).status_code == 400


def test_scoped_edit_and_delete(client, auth_headers):
    series_id = _create(client, auth_headers)['id']
    resp = client.post(f'/api/series/{series_id}/edit',
                       json={'scope': 'this', 'instance_date': '2024-01-08', 'changes': {'title': 'Planning'}},
                       headers=auth_headers)
    assert resp.status_code == 200
    assert resp.get_json()['exception']['title'] == 'Planning'

    resp = client.post(f'/api/series/{series_id}/delete-scoped',
                       json={'scope': 'thisAndFuture'}, headers=auth_headers)
    assert resp.status_code == 400

    resp = client.post(f'/api/series/{series_id}/delete-scoped',
                       json={'scope': 'all'}, headers=auth_headers)
    assert resp.get_json() == {'scope': 'all', 'deleted': True}
    assert client.get(f'/api/series/{series_id}', headers=auth_headers).status_code == 404


def test_tags(client, auth_headers):
    resp = client.post('/api/tags', json={'name': ' work '}, headers=auth_headers)
    assert resp.status_code == 201
    assert resp.get_json()['name'] == 'work'
    assert client.post('/api/tags', json={'name': 'work'}, headers=auth_headers).status_code == 200
    assert [t['name'] for t in client.get('/api/tags', headers=auth_headers).get_json()] == ['work']
