import os
from datetime import datetime

import pytest

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['API_SHARED_KEY'] = 'test-shared-key'

from app import app as flask_app
from models import db, Tag, User
from services import series_service


@pytest.fixture(autouse=True)
def app_ctx():
    flask_app.config['TESTING'] = True
    flask_app.config['SERIES_STRICT_TAG_COPY'] = False
    flask_app.config['SERIES_MAX_OCCURRENCES'] = 1000
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()


def _make_user(username):
    user = User(username=username, email=None)
    user.set_password('dummy')
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def owner():
    return _make_user('alice')


@pytest.fixture
def other_user():
    return _make_user('bob')


@pytest.fixture
def make_tag():
    def _make(user, name):
        tag = Tag(owner_id=user.id, name=name)
        db.session.add(tag)
        db.session.commit()
        return tag
    return _make


@pytest.fixture
def weekly_monday(owner):
    """Weekly on Mondays 09:00-10:00, anchored on Monday 2024-01-01."""
    return series_service.create_series(
        owner.id,
        'Standup',
        datetime(2024, 1, 1, 9, 0),
        anchor_end=datetime(2024, 1, 1, 10, 0),
        recurrence_type='weekly',
    )


@pytest.fixture
def client(app_ctx):
    return app_ctx.test_client()


@pytest.fixture
def auth_headers(owner):
    return {'X-API-Key': 'test-shared-key', 'X-User-Id': str(owner.id)}
