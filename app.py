import os

from dotenv import load_dotenv
from flask import Flask, request, jsonify, session

load_dotenv()

from models import db, User, Series, Tag
from services import exception_store, series_service, series_routes
from services.edit_scope import apply_scoped_delete, apply_scoped_edit
from services.errors import BadRequest, SeriesError
from services.materializer import expand_occurrences, materialize_for_owner
from services.overrides import Overrides
from services.ownership import get_owned_series
from services.validation_service import normalize_tag_names, parse_bool, parse_day_value, parse_int

app = Flask(__name__)
app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///series.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
app.config['PERMANENT_SESSION_LIFETIME'] = 365 * 24 * 60 * 60  # 1 year in seconds
app.config['API_SHARED_KEY'] = os.environ.get('API_SHARED_KEY')  # Optional shared key for API callers
app.config['SERIES_STRICT_TAG_COPY'] = parse_bool(os.environ.get('SERIES_STRICT_TAG_COPY'), default=False)
app.config['SERIES_MAX_OCCURRENCES'] = parse_int(os.environ.get('SERIES_MAX_OCCURRENCES'), default=1000)
app.logger.setLevel((os.environ.get('LOG_LEVEL') or 'INFO').upper())

db.init_app(app)

def get_current_user():
    """Resolve the current user from a shared API key + user id header, else fall back to session."""
    # Header-based auth for service callers
    api_key = request.headers.get('X-API-Key')
    api_user_id = request.headers.get('X-User-Id')
    shared_key = app.config.get('API_SHARED_KEY')
    if shared_key and api_key and api_user_id:
        try:
            api_uid_int = int(api_user_id)
        except (TypeError, ValueError):
            api_uid_int = None
        if api_uid_int and api_key == shared_key:
            user = db.session.get(User, api_uid_int)
            if user:
                return user

    # Session-based auth for browser users
    user_id = session.get('user_id')
    if user_id:
        return db.session.get(User, user_id)
    return None

with app.app_context():
    db.create_all()


@app.errorhandler(SeriesError)
def handle_series_error(exc):
    if exc.status_code >= 500:
        app.logger.error("%s %s failed: %s", request.method, request.path, exc)
    else:
        app.logger.info("%s %s rejected (%s): %s", request.method, request.path, exc.reason, exc)
    return jsonify(exc.to_dict()), exc.status_code


# User Selection Routes
@app.route('/api/set-user/<int:user_id>', methods=['POST'])
def set_user(user_id):
    """Set the current user in session"""
    user = db.get_or_404(User, user_id)
    session['user_id'] = user.id
    session.permanent = True
    return jsonify({'success': True, 'username': user.username})

@app.route('/api/create-user', methods=['POST'])
def create_user():
    """Create a new user (simplified - no password)"""
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({'error': 'Request body must be a JSON object'}), 400
    username = (data.get('username') or '').strip()

    if not username:
        return jsonify({'error': 'Username is required'}), 400

    if User.query.filter_by(username=username).first():
        return jsonify({'error': 'Username already exists'}), 400

    user = User(username=username, email=None)
    user.set_password('dummy')
    db.session.add(user)
    db.session.commit()

    session['user_id'] = user.id
    session.permanent = True

    return jsonify({'success': True, 'user_id': user.id, 'username': user.username})

@app.route('/api/current-user')
def current_user_info():
    """Get current user info"""
    user = get_current_user()
    if user:
        return jsonify({'user_id': user.id, 'username': user.username})
    return jsonify({'user_id': None, 'username': None})


# Recurring series routes (handlers live in services/series_routes.py)
app.add_url_rule('/api/series', 'series_collection',
                 series_routes.series_collection, methods=['GET', 'POST'])
app.add_url_rule('/api/series/<int:series_id>', 'series_detail',
                 series_routes.series_detail, methods=['GET', 'PUT', 'DELETE'])
app.add_url_rule('/api/series/<int:series_id>/occurrences', 'series_occurrences',
                 series_routes.series_occurrences, methods=['GET'])
app.add_url_rule('/api/occurrences', 'owner_occurrences',
                 series_routes.owner_occurrences, methods=['GET'])
app.add_url_rule('/api/series/<int:series_id>/exceptions/<day>', 'series_exception_detail',
                 series_routes.series_exception_detail, methods=['PUT', 'DELETE'])
app.add_url_rule('/api/series/<int:series_id>/split', 'split_series',
                 series_routes.split_series_route, methods=['POST'])
app.add_url_rule('/api/series/<int:series_id>/edit', 'scoped_edit',
                 series_routes.scoped_edit_route, methods=['POST'])
app.add_url_rule('/api/series/<int:series_id>/delete-scoped', 'scoped_delete',
                 series_routes.scoped_delete_route, methods=['POST'])
app.add_url_rule('/api/tags', 'tags_collection',
                 series_routes.tags_collection, methods=['GET', 'POST'])

if __name__ == '__main__':
    app.run(host='0.0.0.0', debug=True)
