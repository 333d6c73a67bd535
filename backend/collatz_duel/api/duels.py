from flask import Blueprint, jsonify, current_app
from flask_login import login_required, current_user
from collatz_duel import db, duel_store
from collatz_duel.models import User, Rating
from collatz_duel.services.duels.errors import StoreUnavailable
from collatz_duel.services.duels.glicko import PlayerRating, classify
from collatz_duel.services.duels.session import DUELS_PATH, STATUS_PENDING, session_path


duels = Blueprint('duels', __name__)


def _rating_payload(user: User) -> dict:
    if user.rating is not None:
        return user.rating.to_dict()
    # Users who have never been rated report the engine defaults
    defaults = PlayerRating()
    return {
        'user_id': user.id,
        'username': user.username,
        'rating': defaults.rating,
        'deviation': defaults.deviation,
        'volatility': defaults.volatility,
        'games_played': defaults.games_played,
        'classification': classify(defaults.deviation),
    }


@duels.route('/duels/open', methods=['GET'])
def list_open_duels():
    try:
        live = duel_store.children(DUELS_PATH)
    except StoreUnavailable:
        return jsonify({'error': 'Duel store unavailable'}), 503
    open_duels = [
        {
            'code': code,
            'host': record['player1']['display_name'],
            'rated': record.get('rated', True),
            'created_at': record.get('created_at'),
        }
        for code, record in live.items()
        if record.get('status') == STATUS_PENDING and record.get('public') and not record.get('player2')
    ]
    open_duels.sort(key=lambda d: d['created_at'] or 0)
    return jsonify(open_duels)


@duels.route('/duels/<string:code>/state', methods=['GET'])
def get_duel_state(code):
    try:
        record = duel_store.read(session_path(code.upper()))
    except StoreUnavailable:
        return jsonify({'error': 'Duel store unavailable'}), 503
    if record is None:
        return jsonify({'error': 'Duel not found'}), 404
    return jsonify(record)


@duels.route('/ratings/me', methods=['GET'])
@login_required
def my_rating():
    return jsonify(_rating_payload(current_user))


@duels.route('/ratings/leaderboard', methods=['GET'])
def leaderboard():
    try:
        size = int(current_app.config.get('LEADERBOARD_SIZE', 20))
    except (TypeError, ValueError):
        size = 20
    rows = (
        Rating.query.filter(Rating.games_played > 0)
        .order_by(Rating.rating.desc(), Rating.deviation.asc())
        .limit(size)
        .all()
    )
    return jsonify([dict(row.to_dict(), rank=i + 1) for i, row in enumerate(rows)])


@duels.route('/ratings/<int:user_id>', methods=['GET'])
def user_rating(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        return jsonify({'error': 'User not found'}), 404
    return jsonify(_rating_payload(user))
