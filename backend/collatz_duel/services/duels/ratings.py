import logging
import threading
from typing import Dict

from .glicko import PlayerRating

logger = logging.getLogger(__name__)


class MemoryRatingRepository:
    """Dict-backed ratings, keyed by identity."""

    def __init__(self, initial: Dict[str, PlayerRating] = None):
        self._lock = threading.Lock()
        self._ratings: Dict[str, PlayerRating] = dict(initial or {})
        self.saves = []

    def get(self, identity) -> PlayerRating:
        with self._lock:
            return self._ratings.get(str(identity), PlayerRating())

    def save(self, identity, rating: PlayerRating) -> None:
        with self._lock:
            self._ratings[str(identity)] = rating
            self.saves.append((str(identity), rating))


class SqlRatingRepository:
    """Ratings stored in the ``rating`` table.

    Every call opens its own app context so the repository can be used from
    Socket.IO background tasks.
    """

    def __init__(self, app):
        self.app = app

    def get(self, identity) -> PlayerRating:
        from collatz_duel.models import Rating
        with self.app.app_context():
            row = Rating.query.filter_by(user_id=int(identity)).first()
            return row.to_player_rating() if row else PlayerRating()

    def save(self, identity, rating: PlayerRating) -> None:
        from collatz_duel import db
        from collatz_duel.models import Rating
        with self.app.app_context():
            row = Rating.query.filter_by(user_id=int(identity)).first()
            if row is None:
                row = Rating(user_id=int(identity))
            row.rating = rating.rating
            row.deviation = rating.deviation
            row.volatility = rating.volatility
            row.games_played = rating.games_played
            db.session.add(row)
            try:
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
            logger.info(
                f"[rating-save] user={identity} rating={rating.rating:.1f} deviation={rating.deviation:.1f} games={rating.games_played}"
            )
