from collatz_duel import db, bcrypt
from flask_login import UserMixin
from datetime import datetime, timezone
from collatz_duel.services.duels.glicko import (
    DEFAULT_RATING, DEFAULT_DEVIATION, DEFAULT_VOLATILITY, PlayerRating, classify,
)


def _utcnow():
    return datetime.now(timezone.utc)


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    rating = db.relationship('Rating', back_populates='user', uselist=False, cascade='all, delete-orphan')

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    @property
    def identity(self):
        return str(self.id)

    @property
    def display_name(self):
        return self.username

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
        }


class Rating(db.Model):
    """Persistent Glicko-2 state, one row per user. Rows are never deleted by gameplay."""
    __tablename__ = 'rating'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), unique=True, nullable=False, index=True)
    rating = db.Column(db.Float, nullable=False, default=DEFAULT_RATING, index=True)
    deviation = db.Column(db.Float, nullable=False, default=DEFAULT_DEVIATION)
    volatility = db.Column(db.Float, nullable=False, default=DEFAULT_VOLATILITY)
    games_played = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    user = db.relationship('User', back_populates='rating')

    def to_player_rating(self):
        return PlayerRating(
            rating=self.rating,
            deviation=self.deviation,
            volatility=self.volatility,
            games_played=self.games_played or 0,
        )

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'username': self.user.username if self.user else None,
            'rating': round(self.rating, 2),
            'deviation': round(self.deviation, 2),
            'volatility': self.volatility,
            'games_played': self.games_played,
            'classification': classify(self.deviation),
        }
