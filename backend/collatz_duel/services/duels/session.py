"""Duel session records and the rules that act on them.

The record layout mirrors what lives in the shared-state store under
``duels/<code>``. Everything here is a pure function of a record; the store
round-trips and the racing between participants live in the coordinator.
"""

import time
from dataclasses import dataclass, asdict, field
from typing import Optional, Dict, Any

from .errors import PreconditionViolation

STATUS_PENDING = 'pending'
STATUS_ACTIVE = 'active'

SLOT_KEYS = ('player1', 'player2')

TERMINAL_NUMBER = 1

DUELS_PATH = 'duels'


def session_path(code: str) -> str:
    return f"{DUELS_PATH}/{code}"


def other_slot(slot_key: str) -> str:
    return 'player2' if slot_key == 'player1' else 'player1'


@dataclass
class PlayerSlot:
    identity: str
    display_name: str
    current_number: int
    steps: int = 0
    finished: bool = False
    disconnected: bool = False
    forfeit: bool = False
    rating: Dict[str, float] = field(default_factory=dict)

    @property
    def reached_one(self) -> bool:
        return self.current_number == TERMINAL_NUMBER

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PlayerSlot':
        return cls(
            identity=str(data['identity']),
            display_name=data.get('display_name', ''),
            current_number=int(data['current_number']),
            steps=int(data.get('steps', 0)),
            finished=bool(data.get('finished', False)),
            disconnected=bool(data.get('disconnected', False)),
            forfeit=bool(data.get('forfeit', False)),
            rating=dict(data.get('rating') or {}),
        )


@dataclass
class DuelSession:
    id: str
    start_number: int
    rated: bool
    public: bool
    player1: PlayerSlot
    status: str = STATUS_PENDING
    player2: Optional[PlayerSlot] = None
    synchronized_start_time: Optional[float] = None
    created_at: float = field(default_factory=time.time)

    def slot(self, key: str) -> Optional[PlayerSlot]:
        return self.player1 if key == 'player1' else self.player2

    def slot_of(self, identity: str) -> Optional[str]:
        """Return the slot key held by ``identity``, if any."""
        identity = str(identity)
        if self.player1.identity == identity:
            return 'player1'
        if self.player2 is not None and self.player2.identity == identity:
            return 'player2'
        return None

    @property
    def is_full(self) -> bool:
        return self.player2 is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'start_number': self.start_number,
            'rated': self.rated,
            'public': self.public,
            'status': self.status,
            'synchronized_start_time': self.synchronized_start_time,
            'created_at': self.created_at,
            'player1': self.player1.to_dict(),
            'player2': self.player2.to_dict() if self.player2 else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DuelSession':
        p2 = data.get('player2')
        return cls(
            id=data['id'],
            start_number=int(data['start_number']),
            rated=bool(data.get('rated', True)),
            public=bool(data.get('public', True)),
            status=data.get('status', STATUS_PENDING),
            synchronized_start_time=data.get('synchronized_start_time'),
            created_at=float(data.get('created_at') or 0.0),
            player1=PlayerSlot.from_dict(data['player1']),
            player2=PlayerSlot.from_dict(p2) if p2 else None,
        )


def new_session(code: str, identity, display_name: str, start_number: int,
                rated: bool = True, public: bool = True,
                rating: Optional[Dict[str, float]] = None) -> DuelSession:
    """Build a pending session with the creator in ``player1``."""
    creator = PlayerSlot(
        identity=str(identity),
        display_name=display_name,
        current_number=start_number,
        rating=dict(rating or {}),
    )
    return DuelSession(id=code, start_number=start_number, rated=rated, public=public, player1=creator)


def check_joinable(session: Optional[DuelSession], identity) -> None:
    """Raise :class:`PreconditionViolation` unless ``identity`` may take player2."""
    if session is None:
        raise PreconditionViolation('Duel not found')
    if session.player1.identity == str(identity):
        raise PreconditionViolation('You cannot join your own duel', code=session.id)
    if session.player2 is not None:
        raise PreconditionViolation('This duel already has two players', code=session.id)
    if session.status != STATUS_PENDING:
        raise PreconditionViolation('This duel is no longer open', code=session.id)


def join_fields(session: DuelSession, identity, display_name: str,
                rating: Optional[Dict[str, float]] = None) -> Dict[str, Any]:
    """Partial update that seats ``identity`` as player2 and activates the duel."""
    slot = PlayerSlot(
        identity=str(identity),
        display_name=display_name,
        current_number=session.start_number,
        rating=dict(rating or {}),
    )
    return {'player2': slot.to_dict(), 'status': STATUS_ACTIVE}


def move_fields(slot_key: str, current_number: int, steps: int) -> Dict[str, Any]:
    fields = {
        f"{slot_key}/current_number": current_number,
        f"{slot_key}/steps": steps,
    }
    if current_number == TERMINAL_NUMBER:
        fields[f"{slot_key}/finished"] = True
    return fields


def wrong_answer_fields(slot_key: str) -> Dict[str, Any]:
    return {f"{slot_key}/finished": True}


def forfeit_fields(slot_key: str) -> Dict[str, Any]:
    return {
        f"{slot_key}/finished": True,
        f"{slot_key}/disconnected": True,
        f"{slot_key}/forfeit": True,
    }


def is_terminal(session: DuelSession) -> bool:
    """A duel ends once both seats are taken and either player is finished."""
    if session.player2 is None:
        return False
    return session.player1.finished or session.player2.finished


@dataclass(frozen=True)
class Outcome:
    """Result of a finished duel. ``winner`` is a slot key, or None for a draw."""
    winner: Optional[str]
    reason: str

    @property
    def draw(self) -> bool:
        return self.winner is None

    def score_for(self, slot_key: str) -> float:
        if self.winner is None:
            return 0.5
        return 1.0 if self.winner == slot_key else 0.0


def determine_winner(session: DuelSession) -> Optional[Outcome]:
    """Decide the duel from a terminal record, or return None if not terminal.

    Rules, first match wins:

    1. A forfeited (disconnected) player loses to the other. Both forfeited is a draw.
    2. A player at 1 beats one who is not.
    3. Both at 1: fewer steps wins; equal steps is a draw.
    4. One finished (wrong answer) while the other still plays: the one still playing wins.
    5. Both finished short of 1: more correct steps wins; equal steps is a draw.
    """
    if not is_terminal(session):
        return None
    p1, p2 = session.player1, session.player2

    p1_out = p1.forfeit or p1.disconnected
    p2_out = p2.forfeit or p2.disconnected
    if p1_out or p2_out:
        if p1_out and p2_out:
            return Outcome(None, 'both_forfeit')
        return Outcome('player2' if p1_out else 'player1', 'forfeit')

    if p1.reached_one != p2.reached_one:
        return Outcome('player1' if p1.reached_one else 'player2', 'reached_one')

    if p1.reached_one and p2.reached_one:
        if p1.steps == p2.steps:
            return Outcome(None, 'equal_steps')
        return Outcome('player1' if p1.steps < p2.steps else 'player2', 'fewer_steps')

    if p1.finished != p2.finished:
        return Outcome('player2' if p1.finished else 'player1', 'opponent_erred')

    if p1.steps == p2.steps:
        return Outcome(None, 'equal_steps')
    return Outcome('player1' if p1.steps > p2.steps else 'player2', 'more_steps')
