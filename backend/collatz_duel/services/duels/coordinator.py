"""Per-participant duel coordinator.

One coordinator runs for each connected participant. Two coordinators never
talk to each other; everything they agree on comes from the shared session
record in the store. Every step below is therefore either idempotent or
guarded:

- joining re-checks the record's preconditions and confirms the seat after
  writing it;
- the synchronized start time is written at most once per coordinator, and
  only while the record still lacks one;
- finalization is latched under the coordinator's own lock and the
  subscription is cancelled before any slow work starts, so duplicate
  notifications are dropped;
- disconnect hooks are capability objects owned by this coordinator; it only
  ever cancels hooks it registered itself.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .codes import generate_session_code
from .collatz import Verdict, generate_start_number, step, validate
from .errors import PreconditionViolation, StoreUnavailable
from .glicko import Glicko2, PlayerRating, classify, default_engine
from .session import (
    DUELS_PATH, STATUS_ACTIVE, STATUS_PENDING, TERMINAL_NUMBER, DuelSession, check_joinable,
    determine_winner, forfeit_fields, is_terminal, join_fields, move_fields,
    new_session, other_slot, session_path, wrong_answer_fields,
)
from .store import DELETE, DisconnectHook, SessionStore, Subscription

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    LOBBY = 'lobby'
    WAITING = 'waiting'
    COUNTDOWN = 'countdown'
    PLAYING = 'playing'
    FINISHED = 'finished'
    RESULT = 'result'


@dataclass
class DuelSettings:
    start_offset: float = 4.0
    result_settle: float = 1.0
    code_length: int = 6
    code_fallback_length: int = 7
    code_max_attempts: int = 20
    min_steps: int = 5
    max_steps: int = 20
    range_low: int = 10
    range_high: int = 109

    @classmethod
    def from_config(cls, config) -> 'DuelSettings':
        return cls(
            start_offset=float(config.get('DUEL_START_OFFSET_SEC', 4)),
            result_settle=float(config.get('DUEL_RESULT_SETTLE_SEC', 1.0)),
            code_length=int(config.get('DUEL_CODE_LENGTH', 6)),
            code_fallback_length=int(config.get('DUEL_CODE_FALLBACK_LENGTH', 7)),
            code_max_attempts=int(config.get('DUEL_CODE_MAX_ATTEMPTS', 20)),
            min_steps=int(config.get('DUEL_START_MIN_STEPS', 5)),
            max_steps=int(config.get('DUEL_START_MAX_STEPS', 20)),
            range_low=int(config.get('DUEL_START_RANGE_LOW', 10)),
            range_high=int(config.get('DUEL_START_RANGE_HIGH', 109)),
        )


@dataclass
class CoordinatorState:
    """Everything a coordinator knows about its current duel.

    ``generation`` increases every time the coordinator leaves a duel, so
    late timers and notifications belonging to an older duel are ignored.
    """
    generation: int = 0
    phase: Phase = Phase.LOBBY
    code: Optional[str] = None
    slot: Optional[str] = None
    rated: bool = True
    start_number: Optional[int] = None
    current_number: Optional[int] = None
    steps: int = 0
    sequence: List[int] = field(default_factory=list)
    start_at: Optional[float] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    rating_before: Optional[PlayerRating] = None
    subscription: Optional[Subscription] = None
    lobby_hook: Optional[DisconnectHook] = None
    forfeit_hook: Optional[DisconnectHook] = None
    forfeit_armed: bool = False
    start_time_claimed: bool = False
    start_scheduled: bool = False
    finalized: bool = False
    last_session: Optional[DuelSession] = None
    result: Optional[Dict[str, Any]] = None


class DuelView:
    """Receives what a participant should see. The default does nothing."""

    def on_state(self, session: DuelSession) -> None:
        pass

    def on_countdown(self, start_at: float) -> None:
        pass

    def on_game_started(self, start_number: int) -> None:
        pass

    def on_result(self, result: Dict[str, Any]) -> None:
        pass

    def on_cancelled(self, code: str) -> None:
        pass

    def on_lobby(self) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass


def _spawn_thread(fn, *args):
    thread = threading.Thread(target=fn, args=args, daemon=True)
    thread.start()
    return thread


class DuelCoordinator:

    def __init__(self, store: SessionStore, ratings, identity, display_name: str, connection_id: str,
                 view: Optional[DuelView] = None, engine: Optional[Glicko2] = None,
                 settings: Optional[DuelSettings] = None,
                 spawn: Callable = _spawn_thread, sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time, rng: Optional[random.Random] = None):
        self.store = store
        self.ratings = ratings
        self.identity = str(identity)
        self.display_name = display_name
        self.connection_id = connection_id
        self.view = view or DuelView()
        self.engine = engine or default_engine
        self.settings = settings or DuelSettings()
        self._spawn = spawn
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = threading.RLock()
        self.state = CoordinatorState()

    # ---- lobby operations ----

    def create_duel(self, rated: bool = True, public: bool = True) -> DuelSession:
        """Open a pending duel with this participant as player1."""
        self._require_lobby()
        cfg = self.settings
        try:
            live = self.store.children(DUELS_PATH)
            code = generate_session_code(
                live, length=cfg.code_length, fallback_length=cfg.code_fallback_length,
                max_attempts=cfg.code_max_attempts, rng=self._rng,
            )
            start_number = generate_start_number(
                self._rng, min_steps=cfg.min_steps, max_steps=cfg.max_steps,
                low=cfg.range_low, high=cfg.range_high,
            )
            snapshot = self.ratings.get(self.identity).to_dict() if rated else None
            session = new_session(code, self.identity, self.display_name, start_number,
                                  rated=rated, public=public, rating=snapshot)
            path = session_path(code)
            self.store.create(path, session.to_dict())
            lobby_hook = self.store.on_disconnect(self.connection_id, path, DELETE).register()
        except StoreUnavailable:
            self._fall_back_to_lobby('Could not create duel: store unavailable')
            raise

        with self._lock:
            self.state = CoordinatorState(
                generation=self.state.generation,
                phase=Phase.WAITING,
                code=code,
                slot='player1',
                rated=rated,
                start_number=start_number,
                lobby_hook=lobby_hook,
            )
        logger.info(f"[duel-create] code={code} identity={self.identity} start={start_number} rated={rated} public={public}")
        self._subscribe(code)
        return session

    def join_duel(self, code: str) -> DuelSession:
        """Take player2 in a pending duel.

        Raises:
            PreconditionViolation: the duel is missing, full, no longer
                pending, or owned by this identity. Nothing is written.
        """
        self._require_lobby()
        code = (code or '').strip().upper()
        path = session_path(code)
        try:
            record = self.store.read(path)
            session = DuelSession.from_dict(record) if record else None
            check_joinable(session, self.identity)
            snapshot = self.ratings.get(self.identity).to_dict() if session.rated else None
            # The seat is taken only if it is still free at write time
            written = self.store.update(
                path, join_fields(session, self.identity, self.display_name, snapshot),
                expect={'status': STATUS_PENDING, 'player2': None},
            )
            if not written:
                raise PreconditionViolation('Another player joined this duel first', code=code)
            confirmed = self.store.read(path)
        except PreconditionViolation as exc:
            logger.warning(f"[duel-join-rejected] code={code} identity={self.identity} reason={exc}")
            raise
        except StoreUnavailable:
            self._fall_back_to_lobby('Could not join duel: store unavailable')
            raise

        seated = confirmed and (confirmed.get('player2') or {}).get('identity') == self.identity
        if not seated:
            logger.warning(f"[duel-join-lost] code={code} identity={self.identity}")
            raise PreconditionViolation('Another player joined this duel first', code=code)

        with self._lock:
            self.state = CoordinatorState(
                generation=self.state.generation,
                phase=Phase.COUNTDOWN,
                code=code,
                slot='player2',
                rated=session.rated,
                start_number=session.start_number,
            )
        logger.info(f"[duel-join] code={code} identity={self.identity} host={session.player1.identity}")
        self._subscribe(code)
        return DuelSession.from_dict(confirmed)

    def return_to_lobby(self) -> None:
        """Leave the current duel gracefully and delete its record."""
        old = self._reset_state()
        if old.code:
            try:
                self.store.delete(session_path(old.code))
            except StoreUnavailable:
                logger.warning(f"[duel-cleanup] code={old.code} delete skipped: store unavailable")
            logger.info(f"[duel-cleanup] code={old.code} identity={self.identity} phase={old.phase.value}")
        self.view.on_lobby()

    def detach(self) -> None:
        """Forget the current duel after the connection is gone.

        Unlike :meth:`return_to_lobby` this leaves the record alone; the
        store's disconnect hooks have already recorded the forfeit.
        """
        old = self._reset_state()
        if old.code:
            logger.info(f"[duel-detach] code={old.code} identity={self.identity} phase={old.phase.value}")

    # ---- gameplay ----

    def submit_answer(self, raw) -> Verdict:
        """Check an answer and publish the move to this participant's own slot."""
        with self._lock:
            state = self.state
            if state.finalized:
                raise PreconditionViolation('This duel is over', code=state.code)
            if state.phase != Phase.PLAYING:
                raise PreconditionViolation('No duel in progress', code=state.code)
            verdict = validate(state.current_number, raw)
            if verdict == Verdict.INVALID:
                return verdict
            if verdict == Verdict.CORRECT:
                nxt = step(state.current_number)
                state.current_number = nxt
                state.steps += 1
                state.sequence.append(nxt)
                fields = move_fields(state.slot, nxt, state.steps)
                if nxt == TERMINAL_NUMBER:
                    state.phase = Phase.FINISHED
                    state.finished_at = self._clock()
            else:
                fields = wrong_answer_fields(state.slot)
                state.phase = Phase.FINISHED
                state.finished_at = self._clock()
            path = session_path(state.code)
        try:
            self.store.update(path, fields)
        except StoreUnavailable:
            self._fall_back_to_lobby('Lost connection to the duel')
            raise
        return verdict

    def deliver(self, record: Optional[Dict[str, Any]]) -> None:
        """Feed a snapshot of the current duel's record, as the store would."""
        self._on_snapshot(self.state.generation, record)

    # ---- internals ----

    def _require_lobby(self) -> None:
        if self.state.phase != Phase.LOBBY:
            raise PreconditionViolation('Already in a duel', code=self.state.code)

    def _subscribe(self, code: str) -> None:
        generation = self.state.generation
        try:
            subscription = self.store.subscribe(
                session_path(code), lambda record: self._on_snapshot(generation, record)
            )
        except StoreUnavailable:
            self._fall_back_to_lobby('Could not follow duel: store unavailable')
            raise
        with self._lock:
            keep = self.state.generation == generation and not self.state.finalized
            if keep:
                self.state.subscription = subscription
        if not keep:
            subscription.cancel()

    def _on_snapshot(self, generation: int, record: Optional[Dict[str, Any]]) -> None:
        with self._lock:
            state = self.state
            if generation != state.generation or state.code is None:
                return
            if state.finalized:
                logger.debug(f"[duel-notify-dropped] code={state.code} identity={self.identity}")
                return
            code = state.code
            vanished = record is None
            displaced = False
            if not vanished:
                session = DuelSession.from_dict(record)
                mine = session.slot(state.slot)
                displaced = mine is None or mine.identity != self.identity
            if not vanished and not displaced:
                state.last_session = session
                terminal = is_terminal(session)
                if terminal:
                    state.finalized = True
                    if state.phase != Phase.FINISHED:
                        state.phase = Phase.FINISHED
                        state.finished_at = state.finished_at or self._clock()
                    subscription, state.subscription = state.subscription, None
                    hooks = [h for h in (state.forfeit_hook, state.lobby_hook) if h]
                    state.forfeit_hook = state.lobby_hook = None
                    slot = state.slot
                else:
                    arm = session.status == STATUS_ACTIVE and not state.forfeit_armed
                    if arm:
                        state.forfeit_armed = True
                    claim = (session.status == STATUS_ACTIVE and session.synchronized_start_time is None
                             and not state.start_time_claimed)
                    if claim:
                        state.start_time_claimed = True
                    schedule = session.synchronized_start_time is not None and not state.start_scheduled
                    if schedule:
                        state.start_scheduled = True
                        state.start_at = float(session.synchronized_start_time)
                        if state.phase in (Phase.WAITING, Phase.COUNTDOWN):
                            state.phase = Phase.COUNTDOWN

        if vanished:
            self._on_vanished(generation, code)
            return
        if displaced:
            self._on_displaced(generation, code)
            return

        self.view.on_state(session)

        if terminal:
            if subscription is not None:
                subscription.cancel()
            for hook in hooks:
                hook.cancel()
            logger.info(f"[duel-terminal] code={session.id} identity={self.identity} slot={slot}")
            self._spawn(self._finalize, generation, session, slot)
            return

        if arm:
            self._arm_forfeit(generation, session)
        if claim:
            self._claim_start_time(session)
        if schedule:
            start_at = float(session.synchronized_start_time)
            self.view.on_countdown(start_at)
            self._spawn(self._run_countdown, generation, start_at)

    def _arm_forfeit(self, generation: int, session: DuelSession) -> None:
        """Swap the pending-lobby delete hook for a forfeit hook, once per duel."""
        with self._lock:
            if generation != self.state.generation:
                return
            slot = self.state.slot
            lobby_hook, self.state.lobby_hook = self.state.lobby_hook, None
        if lobby_hook is not None:
            lobby_hook.cancel()
        path = session_path(session.id)
        try:
            hook = self.store.on_disconnect(self.connection_id, path, forfeit_fields(slot)).register()
        except StoreUnavailable:
            self._fall_back_to_lobby('Could not arm duel: store unavailable')
            return
        with self._lock:
            if generation == self.state.generation and not self.state.finalized:
                self.state.forfeit_hook = hook
                hook = None
        if hook is not None:
            hook.cancel()
        logger.info(f"[duel-armed] code={session.id} identity={self.identity} slot={slot}")

    def _claim_start_time(self, session: DuelSession) -> None:
        path = session_path(session.id)
        start_at = self._clock() + self.settings.start_offset
        try:
            claimed = self.store.update(
                path, {'synchronized_start_time': start_at},
                expect={'status': STATUS_ACTIVE, 'synchronized_start_time': None},
            )
        except StoreUnavailable:
            self._fall_back_to_lobby('Could not start duel: store unavailable')
            return
        if not claimed:
            logger.debug(f"[duel-start-time] code={session.id} identity={self.identity} already set")
            return
        logger.info(f"[duel-start-time] code={session.id} identity={self.identity} start_at={start_at:.3f}")

    def _run_countdown(self, generation: int, start_at: float) -> None:
        delay = max(0.0, start_at - self._clock())
        if delay:
            self._sleep(delay)
        with self._lock:
            state = self.state
            if generation != state.generation or state.finalized or state.phase != Phase.COUNTDOWN:
                return
            state.phase = Phase.PLAYING
            state.current_number = state.start_number
            state.steps = 0
            state.sequence = [state.start_number]
            state.started_at = self._clock()
            start_number = state.start_number
            rated = state.rated
        if rated:
            before = self.ratings.get(self.identity)
            with self._lock:
                if generation == self.state.generation and self.state.rating_before is None:
                    self.state.rating_before = before
        self.view.on_game_started(start_number)

    def _finalize(self, generation: int, session: DuelSession, slot: str) -> None:
        outcome = determine_winner(session)
        opponent_slot = other_slot(slot)
        me = session.slot(slot)
        opponent = session.slot(opponent_slot)
        score = outcome.score_for(slot)

        with self._lock:
            state = self.state
            current = generation == state.generation
            before = state.rating_before if current else None
            sequence = list(state.sequence) if current else []
            started_at = state.started_at if current else None
            finished_at = (state.finished_at or self._clock()) if current else None

        rating_after = None
        rating_error = False
        if session.rated:
            try:
                mine = self.ratings.get(self.identity)
                if before is None:
                    before = mine
                theirs = (PlayerRating.from_dict(opponent.rating) if opponent.rating
                          else self.ratings.get(opponent.identity))
                rating_after = self.engine.update(mine, theirs, score)
                self.ratings.save(self.identity, rating_after)
            except Exception:
                rating_error = True
                logger.exception(f"[duel-rating-failed] code={session.id} identity={self.identity}")
            else:
                self._sleep(self.settings.result_settle)

        winner = session.slot(outcome.winner) if outcome.winner else None
        result = {
            'code': session.id,
            'winner': winner.identity if winner else None,
            'winner_name': winner.display_name if winner else None,
            'reason': outcome.reason,
            'draw': outcome.draw,
            'you_won': outcome.winner == slot,
            'score': score,
            'opponent': opponent.display_name,
            'steps': me.steps,
            'opponent_steps': opponent.steps,
            'sequence': sequence,
            'elapsed': (finished_at - started_at) if started_at is not None else None,
            'rated': session.rated,
            'rating_before': before.rating if before else None,
            'rating_after': rating_after.rating if rating_after else None,
            'rating_delta': (rating_after.rating - before.rating) if (rating_after and before) else None,
            'classification': classify(rating_after.deviation) if rating_after else None,
            'rating_error': rating_error,
        }
        with self._lock:
            if generation == self.state.generation:
                self.state.phase = Phase.RESULT
                self.state.result = result
        logger.info(
            f"[duel-finalize] code={session.id} identity={self.identity} winner={result['winner']} "
            f"reason={outcome.reason} score={score}"
        )
        self.view.on_result(result)

    def _on_vanished(self, generation: int, code: str) -> None:
        with self._lock:
            if generation != self.state.generation:
                return
        self._reset_state()
        logger.info(f"[duel-cancelled] code={code} identity={self.identity}")
        self.view.on_cancelled(code)

    def _on_displaced(self, generation: int, code: str) -> None:
        # Our slot now names someone else; leave without touching the record
        with self._lock:
            if generation != self.state.generation:
                return
        self._reset_state()
        logger.warning(f"[duel-seat-lost] code={code} identity={self.identity}")
        self.view.on_error('You are no longer seated in this duel')

    def _reset_state(self) -> CoordinatorState:
        with self._lock:
            old = self.state
            self.state = CoordinatorState(generation=old.generation + 1)
        for hook in (old.forfeit_hook, old.lobby_hook):
            if hook is not None:
                hook.cancel()
        if old.subscription is not None:
            old.subscription.cancel()
        return old

    def _fall_back_to_lobby(self, message: str) -> None:
        old = self._reset_state()
        logger.warning(f"[duel-store-unavailable] code={old.code} identity={self.identity} {message}")
        self.view.on_error(message)
