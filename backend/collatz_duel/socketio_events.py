from flask_socketio import emit
from flask import current_app, request
from flask_login import current_user, user_logged_in, user_logged_out
from collatz_duel import socketio, duel_store
from collatz_duel.services.duels.coordinator import DuelCoordinator, DuelSettings, DuelView
from collatz_duel.services.duels.errors import DuelError
from collatz_duel.services.duels.glicko import Glicko2
from collatz_duel.services.duels.ratings import SqlRatingRepository
from typing import Dict, Set
import logging
import time

logger = logging.getLogger(__name__)

_sid_to_coordinator: Dict[str, DuelCoordinator] = {}
_identity_to_sids: Dict[str, Set[str]] = {}


class SocketView(DuelView):
    """Pushes coordinator output to one Socket.IO connection."""

    def __init__(self, sid: str, namespace: str):
        self.sid = sid
        self.namespace = namespace

    def _emit(self, event, payload):
        socketio.emit(event, payload, to=self.sid, namespace=self.namespace)

    def on_state(self, session):
        self._emit('state_update', {'session': session.to_dict()})

    def on_countdown(self, start_at):
        self._emit('countdown', {'start_at': start_at})

    def on_game_started(self, start_number):
        self._emit('game_started', {'start_number': start_number})

    def on_result(self, result):
        self._emit('duel_result', result)

    def on_cancelled(self, code):
        self._emit('duel_cancelled', {'code': code})

    def on_lobby(self):
        self._emit('lobby', {})

    def on_error(self, message):
        self._emit('error', {'message': message})


def _get_sid() -> str:
    return request.sid  # type: ignore[attr-defined]


def _run_inline(fn, *args):
    fn(*args)


def _no_wait(_seconds):
    return None


def _build_coordinator(app, sid: str, namespace: str) -> DuelCoordinator:
    cfg = app.config
    testing = bool(cfg.get('TESTING'))
    engine = Glicko2(
        tau=float(cfg.get('GLICKO_TAU', 0.5)),
        epsilon=float(cfg.get('GLICKO_EPSILON', 1e-6)),
        max_iterations=int(cfg.get('GLICKO_MAX_ITERATIONS', 1000)),
    )
    return DuelCoordinator(
        store=duel_store,
        ratings=SqlRatingRepository(app),
        identity=current_user.identity,
        display_name=current_user.display_name,
        connection_id=sid,
        view=SocketView(sid, namespace),
        engine=engine,
        settings=DuelSettings.from_config(cfg),
        # In tests, run countdowns and finalization inline for determinism
        spawn=_run_inline if testing else socketio.start_background_task,
        sleep=_no_wait if testing else time.sleep,
    )


def _coordinator():
    coordinator = _sid_to_coordinator.get(_get_sid())
    if coordinator is None:
        emit('error', {'message': 'Not connected to the duel server'})
    return coordinator


def handle_connect(auth=None):
    if not current_user.is_authenticated:
        return False
    sid = _get_sid()
    coordinator = _build_coordinator(current_app._get_current_object(), sid, request.namespace)
    _sid_to_coordinator[sid] = coordinator
    _identity_to_sids.setdefault(coordinator.identity, set()).add(sid)
    logger.info(f"[ws-connect] sid={sid} identity={coordinator.identity}")
    emit('connected', {'message': 'Connected to /ws', 'user': current_user.to_dict()})


def handle_disconnect(reason=None):
    # Hooks registered by this connection (lobby delete or forfeit) fire here
    sid = _get_sid()
    fired = duel_store.disconnect(sid)
    coordinator = _sid_to_coordinator.pop(sid, None)
    if coordinator is not None:
        coordinator.detach()
        sids = _identity_to_sids.get(coordinator.identity, set())
        sids.discard(sid)
        if not sids:
            _identity_to_sids.pop(coordinator.identity, None)
    logger.info(f"[ws-disconnect] sid={sid} hooks_fired={fired}")


def handle_create_duel(data):
    coordinator = _coordinator()
    if coordinator is None:
        return
    data = data or {}
    try:
        session = coordinator.create_duel(
            rated=bool(data.get('rated', True)),
            public=bool(data.get('public', True)),
        )
    except DuelError as exc:
        emit('error', {'message': str(exc)})
        return
    emit('duel_created', {'code': session.id, 'session': session.to_dict()})


def handle_join_duel(data):
    coordinator = _coordinator()
    if coordinator is None:
        return
    code = (data or {}).get('code')
    if not code:
        emit('error', {'message': 'code is required'})
        return
    try:
        session = coordinator.join_duel(code)
    except DuelError as exc:
        emit('error', {'message': str(exc)})
        return
    emit('duel_joined', {'code': session.id, 'session': session.to_dict()})


def handle_submit_answer(data):
    coordinator = _coordinator()
    if coordinator is None:
        return
    try:
        verdict = coordinator.submit_answer((data or {}).get('answer'))
    except DuelError as exc:
        emit('error', {'message': str(exc)})
        return
    state = coordinator.state
    emit('answer_result', {
        'verdict': verdict.value,
        'current_number': state.current_number,
        'steps': state.steps,
    })


def handle_return_to_lobby(data=None):
    coordinator = _coordinator()
    if coordinator is None:
        return
    coordinator.return_to_lobby()


def handle_ping(data):
    emit('pong', data or {})


def _on_signed_in(sender, user, **extra):
    logger.info(f"[auth] signed in identity={user.identity}")


def _on_signed_out(sender, user, **extra):
    # A sign-out is a graceful exit: cancel hooks rather than forfeiting
    if user is None or not getattr(user, 'is_authenticated', False):
        return
    for sid in list(_identity_to_sids.get(user.identity, set())):
        coordinator = _sid_to_coordinator.get(sid)
        if coordinator is None:
            continue
        coordinator.return_to_lobby()
        socketio.emit('signed_out', {}, to=sid, namespace=coordinator.view.namespace)
    logger.info(f"[auth] signed out identity={user.identity}")


def register_socketio_handlers(app, testing: bool = False) -> None:
    """Register Socket.IO event handlers and identity signal listeners.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    namespaces = ['/ws', '/'] if testing else ['/ws']
    for ns in namespaces:
        socketio.on_event('connect', handle_connect, namespace=ns)
        socketio.on_event('disconnect', handle_disconnect, namespace=ns)
        socketio.on_event('create_duel', handle_create_duel, namespace=ns)
        socketio.on_event('join_duel', handle_join_duel, namespace=ns)
        socketio.on_event('submit_answer', handle_submit_answer, namespace=ns)
        socketio.on_event('return_to_lobby', handle_return_to_lobby, namespace=ns)
        socketio.on_event('ping', handle_ping, namespace=ns)

    user_logged_in.connect(_on_signed_in, app)
    user_logged_out.connect(_on_signed_out, app)
