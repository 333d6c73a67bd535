import os
import sys
import random
import pytest

# Ensure the backend root (containing the `collatz_duel` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from collatz_duel import create_app, db, socketio, duel_store
from collatz_duel.services.duels.coordinator import DuelCoordinator, DuelSettings, DuelView
from collatz_duel.services.duels.ratings import MemoryRatingRepository
from collatz_duel.services.duels.store import MemoryStore


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    BCRYPT_LOG_ROUNDS = 4
    DUEL_START_OFFSET_SEC = 4
    DUEL_RESULT_SETTLE_SEC = 0
    LEADERBOARD_SIZE = 20


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    # Requests push their own app context so per-request login state does not leak between clients
    with application.app_context():
        # Ensure models are imported so tables are created
        import collatz_duel.models  # noqa: F401
        db.create_all()
    yield application
    with application.app_context():
        db.session.remove()
        db.drop_all()
    duel_store.reset()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


def _register(test_client, username, password='password'):
    res = test_client.post('/register', json={'username': username, 'password': password})
    assert res.status_code == 201
    return res.get_json()['user']


@pytest.fixture()
def alice_client(flask_app):
    test_client = flask_app.test_client()
    test_client.user = _register(test_client, 'alice')
    return test_client


@pytest.fixture()
def bob_client(flask_app):
    test_client = flask_app.test_client()
    test_client.user = _register(test_client, 'bob')
    return test_client


def _socket_for(flask_app, http_client):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=http_client,
        namespace='/ws'
    )
    return test_client


@pytest.fixture()
def alice_sio(flask_app, alice_client):
    test_client = _socket_for(flask_app, alice_client)
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')


@pytest.fixture()
def bob_sio(flask_app, bob_client):
    test_client = _socket_for(flask_app, bob_client)
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')


# ---- coordinator harness (no Flask) ----

class RecordingView(DuelView):
    def __init__(self):
        self.events = []

    def _record(self, name, payload=None):
        self.events.append((name, payload))

    def names(self):
        return [name for name, _ in self.events]

    def payloads(self, name):
        return [payload for n, payload in self.events if n == name]

    def on_state(self, session):
        self._record('state', session)

    def on_countdown(self, start_at):
        self._record('countdown', start_at)

    def on_game_started(self, start_number):
        self._record('game_started', start_number)

    def on_result(self, result):
        self._record('result', result)

    def on_cancelled(self, code):
        self._record('cancelled', code)

    def on_lobby(self):
        self._record('lobby')

    def on_error(self, message):
        self._record('error', message)


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def _run_inline(fn, *args):
    fn(*args)


@pytest.fixture()
def store():
    return MemoryStore()


@pytest.fixture()
def ratings():
    return MemoryRatingRepository()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def make_coordinator(store, ratings, clock):
    def factory(identity, name=None, connection_id=None, seed=0, **kwargs):
        return DuelCoordinator(
            store=kwargs.pop('store', store),
            ratings=kwargs.pop('ratings', ratings),
            identity=identity,
            display_name=name or f"user-{identity}",
            connection_id=connection_id or f"conn-{identity}",
            view=kwargs.pop('view', RecordingView()),
            settings=kwargs.pop('settings', DuelSettings(start_offset=4, result_settle=0.5)),
            spawn=kwargs.pop('spawn', _run_inline),
            sleep=kwargs.pop('sleep', clock.sleep),
            clock=kwargs.pop('clock', clock),
            rng=random.Random(seed),
            **kwargs
        )
    return factory
