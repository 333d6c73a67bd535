import pytest

from collatz_duel.services.duels.codes import CODE_ALPHABET, generate_session_code
from collatz_duel.services.duels.errors import PreconditionViolation, StoreUnavailable
from collatz_duel.services.duels.store import DELETE, MemoryStore


def test_subscribe_fires_immediately_and_on_every_change():
    store = MemoryStore()
    store.create('duels/A', {'status': 'pending', 'player1': {'steps': 0}})
    seen = []
    sub = store.subscribe('duels/A', seen.append)
    assert seen == [{'status': 'pending', 'player1': {'steps': 0}}]

    store.update('duels/A', {'player1/steps': 1})
    store.update('duels/A', {'status': 'active'})
    assert [s['player1']['steps'] for s in seen] == [0, 1, 1]
    assert seen[-1]['status'] == 'active'

    sub.cancel()
    store.update('duels/A', {'player1/steps': 2})
    assert len(seen) == 3


def test_subscribe_to_absent_record_delivers_none_then_deletion():
    store = MemoryStore()
    seen = []
    store.subscribe('duels/B', seen.append)
    store.create('duels/B', {'status': 'pending'})
    store.delete('duels/B')
    assert seen == [None, {'status': 'pending'}, None]


def test_snapshots_do_not_alias_store_state():
    store = MemoryStore()
    store.create('duels/A', {'player1': {'steps': 0}})
    snapshot = store.read('duels/A')
    snapshot['player1']['steps'] = 99
    assert store.read('duels/A')['player1']['steps'] == 0


def test_update_of_absent_record_is_a_no_op():
    store = MemoryStore()
    assert store.update('duels/missing', {'player1/finished': True}) is False
    assert store.read('duels/missing') is None


def test_conditional_update_writes_only_when_fields_match():
    store = MemoryStore()
    store.create('duels/A', {'status': 'pending', 'player2': None})

    assert store.update('duels/A', {'player2': {'identity': '2'}}, expect={'status': 'active'}) is False
    assert store.read('duels/A')['player2'] is None

    seat = {'status': 'active', 'player2': {'identity': '2'}}
    assert store.update('duels/A', seat, expect={'status': 'pending', 'player2': None}) is True
    assert store.update('duels/A', {'player2': {'identity': '3'}}, expect={'player2': None}) is False
    assert store.update('duels/A', {'player2/steps': 1}, expect={'player2/identity': '2'}) is True
    assert store.read('duels/A')['player2'] == {'identity': '2', 'steps': 1}


def test_children_lists_direct_records_only():
    store = MemoryStore()
    store.create('duels/A', {'n': 1})
    store.create('duels/B', {'n': 2})
    store.create('other/C', {'n': 3})
    assert set(store.children('duels')) == {'A', 'B'}


def test_disconnect_runs_registered_hooks_once():
    store = MemoryStore()
    store.create('duels/A', {'player1': {'finished': False}})
    store.create('duels/B', {'status': 'pending'})
    forfeit = store.on_disconnect('sid-1', 'duels/A', {'player1/finished': True, 'player1/forfeit': True}).register()
    lobby = store.on_disconnect('sid-1', 'duels/B', DELETE).register()

    assert store.disconnect('sid-1') == 2
    assert store.read('duels/A')['player1'] == {'finished': True, 'forfeit': True}
    assert store.read('duels/B') is None
    assert not forfeit.registered and not lobby.registered
    assert store.disconnect('sid-1') == 0


def test_cancelled_hook_does_not_fire():
    store = MemoryStore()
    store.create('duels/A', {'status': 'pending'})
    hook = store.on_disconnect('sid-1', 'duels/A', DELETE).register()
    hook.cancel()
    hook.cancel()
    assert store.disconnect('sid-1') == 0
    assert store.read('duels/A') == {'status': 'pending'}


def test_cancel_only_removes_own_hook():
    store = MemoryStore()
    store.create('duels/A', {'status': 'pending'})
    mine = store.on_disconnect('sid-1', 'duels/A', {'mine': True}).register()
    theirs = store.on_disconnect('sid-1', 'duels/A', {'theirs': True}).register()
    mine.cancel()
    assert store.hooks_for('sid-1') == [theirs]


def test_unavailable_store_raises():
    store = MemoryStore(available=False)
    with pytest.raises(StoreUnavailable):
        store.read('duels/A')
    with pytest.raises(StoreUnavailable):
        store.subscribe('duels/A', lambda record: None)
    store.set_available(True)
    assert store.read('duels/A') is None


def test_failing_subscriber_does_not_break_writer():
    store = MemoryStore()
    store.create('duels/A', {'n': 0})
    seen = []

    def boom(record):
        if record['n'] == 1:
            raise RuntimeError('subscriber bug')

    store.subscribe('duels/A', boom)
    store.subscribe('duels/A', seen.append)
    assert store.update('duels/A', {'n': 1}) is True
    assert seen[-1] == {'n': 1}


def test_session_codes_avoid_live_codes_and_confusable_glyphs():
    class Replay:
        def __init__(self, codes):
            self.codes = list(codes)

        def choices(self, alphabet, k):
            return list(self.codes.pop(0))

    code = generate_session_code({'AAAAAA'}, rng=Replay(['AAAAAA', 'BBBBBB']))
    assert code == 'BBBBBB'
    assert not set('0O1IL') & set(CODE_ALPHABET)


def test_session_codes_grow_after_exhausting_attempts():
    class Replay:
        def choices(self, alphabet, k):
            return ['A'] * k

    code = generate_session_code({'AAAAAA'}, length=6, fallback_length=7, max_attempts=3, rng=Replay())
    assert code == 'AAAAAAA'


def test_session_codes_give_up_when_every_code_is_taken():
    class EveryCode:
        def __contains__(self, code):
            return True

    with pytest.raises(PreconditionViolation):
        generate_session_code(EveryCode(), max_attempts=3)
