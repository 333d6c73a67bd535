"""Shared-state store used to coordinate the two sides of a duel.

Records are plain dicts addressed by slash paths (``duels/ABC234``). Partial
updates take nested slash keys so a participant can touch only its own slot
(``{'player1/steps': 3}``). Subscribers receive the whole record on every
change and once immediately on subscribe.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

DELETE = 'delete'

Record = Dict[str, Any]
Callback = Callable[[Optional[Record]], None]
Mutation = Union[str, Dict[str, Any]]


class Subscription:
    """Handle returned by :meth:`SessionStore.subscribe`."""

    def __init__(self, store: 'SessionStore', path: str, callback: Callback):
        self.store = store
        self.path = path
        self.callback = callback
        self.active = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self.store._unsubscribe(self)


class DisconnectHook:
    """A mutation the store applies on a connection's behalf if it drops.

    Created unregistered by :meth:`SessionStore.on_disconnect`. Only the owner
    of the hook object can cancel it, so a coordinator never cancels a hook
    registered by someone else.
    """

    def __init__(self, store: 'SessionStore', connection_id: str, path: str, mutation: Mutation):
        self.store = store
        self.connection_id = connection_id
        self.path = path
        self.mutation = mutation
        self.registered = False

    def register(self) -> 'DisconnectHook':
        if not self.registered:
            self.store._register_hook(self)
            self.registered = True
        return self

    def cancel(self) -> None:
        if self.registered:
            self.registered = False
            self.store._cancel_hook(self)

    def __repr__(self):
        kind = 'delete' if self.mutation == DELETE else 'update'
        return f"<DisconnectHook {kind} {self.path} conn={self.connection_id} registered={self.registered}>"


class SessionStore(ABC):

    @abstractmethod
    def create(self, path: str, record: Record) -> None:
        ...

    @abstractmethod
    def read(self, path: str) -> Optional[Record]:
        ...

    @abstractmethod
    def update(self, path: str, fields: Dict[str, Any], expect: Optional[Dict[str, Any]] = None) -> bool:
        """Apply ``fields`` atomically.

        With ``expect`` the write is conditional: every slash key in it must
        currently hold the given value (``None`` matches an absent key).
        Returns False, writing nothing, if the record is absent or a
        condition does not hold.
        """

    @abstractmethod
    def delete(self, path: str) -> None:
        ...

    @abstractmethod
    def children(self, path: str) -> Dict[str, Record]:
        ...

    @abstractmethod
    def subscribe(self, path: str, callback: Callback) -> Subscription:
        ...

    def on_disconnect(self, connection_id: str, path: str, mutation: Mutation) -> DisconnectHook:
        return DisconnectHook(self, connection_id, path, mutation)

    @abstractmethod
    def disconnect(self, connection_id: str) -> int:
        """Run and forget every hook registered for ``connection_id``."""

    @abstractmethod
    def _unsubscribe(self, subscription: Subscription) -> None:
        ...

    @abstractmethod
    def _register_hook(self, hook: DisconnectHook) -> None:
        ...

    @abstractmethod
    def _cancel_hook(self, hook: DisconnectHook) -> None:
        ...


def _apply_fields(record: Record, fields: Dict[str, Any]) -> None:
    for key, value in fields.items():
        parts = key.split('/')
        target = record
        for part in parts[:-1]:
            nxt = target.get(part)
            if not isinstance(nxt, dict):
                nxt = {}
                target[part] = nxt
            target = nxt
        target[parts[-1]] = copy.deepcopy(value)


def _field(record: Record, key: str) -> Any:
    value: Any = record
    for part in key.split('/'):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _matches(record: Record, expect: Optional[Dict[str, Any]]) -> bool:
    return all(_field(record, key) == value for key, value in (expect or {}).items())


class MemoryStore(SessionStore):
    """In-process store, registered on the Flask app as an extension.

    Writes are serialized by a re-entrant lock; notifications are delivered
    after the lock is released, in the writing thread, so each writer sees its
    own writes in the order issued.
    """

    def __init__(self, app=None, available: bool = True):
        self._lock = threading.RLock()
        self._records: Dict[str, Record] = {}
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._hooks: Dict[str, List[DisconnectHook]] = {}
        self.available = available
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        self.reset()
        app.extensions['duel_store'] = self

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._subscribers.clear()
            self._hooks.clear()
            self.available = True

    def set_available(self, available: bool) -> None:
        self.available = available

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailable('Shared-state store is unavailable')

    def create(self, path, record):
        self._check()
        with self._lock:
            self._records[path] = copy.deepcopy(record)
            pending = self._pending(path)
        self._deliver(pending)

    def read(self, path):
        self._check()
        with self._lock:
            record = self._records.get(path)
            return copy.deepcopy(record) if record is not None else None

    def update(self, path, fields, expect=None):
        self._check()
        with self._lock:
            record = self._records.get(path)
            if record is None or not _matches(record, expect):
                return False
            _apply_fields(record, fields)
            pending = self._pending(path)
        self._deliver(pending)
        return True

    def delete(self, path):
        self._check()
        with self._lock:
            if self._records.pop(path, None) is None:
                return
            pending = self._pending(path)
        self._deliver(pending)

    def children(self, path):
        self._check()
        prefix = path.rstrip('/') + '/'
        with self._lock:
            return {
                key[len(prefix):]: copy.deepcopy(record)
                for key, record in self._records.items()
                if key.startswith(prefix) and '/' not in key[len(prefix):]
            }

    def subscribe(self, path, callback):
        self._check()
        subscription = Subscription(self, path, callback)
        with self._lock:
            self._subscribers.setdefault(path, []).append(subscription)
            record = self._records.get(path)
            snapshot = copy.deepcopy(record) if record is not None else None
        self._deliver([(subscription, snapshot)])
        return subscription

    def disconnect(self, connection_id):
        with self._lock:
            hooks = self._hooks.pop(connection_id, [])
        for hook in hooks:
            hook.registered = False
            logger.info(f"[store-disconnect] conn={connection_id} path={hook.path} hook={'delete' if hook.mutation == DELETE else 'update'}")
            if hook.mutation == DELETE:
                self.delete(hook.path)
            else:
                self.update(hook.path, hook.mutation)
        return len(hooks)

    def hooks_for(self, connection_id: str) -> List[DisconnectHook]:
        with self._lock:
            return list(self._hooks.get(connection_id, []))

    def _unsubscribe(self, subscription):
        with self._lock:
            subs = self._subscribers.get(subscription.path, [])
            if subscription in subs:
                subs.remove(subscription)
            if not subs:
                self._subscribers.pop(subscription.path, None)

    def _register_hook(self, hook):
        self._check()
        with self._lock:
            self._hooks.setdefault(hook.connection_id, []).append(hook)

    def _cancel_hook(self, hook):
        with self._lock:
            hooks = self._hooks.get(hook.connection_id, [])
            if hook in hooks:
                hooks.remove(hook)
            if not hooks:
                self._hooks.pop(hook.connection_id, None)

    def _pending(self, path):
        record = self._records.get(path)
        return [
            (sub, copy.deepcopy(record) if record is not None else None)
            for sub in list(self._subscribers.get(path, []))
        ]

    def _deliver(self, pending):
        for subscription, snapshot in pending:
            if not subscription.active:
                continue
            try:
                subscription.callback(snapshot)
            except Exception:
                logger.exception(f"[store-notify] subscriber on {subscription.path} raised")
