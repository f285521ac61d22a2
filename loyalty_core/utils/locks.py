"""
Keyed in-process locks.

Request threads in the same worker serialize on these before touching a
shared row, and the row itself is then locked with SELECT ... FOR UPDATE so
other worker processes are serialized by the database. Lock order is always
client before balance.

The registry is built per Flask app and stored in app.extensions, so tests
and separate apps never share lock state.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Tuple

from flask import current_app

from ..extensions import LOCKS_EXTENSION_KEY


class KeyedLockRegistry:
    """Hands out one re-entrant lock per key."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[Hashable, ...], threading.RLock] = {}

    def get(self, *key) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *key):
        lock = self.get(*key)
        with lock:
            yield

    def __len__(self):
        return len(self._locks)


def init_locks(app) -> KeyedLockRegistry:
    registry = KeyedLockRegistry()
    app.extensions[LOCKS_EXTENSION_KEY] = registry
    return registry


def get_lock_registry() -> KeyedLockRegistry:
    """Registry of the current app (requires an app context)."""
    return current_app.extensions[LOCKS_EXTENSION_KEY]


def client_lock(client_id: int):
    return get_lock_registry().hold('client', client_id)


def balance_lock(client_id: int, program_id: int):
    return get_lock_registry().hold('balance', client_id, program_id)
