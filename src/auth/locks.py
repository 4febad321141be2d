"""
Per-user lock table.

Serializes mutations of one user's credential, backup codes and sessions
without making different users contend on a single lock.
"""
import threading
import weakref
from contextlib import contextmanager


class UserLocks:
    """
    Lazily created re-entrant lock per user ID.

    Entries are weakly held: a user's lock lives as long as some caller
    holds a reference to it and is dropped from the table afterwards.
    The table lock is held only while looking up / creating an entry,
    never while the per-user lock is held.

    Example usage:
        locks = UserLocks()
        with locks.hold(user_id):
            ...  # single writer for this user
    """

    def __init__(self):
        self._table_lock = threading.Lock()
        self._locks = weakref.WeakValueDictionary()

    def get(self, user_id: str) -> threading.RLock:
        """Get (or create) the lock for a user. Keep the returned reference while using it."""
        with self._table_lock:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[user_id] = lock
            return lock

    @contextmanager
    def hold(self, user_id: str):
        """Hold the user's lock for the duration of the block."""
        lock = self.get(user_id)
        with lock:
            yield

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._locks)
