"""In-process keyed locks.

Generation runs are serialised per (department, month).  Every change to a
department's roster, whether a generation run or a manual edit, also holds
that department's roster lock, so two writers never check availability
against the same stale state.  A key's lock lives only while some thread
holds or waits for it.
"""

import logging
import threading
from contextlib import contextmanager

from flask import current_app

from .errors import ConcurrencyError

logger = logging.getLogger(__name__)

DEFAULT_ROSTER_LOCK_TIMEOUT = 10
ROSTER_BUSY_MESSAGE = 'มีผู้ใช้อื่นกำลังแก้ไขตารางเวรของแผนกนี้อยู่ กรุณาลองใหม่อีกครั้ง'


class KeyedLocks:
    def __init__(self, name):
        self.name = name
        self._locks = {}  # key -> [lock, users]
        self._guard = threading.Lock()

    def __len__(self):
        with self._guard:
            return len(self._locks)

    def _checkout(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, key):
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def is_held(self, key):
        with self._guard:
            entry = self._locks.get(key)
            return entry is not None and entry[0].locked()

    @contextmanager
    def hold(self, key, blocking=True, timeout=None, message=None):
        """Hold the lock for ``key``; raise ``ConcurrencyError`` if it cannot be taken."""
        lock = self._checkout(key)
        try:
            if not blocking:
                acquired = lock.acquire(blocking=False)
            elif timeout is None:
                acquired = lock.acquire()
            else:
                acquired = lock.acquire(timeout=timeout)
            if not acquired:
                logger.warning(f"{self.name} lock busy for {key}")
                raise ConcurrencyError(message, detail=f'{self.name} lock busy for {key}')
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)


generation_locks = KeyedLocks('generation')
roster_locks = KeyedLocks('roster')


def roster_lock(department_id, timeout=None, message=ROSTER_BUSY_MESSAGE):
    """The department's roster lock, waiting at most ``ROSTER_LOCK_TIMEOUT_SECONDS``."""
    if timeout is None:
        timeout = current_app.config.get('ROSTER_LOCK_TIMEOUT_SECONDS', DEFAULT_ROSTER_LOCK_TIMEOUT)
    return roster_locks.hold(int(department_id), timeout=float(timeout), message=message)
