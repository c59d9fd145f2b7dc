# portal/services/locks.py
import threading
from contextlib import contextmanager


class SingleFlight:
    """
    At most one in-progress operation per key inside this process. A second
    caller for a key already in flight does not wait; it is told to back off.
    Other processes are not covered: the store's existence checks are.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._inflight: set = set()

    def claim(self, key) -> bool:
        with self._lock:
            if key in self._inflight:
                return False
            self._inflight.add(key)
            return True

    def release(self, key) -> None:
        with self._lock:
            self._inflight.discard(key)

    @contextmanager
    def hold(self, key):
        claimed = self.claim(key)
        try:
            yield claimed
        finally:
            if claimed:
                self.release(key)


class KeyedLock:
    """
    Blocking mutex per key. A key's entry lives only while someone holds or
    waits on it, so the table stays as small as the current contention.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict = {}       # key -> [Lock, holders + waiters]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]
