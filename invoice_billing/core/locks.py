"""Per-key exclusivity for account-scoped read-modify-write."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List


class KeyedLock:
    """One re-entrant lock per key.

    The registry mutex is only held while looking up or releasing an entry,
    never while the caller's critical section runs, so unrelated keys never
    wait on each other. Entries are dropped once no thread holds or waits on
    them.
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._entries: Dict[str, List] = {}  # key -> [RLock, refcount]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._registry_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._entries[key] = entry
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    self._entries.pop(key, None)

    def active_keys(self) -> int:
        with self._registry_lock:
            return len(self._entries)
