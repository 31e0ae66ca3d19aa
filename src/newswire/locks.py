"""Per-key mutexes for the keyed shared stores (sources, domains, keywords)."""

from __future__ import annotations

import threading


class KeyedLocks:
    """Hands out one ``threading.Lock`` per key.

    The registry lock is held only while looking up or creating a key's lock,
    so updates to different keys never wait on each other.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._registry = threading.Lock()

    def __call__(self, key: str) -> threading.Lock:
        with self._registry:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def discard(self, key: str) -> None:
        with self._registry:
            self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._registry:
            return len(self._locks)
