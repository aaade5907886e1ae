"""A ring-buffer cache of recent entries in front of any log store."""

from __future__ import annotations

import copy
import threading
from typing import Sequence

from raftlet.log import Log, LogStore, MonotonicLogStore


class LogCache(LogStore):
    """Caches recently written entries in a fixed-size ring buffer."""

    def __init__(self, capacity: int, store: LogStore) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._store = store
        self._capacity = capacity
        self._cache: list[Log | None] = [None] * capacity
        self._lock = threading.Lock()

    def is_monotonic(self) -> bool:
        """Report whether the underlying store is monotonically indexed."""
        if isinstance(self._store, MonotonicLogStore):
            return self._store.is_monotonic()
        return False

    def get_log(self, index: int) -> Log:
        with self._lock:
            cached = self._cache[index % self._capacity]
        if cached is not None and cached.index == index:
            return copy.copy(cached)
        return self._store.get_log(index)

    def store_log(self, log: Log) -> None:
        self.store_logs([log])

    def store_logs(self, logs: Sequence[Log]) -> None:
        try:
            self._store.store_logs(logs)
        except Exception as exc:
            raise RuntimeError(
                f'unable to store logs within log store, err: "{exc}"'
            ) from exc
        with self._lock:
            for log in logs:
                self._cache[log.index % self._capacity] = log

    def first_index(self) -> int:
        return self._store.first_index()

    def last_index(self) -> int:
        return self._store.last_index()

    def delete_range(self, min_index: int, max_index: int) -> None:
        with self._lock:
            self._cache = [None] * self._capacity
        self._store.delete_range(min_index, max_index)