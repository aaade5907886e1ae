"""An in-memory log and stable store, meant for tests."""

from __future__ import annotations

import copy
import threading
from typing import Sequence

from raftlet.log import Log, LogNotFoundError, LogStore


class InmemStore(LogStore):
    """Keeps logs and key/value pairs in memory. Not for production use."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._low_index = 0
        self._high_index = 0
        self._logs: dict[int, Log] = {}
        self._kv: dict[bytes, bytes] = {}
        self._kv_int: dict[bytes, int] = {}

    def first_index(self) -> int:
        with self._lock:
            return self._low_index

    def last_index(self) -> int:
        with self._lock:
            return self._high_index

    def get_log(self, index: int) -> Log:
        with self._lock:
            log = self._logs.get(index)
        if log is None:
            raise LogNotFoundError()
        return copy.copy(log)

    def store_log(self, log: Log) -> None:
        self.store_logs([log])

    def store_logs(self, logs: Sequence[Log]) -> None:
        with self._lock:
            for log in logs:
                self._logs[log.index] = log
                if self._low_index == 0:
                    self._low_index = log.index
                if log.index > self._high_index:
                    self._high_index = log.index

    def delete_range(self, min_index: int, max_index: int) -> None:
        with self._lock:
            for index in [i for i in self._logs if min_index <= i <= max_index]:
                del self._logs[index]
            if min_index <= self._low_index:
                self._low_index = max_index + 1
            if max_index >= self._high_index:
                self._high_index = min_index - 1
            if self._low_index > self._high_index:
                self._low_index = 0
                self._high_index = 0

    def set(self, key: bytes, val: bytes) -> None:
        """Store ``val`` under ``key``."""
        with self._lock:
            self._kv[bytes(key)] = val

    def get(self, key: bytes) -> bytes:
        """Return the value under ``key``; raise KeyError if there is none."""
        with self._lock:
            val = self._kv.get(bytes(key))
        if val is None:
            raise KeyError("not found")
        return val

    def set_uint64(self, key: bytes, val: int) -> None:
        """Store an unsigned integer under ``key``."""
        with self._lock:
            self._kv_int[bytes(key)] = val

    def get_uint64(self, key: bytes) -> int:
        """Return the integer under ``key``, 0 if there is none."""
        with self._lock:
            return self._kv_int.get(bytes(key), 0)