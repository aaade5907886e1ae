"""Log entries, the log store interface and log store helpers."""

from __future__ import annotations

import abc
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Callable, Protocol, Sequence, runtime_checkable


class LogType(IntEnum):
    """Kinds of log entries."""

    COMMAND = 0
    NOOP = 1
    ADD_PEER_DEPRECATED = 2
    REMOVE_PEER_DEPRECATED = 3
    BARRIER = 4
    CONFIGURATION = 5

    def __str__(self) -> str:
        return _LOG_TYPE_NAMES[self]


_LOG_TYPE_NAMES = {
    LogType.COMMAND: "LogCommand",
    LogType.NOOP: "LogNoop",
    LogType.ADD_PEER_DEPRECATED: "LogAddPeerDeprecated",
    LogType.REMOVE_PEER_DEPRECATED: "LogRemovePeerDeprecated",
    LogType.BARRIER: "LogBarrier",
    LogType.CONFIGURATION: "LogConfiguration",
}


@dataclass
class Log:
    """A replicated log entry.

    ``appended_at`` is the time the leader first appended the entry, or
    ``None`` when it is unknown.
    """

    index: int = 0
    term: int = 0
    type: LogType = LogType.COMMAND
    data: bytes = b""
    extensions: bytes = b""
    appended_at: datetime | None = field(default=None)


class LogNotFoundError(LookupError):
    """Raised when a requested log entry does not exist."""

    def __init__(self, message: str = "log not found") -> None:
        super().__init__(message)


class LogStore(abc.ABC):
    """Durable storage for log entries."""

    @abc.abstractmethod
    def first_index(self) -> int:
        """Return the first index written, 0 for no entries."""

    @abc.abstractmethod
    def last_index(self) -> int:
        """Return the last index written, 0 for no entries."""

    @abc.abstractmethod
    def get_log(self, index: int) -> Log:
        """Return the entry at ``index`` or raise LogNotFoundError."""

    def store_log(self, log: Log) -> None:
        """Store a single entry."""
        self.store_logs([log])

    @abc.abstractmethod
    def store_logs(self, logs: Sequence[Log]) -> None:
        """Store several entries; they need not be contiguous."""

    @abc.abstractmethod
    def delete_range(self, min_index: int, max_index: int) -> None:
        """Delete the entries in the inclusive range."""


@runtime_checkable
class MonotonicLogStore(Protocol):
    """A log store that cannot tolerate gaps between indexes."""

    def is_monotonic(self) -> bool:
        ...


def oldest_log(store: LogStore) -> Log:
    """Return the oldest entry in ``store``.

    A truncation racing with the lookup is retried until the first index
    stops moving.
    """
    last_fail_index = 0
    last_error: Exception | None = None
    while True:
        first = store.first_index()
        if first == 0:
            raise LogNotFoundError()
        if first == last_fail_index and last_error is not None:
            raise last_error
        try:
            return store.get_log(first)
        except Exception as exc:  # noqa: BLE001 - retried, then re-raised
            last_fail_index = first
            last_error = exc


def emit_log_store_metrics(
    store: LogStore,
    prefix: Sequence[str],
    interval: float,
    stop_event: threading.Event,
    set_gauge: Callable[[list[str], float], None],
) -> None:
    """Report the age in milliseconds of the oldest log every ``interval`` seconds.

    Runs until ``stop_event`` is set. On error, or when the entry carries no
    append time, the age reported is 0.
    """
    name = [*prefix, "oldestLogAge"]
    while not stop_event.wait(interval):
        age_ms = 0.0
        try:
            log = oldest_log(store)
        except Exception:  # noqa: BLE001 - an error is reported as age 0
            log = None
        if log is not None and log.appended_at is not None:
            now = datetime.now(log.appended_at.tzinfo)
            age_ms = float(int((now - log.appended_at).total_seconds() * 1000))
        set_gauge(name, age_ms)