"""Observation of events raised by a Raft node."""

from __future__ import annotations

import itertools
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from raftlet.peers import Server


@dataclass
class Observation:
    """An event delivered to observers; ``raft`` is the node that raised it."""

    raft: Any
    data: Any


@dataclass(frozen=True)
class LeaderObservation:
    """Sent when leadership changes. ``leader`` is kept for older readers."""

    leader: str = ""
    leader_addr: str = ""
    leader_id: str = ""


@dataclass(frozen=True)
class PeerObservation:
    """Sent when a peer is added or removed."""

    removed: bool = False
    peer: Server = field(default_factory=Server)


@dataclass(frozen=True)
class FailedHeartbeatObservation:
    """Sent when a node fails to heartbeat with the leader."""

    peer_id: str = ""
    last_contact: Optional[datetime] = None


@dataclass(frozen=True)
class ResumedHeartbeatObservation:
    """Sent when a node resumes heartbeating after failures."""

    peer_id: str = ""


FilterFn = Callable[[Observation], bool]

_observer_ids = itertools.count(1)
_observer_ids_lock = threading.Lock()


def _next_observer_id() -> int:
    with _observer_ids_lock:
        return next(_observer_ids)


class Observer:
    """Receives observations on ``channel`` when ``filter`` accepts them.

    A blocking observer waits for room on the queue; otherwise observations
    that do not fit are dropped and counted.
    """

    def __init__(
        self,
        channel: Optional[queue.Queue],
        blocking: bool = False,
        filter: Optional[FilterFn] = None,
    ) -> None:
        self.channel = channel
        self.blocking = blocking
        self.filter = filter
        self.id = _next_observer_id()
        self._lock = threading.Lock()
        self._num_observed = 0
        self._num_dropped = 0

    def num_observed(self) -> int:
        """Return how many observations were delivered."""
        with self._lock:
            return self._num_observed

    def num_dropped(self) -> int:
        """Return how many observations were dropped for lack of room."""
        with self._lock:
            return self._num_dropped

    def _deliver(self, observation: Observation) -> None:
        if self.channel is None:
            return
        if self.blocking:
            self.channel.put(observation)
            with self._lock:
                self._num_observed += 1
            return
        try:
            self.channel.put_nowait(observation)
        except queue.Full:
            with self._lock:
                self._num_dropped += 1
        else:
            with self._lock:
                self._num_observed += 1


class ObserverRegistry:
    """Holds the observers of one node and fans observations out to them."""

    def __init__(self, raft: Any = None) -> None:
        self.raft = raft
        self._lock = threading.RLock()
        self._observers: dict[int, Observer] = {}

    def register(self, observer: Observer) -> None:
        with self._lock:
            self._observers[observer.id] = observer

    def deregister(self, observer: Observer) -> None:
        with self._lock:
            self._observers.pop(observer.id, None)

    def observe(self, data: Any) -> None:
        """Send ``data`` to every registered observer that accepts it."""
        with self._lock:
            observers = list(self._observers.values())
        for observer in observers:
            observation = Observation(self.raft, data)
            if observer.filter is not None and not observer.filter(observation):
                continue
            observer._deliver(observation)