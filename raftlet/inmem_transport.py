"""An in-memory transport that routes RPCs between transports in one process."""

from __future__ import annotations

import queue
import threading
import time
import uuid
from typing import Any, BinaryIO, Callable, Optional

from raftlet.rpc import (
    RPC,
    AppendEntriesRequest,
    AppendEntriesResponse,
    AppendFuture,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    PipelineShutdownError,
    RequestVoteRequest,
    RequestVoteResponse,
    RPCResponse,
    TimeoutNowRequest,
    TimeoutNowResponse,
)

DEFAULT_TIMEOUT = 0.5
DEFAULT_CAPACITY = 16
_POLL = 0.01


def new_inmem_addr() -> str:
    """Return a new random address."""
    return str(uuid.uuid4())


def _deadline(timeout: float) -> Optional[float]:
    return time.monotonic() + timeout if timeout > 0 else None


def _put(
    channel: queue.Queue,
    item: Any,
    deadline: Optional[float],
    stop: Optional[threading.Event],
    timeout_message: str,
) -> None:
    """Put ``item`` on ``channel`` before ``deadline`` unless ``stop`` is set."""
    while True:
        if stop is not None and stop.is_set():
            raise PipelineShutdownError()
        wait = _POLL
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                try:
                    channel.put_nowait(item)
                    return
                except queue.Full:
                    raise TimeoutError(timeout_message) from None
            wait = min(wait, remaining)
        try:
            channel.put(item, timeout=wait)
            return
        except queue.Full:
            continue


def _get(
    channel: queue.Queue,
    deadline: Optional[float],
    stop: Optional[threading.Event],
    timeout_message: str,
) -> Any:
    """Take an item from ``channel`` before ``deadline`` unless ``stop`` is set."""
    while True:
        if stop is not None and stop.is_set():
            raise PipelineShutdownError()
        wait = _POLL
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                try:
                    return channel.get_nowait()
                except queue.Empty:
                    raise TimeoutError(timeout_message) from None
            wait = min(wait, remaining)
        try:
            return channel.get(timeout=wait)
        except queue.Empty:
            continue


class InmemTransport:
    """A transport whose peers are other in-memory transports.

    ``timeout`` bounds, in seconds, how long a connected peer may take to
    accept and answer an RPC. ``capacity`` is the size of the queue of
    incoming RPCs.
    """

    def __init__(
        self,
        addr: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._addr = addr or new_inmem_addr()
        self.timeout = timeout
        self._consumer: queue.Queue = queue.Queue(maxsize=capacity)
        self._lock = threading.RLock()
        self._peers: dict[str, InmemTransport] = {}
        self._pipelines: list[InmemPipeline] = []

    def consumer(self) -> queue.Queue:
        """Return the queue on which incoming RPCs arrive."""
        return self._consumer

    def local_addr(self) -> str:
        return self._addr

    def set_heartbeat_handler(self, handler: Optional[Callable[[RPC], None]]) -> None:
        """Heartbeat fast-path is not supported; heartbeats use the consumer."""

    def _peer(self, target: str) -> InmemTransport:
        with self._lock:
            peer = self._peers.get(target)
        if peer is None:
            raise ConnectionError(f"failed to connect to peer: {target}")
        return peer

    def append_entries_pipeline(self, server_id: str, target: str) -> InmemPipeline:
        """Open a pipeline of AppendEntries requests to ``target``."""
        with self._lock:
            peer = self._peers.get(target)
            if peer is None:
                raise ConnectionError(f"failed to connect to peer: {target}")
            pipeline = InmemPipeline(self, peer, target)
            self._pipelines.append(pipeline)
            return pipeline

    def _make_rpc(
        self, target: str, args: Any, reader: Optional[BinaryIO], timeout: float
    ) -> Any:
        peer = self._peer(target)
        resp_chan: queue.Queue = queue.Queue(maxsize=1)
        request = RPC(command=args, reader=reader, resp_chan=resp_chan)
        _put(
            peer._consumer,
            request,
            time.monotonic() + max(timeout, 0.0),
            None,
            "send timed out",
        )
        result: RPCResponse = _get(
            resp_chan, time.monotonic() + max(timeout, 0.0), None, "command timed out"
        )
        if result.error is not None:
            raise result.error
        return result.response

    def append_entries(
        self, server_id: str, target: str, args: AppendEntriesRequest
    ) -> AppendEntriesResponse:
        return self._make_rpc(target, args, None, self.timeout)

    def request_vote(
        self, server_id: str, target: str, args: RequestVoteRequest
    ) -> RequestVoteResponse:
        return self._make_rpc(target, args, None, self.timeout)

    def install_snapshot(
        self,
        server_id: str,
        target: str,
        args: InstallSnapshotRequest,
        data: BinaryIO,
    ) -> InstallSnapshotResponse:
        return self._make_rpc(target, args, data, 10 * self.timeout)

    def timeout_now(
        self, server_id: str, target: str, args: TimeoutNowRequest
    ) -> TimeoutNowResponse:
        return self._make_rpc(target, args, None, 10 * self.timeout)

    def encode_peer(self, server_id: str, address: str) -> bytes:
        return address.encode()

    def decode_peer(self, buf: bytes) -> str:
        return bytes(buf).decode()

    def connect(self, peer: str, transport: InmemTransport) -> None:
        """Route RPCs addressed to ``peer`` to ``transport``."""
        if not isinstance(transport, InmemTransport):
            raise TypeError("can only connect to another InmemTransport")
        with self._lock:
            self._peers[peer] = transport

    def disconnect(self, peer: str) -> None:
        """Stop routing to ``peer`` and close the pipelines to it."""
        with self._lock:
            self._peers.pop(peer, None)
            remaining = []
            for pipeline in self._pipelines:
                if pipeline.peer_addr == peer:
                    pipeline.close()
                else:
                    remaining.append(pipeline)
            self._pipelines = remaining

    def disconnect_all(self) -> None:
        """Remove every route and close every pipeline."""
        with self._lock:
            self._peers = {}
            for pipeline in self._pipelines:
                pipeline.close()
            self._pipelines = []

    def close(self) -> None:
        """Permanently disable the transport."""
        self.disconnect_all()

    def __enter__(self) -> InmemTransport:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class InmemPipeline:
    """Pipelined AppendEntries requests from one in-memory transport to a peer."""

    def __init__(self, trans: InmemTransport, peer: InmemTransport, peer_addr: str) -> None:
        self._trans = trans
        self._peer = peer
        self.peer_addr = peer_addr
        self._done: queue.Queue = queue.Queue(maxsize=DEFAULT_CAPACITY)
        self._inprogress: queue.Queue = queue.Queue(maxsize=DEFAULT_CAPACITY)
        self._shutdown = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._thread = threading.Thread(target=self._decode_responses, daemon=True)
        self._thread.start()

    def _decode_responses(self) -> None:
        timeout = self._trans.timeout
        try:
            while True:
                future, resp_chan = _get(self._inprogress, None, self._shutdown, "")
                try:
                    result: RPCResponse = _get(
                        resp_chan, _deadline(timeout), self._shutdown, "command timed out"
                    )
                except TimeoutError as exc:
                    future.respond(exc)
                else:
                    if result.response is not None:
                        future.resp = result.response
                    future.respond(result.error)
                _put(self._done, future, None, self._shutdown, "")
        except PipelineShutdownError:
            return

    def append_entries(self, args: AppendEntriesRequest) -> AppendFuture:
        """Send ``args``; the returned future later appears on the consumer."""
        future = AppendFuture(args)
        deadline = _deadline(self._trans.timeout)
        resp_chan: queue.Queue = queue.Queue(maxsize=1)
        request = RPC(command=args, resp_chan=resp_chan)

        with self._shutdown_lock:
            if self._shutdown.is_set():
                raise PipelineShutdownError()

        _put(self._peer._consumer, request, deadline, self._shutdown, "command enqueue timeout")
        _put(self._inprogress, (future, resp_chan), None, self._shutdown, "")
        return future

    def consumer(self) -> queue.Queue:
        """Return the queue of completed futures."""
        return self._done

    def close(self) -> None:
        """Shut the pipeline down; later calls do nothing."""
        with self._shutdown_lock:
            self._shutdown.set()