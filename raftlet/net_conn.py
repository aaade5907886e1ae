"""Framed msgpack connections and pipelined AppendEntries over a stream socket."""

from __future__ import annotations

import queue
import socket
import threading
from enum import IntEnum
from typing import Any, Optional

import msgpack

from raftlet.rpc import (
    AppendEntriesRequest,
    AppendEntriesResponse,
    AppendFuture,
    PipelineShutdownError,
    from_wire,
    to_wire,
)

DEFAULT_MAX_RPCS_IN_FLIGHT = 2
MIN_IN_FLIGHT_FOR_PIPELINING = 2
CONN_RECEIVE_BUFFER_SIZE = 256 * 1024
CONN_SEND_BUFFER_SIZE = 256 * 1024

_POLL = 0.01


class RPCType(IntEnum):
    """The byte that precedes every request on the wire."""

    APPEND_ENTRIES = 0
    REQUEST_VOTE = 1
    INSTALL_SNAPSHOT = 2
    TIMEOUT_NOW = 3


class RemoteRPCError(RuntimeError):
    """The remote end answered with an error string.

    The connection is still usable; ``response`` holds the decoded response.
    """

    def __init__(self, message: str, response: Any = None) -> None:
        super().__init__(message)
        self.response = response


class NetConn:
    """A connection to ``target`` that writes buffered bytes and reads msgpack objects."""

    def __init__(self, target: str, sock: socket.socket) -> None:
        self.target = target
        self.sock = sock
        self._out = bytearray()
        self._unpacker = msgpack.Unpacker(raw=False)
        self._release_lock = threading.Lock()
        self._released = False

    @property
    def released(self) -> bool:
        """Whether the connection has been closed."""
        return self._released

    def set_timeout(self, timeout: Optional[float]) -> None:
        """Apply an I/O timeout in seconds; zero or None means no timeout."""
        self.sock.settimeout(timeout if timeout and timeout > 0 else None)

    def write(self, data: bytes) -> None:
        """Queue raw bytes, sending them once the buffer is full."""
        self._out += data
        if len(self._out) >= CONN_SEND_BUFFER_SIZE:
            self.flush()

    def encode(self, message: Any) -> None:
        """Queue ``message`` in its msgpack wire form."""
        self.write(to_wire(message))

    def flush(self) -> None:
        """Send everything queued so far."""
        if not self._out:
            return
        data = bytes(self._out)
        self._out.clear()
        self.sock.sendall(data)

    def _fill(self) -> None:
        data = self.sock.recv(CONN_RECEIVE_BUFFER_SIZE)
        if not data:
            raise EOFError("connection closed")
        self._unpacker.feed(data)

    def decode(self) -> Any:
        """Read the next msgpack object from the connection."""
        while True:
            try:
                return next(self._unpacker)
            except StopIteration:
                self._fill()

    def read(self, size: int) -> bytes:
        """Read up to ``size`` raw bytes; an empty result means end of stream."""
        if size <= 0:
            return b""
        buffered = self._unpacker.read_bytes(size)
        if buffered:
            return buffered
        return self.sock.recv(size)

    def read_byte(self) -> int:
        """Read a single raw byte, raising EOFError at end of stream."""
        data = self.read(1)
        if not data:
            raise EOFError("connection closed")
        return data[0]

    def release(self) -> None:
        """Close the connection; later calls do nothing."""
        with self._release_lock:
            if self._released:
                return
            self._released = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()

    def __enter__(self) -> NetConn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


def send_rpc(conn: NetConn, rpc_type: RPCType, args: Any) -> None:
    """Write the type byte and the encoded request, then flush.

    On failure the connection is released and the error re-raised.
    """
    try:
        conn.write(bytes([int(rpc_type)]))
        conn.encode(args)
        conn.flush()
    except Exception:
        conn.release()
        raise


def decode_response(conn: NetConn, response_cls: type) -> Any:
    """Read an error string and a ``response_cls`` response from ``conn``.

    A failure to read releases the connection. A non-empty error string is
    raised as RemoteRPCError, after which the connection may be reused.
    """
    try:
        rpc_error = conn.decode()
        payload = conn.decode()
        response = from_wire(response_cls, payload)
    except Exception:
        conn.release()
        raise
    if rpc_error:
        raise RemoteRPCError(str(rpc_error), response)
    return response


class NetPipeline:
    """Sends AppendEntries requests on one connection without waiting for replies.

    At most ``max_in_flight - 1`` requests are handed off for decoding at a
    time; the next call sends its request and then waits for room.
    """

    def __init__(
        self,
        conn: NetConn,
        timeout: float = 0.0,
        max_in_flight: int = DEFAULT_MAX_RPCS_IN_FLIGHT,
    ) -> None:
        if max_in_flight < MIN_IN_FLIGHT_FOR_PIPELINING:
            raise ValueError("pipelining makes no sense if max_in_flight < 2")
        self._conn = conn
        self._timeout = timeout
        self._slots = threading.Semaphore(max_in_flight - 1)
        self._inprogress: queue.Queue = queue.Queue()
        self._done: queue.Queue = queue.Queue(maxsize=max(max_in_flight - 2, 1))
        self._shutdown = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._thread = threading.Thread(target=self._decode_responses, daemon=True)
        self._thread.start()

    def _decode_responses(self) -> None:
        while not self._shutdown.is_set():
            try:
                future: AppendFuture = self._inprogress.get(timeout=_POLL)
            except queue.Empty:
                continue
            try:
                if self._timeout > 0:
                    self._conn.set_timeout(self._timeout)
                response = decode_response(self._conn, AppendEntriesResponse)
            except RemoteRPCError as exc:
                if exc.response is not None:
                    future.resp = exc.response
                future.respond(exc)
            except Exception as exc:  # noqa: BLE001 - handed to the future
                future.respond(exc)
            else:
                future.resp = response
                future.respond(None)
            if not self._offer_done(future):
                return
            self._slots.release()

    def _offer_done(self, future: AppendFuture) -> bool:
        while not self._shutdown.is_set():
            try:
                self._done.put(future, timeout=_POLL)
                return True
            except queue.Full:
                continue
        return False

    def append_entries(self, args: AppendEntriesRequest) -> AppendFuture:
        """Send ``args``; the returned future later appears on the consumer."""
        if self._shutdown.is_set():
            raise PipelineShutdownError()
        future = AppendFuture(args)
        if self._timeout > 0:
            self._conn.set_timeout(self._timeout)
        send_rpc(self._conn, RPCType.APPEND_ENTRIES, future.args)
        while not self._slots.acquire(timeout=_POLL):
            if self._shutdown.is_set():
                raise PipelineShutdownError()
        if self._shutdown.is_set():
            self._slots.release()
            raise PipelineShutdownError()
        self._inprogress.put(future)
        return future

    def consumer(self) -> queue.Queue:
        """Return the queue of completed futures."""
        return self._done

    def close(self) -> None:
        """Release the connection and stop the pipeline; later calls do nothing."""
        with self._shutdown_lock:
            if self._shutdown.is_set():
                return
            self._conn.release()
            self._shutdown.set()

    def __enter__(self) -> NetPipeline:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()