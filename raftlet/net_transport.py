"""A network transport that carries RPCs as msgpack frames over stream sockets."""

from __future__ import annotations

import abc
import dataclasses
import logging
import queue
import socket
import threading
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Optional, Protocol

from raftlet.net_conn import (
    DEFAULT_MAX_RPCS_IN_FLIGHT,
    MIN_IN_FLIGHT_FOR_PIPELINING,
    NetConn,
    NetPipeline,
    RemoteRPCError,
    RPCType,
    decode_response,
    send_rpc,
)
from raftlet.rpc import (
    RPC,
    AppendEntriesRequest,
    AppendEntriesResponse,
    InstallSnapshotRequest,
    InstallSnapshotResponse,
    PipelineReplicationNotSupportedError,
    RequestVoteRequest,
    RequestVoteResponse,
    TimeoutNowRequest,
    TimeoutNowResponse,
    TransportShutdownError,
    from_wire,
)

DEFAULT_TIMEOUT_SCALE = 256 * 1024

_BASE_ACCEPT_DELAY = 0.005
_MAX_ACCEPT_DELAY = 1.0
_POLL = 0.01
_ACCEPT_POLL = 0.1
_COPY_CHUNK = 64 * 1024

_REQUEST_TYPES = {
    RPCType.APPEND_ENTRIES: AppendEntriesRequest,
    RPCType.REQUEST_VOTE: RequestVoteRequest,
    RPCType.INSTALL_SNAPSHOT: InstallSnapshotRequest,
    RPCType.TIMEOUT_NOW: TimeoutNowRequest,
}


class ServerAddressProvider(Protocol):
    """Supplies the address to dial for a server ID."""

    def server_addr(self, server_id: str) -> str:
        ...


class StreamLayer(abc.ABC):
    """Listens for and dials the stream connections a transport uses."""

    @abc.abstractmethod
    def accept(self) -> socket.socket:
        """Wait for and return the next incoming connection."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop listening."""

    @abc.abstractmethod
    def addr(self) -> str:
        """Return the address peers reach this layer at."""

    @abc.abstractmethod
    def dial(self, address: str, timeout: float) -> socket.socket:
        """Open an outgoing connection to ``address``."""


def _split_host_port(address: str) -> tuple[str, int]:
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
    else:
        host, sep, port = address.rpartition(":")
        if not sep:
            raise ValueError(f"missing port in address {address!r}")
    if not port:
        raise ValueError(f"missing port in address {address!r}")
    return host, int(port)


def _join_host_port(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


class TCPStreamLayer(StreamLayer):
    """A stream layer over a listening TCP socket."""

    def __init__(self, listener: socket.socket, advertise: Optional[str] = None) -> None:
        self._listener = listener
        self._listener.settimeout(_ACCEPT_POLL)
        self._advertise = advertise
        self._closed = False

    def accept(self) -> socket.socket:
        while True:
            if self._closed:
                raise OSError("listener closed")
            try:
                sock, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._closed:
                    raise OSError("listener closed") from None
                raise
            sock.settimeout(None)
            return sock

    def close(self) -> None:
        self._closed = True
        self._listener.close()

    def addr(self) -> str:
        if self._advertise:
            return self._advertise
        host, port = self._listener.getsockname()[:2]
        return _join_host_port(host, port)

    def dial(self, address: str, timeout: float) -> socket.socket:
        host, port = _split_host_port(address)
        return socket.create_connection(
            (host, port), timeout=timeout if timeout > 0 else None
        )


@dataclass
class NetworkTransportConfig:
    """Settings for a NetworkTransport.

    ``max_rpcs_in_flight`` of 0 means the default of 2; 1 disables pipelining.
    ``timeout`` is the I/O timeout in seconds, 0 for none.
    """

    server_address_provider: Optional[ServerAddressProvider] = None
    logger: Optional[logging.Logger] = None
    stream: Optional[StreamLayer] = None
    max_pool: int = 0
    max_rpcs_in_flight: int = 0
    timeout: float = 0.0


class _LimitedReader:
    """Reads at most ``remaining`` bytes from a connection."""

    def __init__(self, conn: NetConn, remaining: int) -> None:
        self._conn = conn
        self._remaining = max(remaining, 0)

    def read(self, size: int = -1) -> bytes:
        want = self._remaining if size is None or size < 0 else min(size, self._remaining)
        chunks = []
        while want > 0:
            chunk = self._conn.read(want)
            if not chunk:
                break
            chunks.append(chunk)
            want -= len(chunk)
            self._remaining -= len(chunk)
        return b"".join(chunks)


class NetworkTransport:
    """Sends and receives RPCs over a stream layer.

    Each request is a type byte followed by the msgpack-encoded request; each
    reply is an error string followed by the response. Snapshot data follows
    its request on a connection that is never reused.
    """

    def __init__(self, config: NetworkTransportConfig) -> None:
        if config.stream is None:
            raise ValueError("a stream layer is required")
        self._logger = config.logger or logging.getLogger("raft-net")
        self._stream = config.stream
        self._max_pool = config.max_pool
        self._max_in_flight = config.max_rpcs_in_flight or DEFAULT_MAX_RPCS_IN_FLIGHT
        self._timeout = config.timeout
        self._provider = config.server_address_provider
        self.timeout_scale = DEFAULT_TIMEOUT_SCALE

        self._pool: dict[str, list[NetConn]] = {}
        self._pool_lock = threading.Lock()
        self._consume: queue.Queue = queue.Queue(maxsize=1)
        self._heartbeat_fn: Optional[Callable[[RPC], None]] = None
        self._heartbeat_lock = threading.Lock()
        self._shutdown = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._stream_lock = threading.Lock()
        self._stream_stop = threading.Event()

        self._listener = threading.Thread(target=self._listen, daemon=True)
        self._listener.start()

    def set_heartbeat_handler(self, handler: Optional[Callable[[RPC], None]]) -> None:
        """Handle heartbeats with ``handler`` instead of the consumer queue."""
        with self._heartbeat_lock:
            self._heartbeat_fn = handler

    def close_streams(self) -> None:
        """Close pooled connections and end the handlers of accepted ones."""
        with self._pool_lock:
            for conns in self._pool.values():
                for conn in conns:
                    conn.release()
            self._pool.clear()
            with self._stream_lock:
                self._stream_stop.set()
                self._stream_stop = threading.Event()

    def close(self) -> None:
        """Stop the transport; later calls do nothing."""
        with self._shutdown_lock:
            if not self._shutdown.is_set():
                self._shutdown.set()
                self._stream.close()

    def consumer(self) -> queue.Queue:
        """Return the queue on which incoming RPCs arrive."""
        return self._consume

    def local_addr(self) -> str:
        return self._stream.addr()

    def is_shutdown(self) -> bool:
        return self._shutdown.is_set()

    def pooled_count(self, target: str) -> int:
        """Return how many idle connections to ``target`` are pooled."""
        with self._pool_lock:
            return len(self._pool.get(target, ()))

    def __enter__(self) -> NetworkTransport:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _current_stream_stop(self) -> threading.Event:
        with self._stream_lock:
            return self._stream_stop

    def _pooled_conn(self, target: str) -> Optional[NetConn]:
        with self._pool_lock:
            conns = self._pool.get(target)
            if not conns:
                return None
            return conns.pop()

    def _address_for(self, server_id: str, target: str) -> str:
        if self._provider is not None:
            try:
                return self._provider.server_addr(server_id)
            except Exception as exc:  # noqa: BLE001 - fall back to the given address
                self._logger.warning(
                    "unable to get address for server, using fallback address: "
                    "id=%s fallback=%s error=%s",
                    server_id,
                    target,
                    exc,
                )
        return target

    def _get_conn(self, target: str) -> NetConn:
        conn = self._pooled_conn(target)
        if conn is not None:
            return conn
        sock = self._stream.dial(target, self._timeout)
        conn = NetConn(target, sock)
        conn.set_timeout(self._timeout)
        return conn

    def _conn_for(self, server_id: str, target: str) -> NetConn:
        return self._get_conn(self._address_for(server_id, target))

    def _return_conn(self, conn: NetConn) -> None:
        with self._pool_lock:
            conns = self._pool.setdefault(conn.target, [])
            if not self.is_shutdown() and len(conns) < self._max_pool:
                conns.append(conn)
            else:
                conn.release()

    def append_entries_pipeline(self, server_id: str, target: str) -> NetPipeline:
        """Open a pipeline, or raise if pipelining is disabled."""
        if self._max_in_flight < MIN_IN_FLIGHT_FOR_PIPELINING:
            raise PipelineReplicationNotSupportedError()
        conn = self._conn_for(server_id, target)
        return NetPipeline(conn, self._timeout, self._max_in_flight)

    def _generic_rpc(
        self, server_id: str, target: str, rpc_type: RPCType, args: Any, response_cls: type
    ) -> Any:
        conn = self._conn_for(server_id, target)
        if self._timeout > 0:
            conn.set_timeout(self._timeout)
        send_rpc(conn, rpc_type, args)
        try:
            response = decode_response(conn, response_cls)
        except RemoteRPCError:
            self._return_conn(conn)
            raise
        self._return_conn(conn)
        return response

    def append_entries(
        self, server_id: str, target: str, args: AppendEntriesRequest
    ) -> AppendEntriesResponse:
        return self._generic_rpc(
            server_id, target, RPCType.APPEND_ENTRIES, args, AppendEntriesResponse
        )

    def request_vote(
        self, server_id: str, target: str, args: RequestVoteRequest
    ) -> RequestVoteResponse:
        return self._generic_rpc(
            server_id, target, RPCType.REQUEST_VOTE, args, RequestVoteResponse
        )

    def timeout_now(
        self, server_id: str, target: str, args: TimeoutNowRequest
    ) -> TimeoutNowResponse:
        return self._generic_rpc(
            server_id, target, RPCType.TIMEOUT_NOW, args, TimeoutNowResponse
        )

    def install_snapshot(
        self,
        server_id: str,
        target: str,
        args: InstallSnapshotRequest,
        data: BinaryIO,
    ) -> InstallSnapshotResponse:
        """Send ``args`` and stream ``data`` after it on a fresh connection."""
        conn = self._conn_for(server_id, target)
        with conn:
            if self._timeout > 0:
                timeout = self._timeout * (args.size // self.timeout_scale)
                conn.set_timeout(max(timeout, self._timeout))
            send_rpc(conn, RPCType.INSTALL_SNAPSHOT, args)
            while True:
                chunk = data.read(_COPY_CHUNK)
                if not chunk:
                    break
                conn.write(chunk)
            conn.flush()
            return decode_response(conn, InstallSnapshotResponse)

    def encode_peer(self, server_id: str, address: str) -> bytes:
        return self._address_for(server_id, address).encode()

    def decode_peer(self, buf: bytes) -> str:
        return bytes(buf).decode()

    def _listen(self) -> None:
        delay = 0.0
        while True:
            try:
                sock = self._stream.accept()
            except Exception as exc:  # noqa: BLE001 - retried with back-off
                delay = _BASE_ACCEPT_DELAY if delay == 0 else delay * 2
                delay = min(delay, _MAX_ACCEPT_DELAY)
                if not self.is_shutdown():
                    self._logger.error("failed to accept connection: %s", exc)
                if self._shutdown.wait(delay):
                    return
                continue
            delay = 0.0
            self._logger.debug("accepted connection: local-address=%s", self.local_addr())
            threading.Thread(
                target=self._handle_conn,
                args=(self._current_stream_stop(), sock),
                daemon=True,
            ).start()

    def _handle_conn(self, stop: threading.Event, sock: socket.socket) -> None:
        conn = NetConn("", sock)
        try:
            while True:
                if stop.is_set():
                    self._logger.debug("stream layer is closed")
                    return
                try:
                    self._handle_command(conn)
                except EOFError:
                    return
                except Exception as exc:  # noqa: BLE001 - ends this connection
                    self._logger.error("failed to decode incoming command: %s", exc)
                    return
                try:
                    conn.flush()
                except OSError as exc:
                    self._logger.error("failed to flush response: %s", exc)
                    return
        finally:
            conn.release()

    def _handle_command(self, conn: NetConn) -> None:
        raw_type = conn.read_byte()
        try:
            rpc_type = RPCType(raw_type)
        except ValueError:
            raise ValueError(f"unknown rpc type {raw_type}") from None
        request = from_wire(_REQUEST_TYPES[rpc_type], conn.decode())
        rpc = RPC(command=request)

        is_heartbeat = False
        if rpc_type is RPCType.APPEND_ENTRIES:
            leader_addr = request.rpc_header.addr or request.leader
            is_heartbeat = (
                request.term != 0
                and bool(leader_addr)
                and request.prev_log_entry == 0
                and request.prev_log_term == 0
                and not request.entries
                and request.leader_commit_index == 0
            )
        elif rpc_type is RPCType.INSTALL_SNAPSHOT:
            rpc.reader = _LimitedReader(conn, request.size)  # type: ignore[assignment]

        handler = None
        if is_heartbeat:
            with self._heartbeat_lock:
                handler = self._heartbeat_fn
        if handler is not None:
            handler(rpc)
        else:
            while True:
                try:
                    self._consume.put(rpc, timeout=_POLL)
                    break
                except queue.Full:
                    if self.is_shutdown():
                        raise TransportShutdownError() from None

        while True:
            try:
                result = rpc.resp_chan.get(timeout=_POLL)
                break
            except queue.Empty:
                if self.is_shutdown():
                    raise TransportShutdownError() from None
        conn.encode(str(result.error) if result.error is not None else "")
        conn.encode(result.response)


def new_tcp_transport(
    bind_addr: str, config: Optional[NetworkTransportConfig] = None
) -> NetworkTransport:
    """Listen on ``bind_addr`` over TCP and return a transport using it."""
    host, port = _split_host_port(bind_addr)
    listener = socket.create_server((host, port))
    stream = TCPStreamLayer(listener)
    base = config if config is not None else NetworkTransportConfig()
    try:
        return NetworkTransport(dataclasses.replace(base, stream=stream))
    except Exception:
        stream.close()
        raise