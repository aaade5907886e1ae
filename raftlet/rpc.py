"""RPC message types, their msgpack wire form, and pending-append futures."""

import dataclasses
import queue
import threading
import time
import types
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any, BinaryIO, Optional, Union, get_args, get_origin

import msgpack

from raftlet.log import Log


@dataclass
class RPCHeader:
    """Common header carried by every request and response."""

    protocol_version: int = 0
    id: bytes = b""
    addr: bytes = b""


@dataclass
class AppendEntriesRequest:
    rpc_header: RPCHeader = field(default_factory=RPCHeader)
    term: int = 0
    leader: bytes = b""
    prev_log_entry: int = 0
    prev_log_term: int = 0
    entries: list[Log] = field(default_factory=list)
    leader_commit_index: int = 0


@dataclass
class AppendEntriesResponse:
    rpc_header: RPCHeader = field(default_factory=RPCHeader)
    term: int = 0
    last_log: int = 0
    success: bool = False
    no_retry_backoff: bool = False


@dataclass
class RequestVoteRequest:
    rpc_header: RPCHeader = field(default_factory=RPCHeader)
    term: int = 0
    candidate: bytes = b""
    last_log_index: int = 0
    last_log_term: int = 0
    leadership_transfer: bool = False


@dataclass
class RequestVoteResponse:
    rpc_header: RPCHeader = field(default_factory=RPCHeader)
    term: int = 0
    peers: bytes = b""
    granted: bool = False


@dataclass
class InstallSnapshotRequest:
    rpc_header: RPCHeader = field(default_factory=RPCHeader)
    snapshot_version: int = 0
    term: int = 0
    leader: bytes = b""
    last_log_index: int = 0
    last_log_term: int = 0
    peers: bytes = b""
    configuration: bytes = b""
    configuration_index: int = 0
    size: int = 0


@dataclass
class InstallSnapshotResponse:
    rpc_header: RPCHeader = field(default_factory=RPCHeader)
    term: int = 0
    success: bool = False


@dataclass
class TimeoutNowRequest:
    rpc_header: RPCHeader = field(default_factory=RPCHeader)


@dataclass
class TimeoutNowResponse:
    rpc_header: RPCHeader = field(default_factory=RPCHeader)


@dataclass
class RPCResponse:
    """The reply to an RPC: a response object, or an error."""

    response: Any = None
    error: Optional[BaseException] = None


@dataclass
class RPC:
    """A request received by a transport, answered through ``resp_chan``."""

    command: Any = None
    reader: Optional[BinaryIO] = None
    resp_chan: queue.Queue = field(default_factory=lambda: queue.Queue(maxsize=1))

    def respond(self, response: Any, error: Optional[BaseException] = None) -> None:
        self.resp_chan.put(RPCResponse(response, error))


class AppendFuture:
    """A pipelined AppendEntries request whose response arrives later."""

    def __init__(
        self, args: AppendEntriesRequest, resp: Optional[AppendEntriesResponse] = None
    ) -> None:
        self.start = time.time()
        self.args = args
        self.resp = resp if resp is not None else AppendEntriesResponse()
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._error: Optional[BaseException] = None

    def respond(self, error: Optional[BaseException]) -> None:
        """Resolve the future; only the first call has any effect."""
        with self._lock:
            if self._done.is_set():
                return
            self._error = error
            self._done.set()

    def _wait(self, timeout: Optional[float]) -> None:
        if not self._done.wait(timeout):
            raise TimeoutError("append future not resolved in time")

    def error(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        """Wait for the result and return its error, or None on success."""
        self._wait(timeout)
        return self._error

    def response(self, timeout: Optional[float] = None) -> AppendEntriesResponse:
        """Wait for the result and return the response."""
        self._wait(timeout)
        return self.resp


class TransportShutdownError(RuntimeError):
    def __init__(self, message: str = "transport shutdown") -> None:
        super().__init__(message)


class PipelineShutdownError(RuntimeError):
    def __init__(self, message: str = "append pipeline closed") -> None:
        super().__init__(message)


class PipelineReplicationNotSupportedError(RuntimeError):
    def __init__(self, message: str = "pipeline replication not supported") -> None:
        super().__init__(message)


_WIRE_NAMES = {"id": "ID", "rpc_header": "RPCHeader"}


def _wire_name(name: str) -> str:
    return _WIRE_NAMES.get(name) or "".join(part.capitalize() for part in name.split("_"))


def _encode(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            _wire_name(f.name): _encode(getattr(value, f.name))
            for f in dataclasses.fields(value)
        }
    if isinstance(value, IntEnum):
        return int(value)
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.astimezone()
        return msgpack.Timestamp.from_datetime(aware)
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return value


def _decode(hint: Any, value: Any) -> Any:
    if value is None:
        return None
    origin = get_origin(hint)
    if origin is Union or origin is types.UnionType:
        args = [arg for arg in get_args(hint) if arg is not type(None)]
        return _decode(args[0], value)
    if origin is list:
        (item_hint,) = get_args(hint)
        return [_decode(item_hint, item) for item in value]
    if isinstance(hint, type):
        if dataclasses.is_dataclass(hint):
            return _from_mapping(hint, value)
        if issubclass(hint, datetime):
            if isinstance(value, msgpack.Timestamp):
                return value.to_datetime()
            return value
        if issubclass(hint, IntEnum):
            return hint(value)
        if hint is bytes:
            if isinstance(value, str):
                return value.encode()
            return bytes(value)
    return value


def _from_mapping(cls: type, mapping: Any) -> Any:
    if not isinstance(mapping, dict):
        raise ValueError(f"cannot decode {cls.__name__} from {type(mapping).__name__}")
    kwargs = {}
    for f in dataclasses.fields(cls):
        raw = mapping.get(_wire_name(f.name))
        if raw is not None:
            kwargs[f.name] = _decode(f.type, raw)
    return cls(**kwargs)


def to_wire(message: Any) -> bytes:
    """Encode a message as a msgpack map keyed by field names."""
    return msgpack.packb(_encode(message), use_bin_type=True)


def from_wire(cls: type, data: Any) -> Any:
    """Decode a ``cls`` message from wire bytes or an already unpacked object.

    Missing fields take their defaults; unknown fields are ignored.
    """
    if isinstance(data, (bytes, bytearray, memoryview)):
        data = msgpack.unpackb(bytes(data), raw=False)
    if data is None:
        return cls()
    return _from_mapping(cls, data)