"""An in-memory snapshot store that keeps only the latest snapshot."""

from __future__ import annotations

import io
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import msgpack

from raftlet.peers import Configuration, ServerSuffrage

SNAPSHOT_VERSION_MIN = 0
SNAPSHOT_VERSION_MAX = 1


@dataclass
class SnapshotMeta:
    """Metadata describing a snapshot."""

    version: int = 0
    id: str = ""
    index: int = 0
    term: int = 0
    peers: bytes = b""
    configuration: Configuration = field(default_factory=Configuration)
    configuration_index: int = 0
    size: int = 0


def _snapshot_name(term: int, index: int) -> str:
    return f"{term}-{index}-{int(time.time() * 1000)}"


def _encode_peers(configuration: Configuration, transport: Optional[Any]) -> bytes:
    if transport is None:
        return b""
    addresses = [
        transport.encode_peer(server.id, server.address)
        for server in configuration.servers
        if server.suffrage == ServerSuffrage.VOTER
    ]
    return msgpack.packb(addresses, use_bin_type=True)


class InmemSnapshotSink:
    """Collects the bytes of a snapshot in memory."""

    def __init__(self, meta: Optional[SnapshotMeta] = None) -> None:
        self.meta = meta if meta is not None else SnapshotMeta()
        self._contents = bytearray()

    def write(self, data: bytes) -> int:
        """Append ``data`` and return how many bytes were written."""
        self._contents.extend(data)
        self.meta.size += len(data)
        return len(data)

    def close(self) -> None:
        """Finish the snapshot; nothing further is needed in memory."""

    def id(self) -> str:
        return self.meta.id

    def cancel(self) -> None:
        """Abandon the snapshot; nothing is needed in memory."""

    def contents(self) -> bytes:
        return bytes(self._contents)

    def __enter__(self) -> InmemSnapshotSink:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class InmemSnapshotStore:
    """Holds the most recent snapshot only."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._latest = InmemSnapshotSink()
        self._has_snapshot = False

    def create(
        self,
        version: int,
        index: int,
        term: int,
        configuration: Configuration,
        configuration_index: int,
        transport: Optional[Any],
    ) -> InmemSnapshotSink:
        """Replace the stored snapshot with a new, empty one and return its sink."""
        if version != 1:
            raise ValueError(f"unsupported snapshot version {version}")
        meta = SnapshotMeta(
            version=version,
            id=_snapshot_name(term, index),
            index=index,
            term=term,
            peers=_encode_peers(configuration, transport),
            configuration=configuration,
            configuration_index=configuration_index,
        )
        sink = InmemSnapshotSink(meta)
        with self._lock:
            self._has_snapshot = True
            self._latest = sink
        return sink

    def list(self) -> list[SnapshotMeta]:
        """Return the latest snapshot's metadata, or an empty list."""
        with self._lock:
            if not self._has_snapshot:
                return []
            return [self._latest.meta]

    def open(self, snapshot_id: str) -> tuple[SnapshotMeta, io.BytesIO]:
        """Return the metadata and a fresh reader over the snapshot contents."""
        with self._lock:
            if self._latest.meta.id != snapshot_id:
                raise LookupError(f"[ERR] snapshot: failed to open snapshot id: {snapshot_id}")
            return self._latest.meta, io.BytesIO(self._latest.contents())