"""Byte-counting readers and a periodic snapshot-restore progress logger."""

from __future__ import annotations

import logging
import math
import threading
from typing import BinaryIO

SNAPSHOT_RESTORE_MONITOR_INTERVAL = 10.0


class CountingReader:
    """Wraps a binary reader and counts the bytes read through it."""

    def __init__(self, reader: BinaryIO) -> None:
        self._reader = reader
        self._lock = threading.Lock()
        self._count = 0

    def read(self, size: int = -1) -> bytes:
        data = self._reader.read(size)
        with self._lock:
            self._count += len(data)
        return data

    def count(self) -> int:
        """Return the number of bytes read so far."""
        with self._lock:
            return self._count


class CountingReadCloser(CountingReader):
    """A counting reader that can also close the stream it wraps."""

    def close(self) -> None:
        self._reader.close()

    def wrapped(self) -> BinaryIO:
        """Return the underlying stream."""
        return self._reader

    def __enter__(self) -> CountingReadCloser:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class SnapshotRestoreMonitor:
    """Logs restore progress every interval until stopped.

    If it is stopped before the first tick, it logs once on the way out.
    """

    def __init__(
        self,
        logger: logging.Logger,
        reader: CountingReader,
        size: int,
        network_transfer: bool,
        interval: float = SNAPSHOT_RESTORE_MONITOR_INTERVAL,
    ) -> None:
        self._logger = logger
        self._reader = reader
        self._size = size
        self._network_transfer = network_transfer
        self._interval = interval
        self._stop = threading.Event()
        self._stop_lock = threading.Lock()
        self._stopped = False
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        ran_once = False
        while not self._stop.wait(self._interval):
            self._run_once()
            ran_once = True
        if not ran_once:
            self._run_once()

    def _run_once(self) -> None:
        read_bytes = self._reader.count()
        if self._size:
            percent = 100 * read_bytes / self._size
        else:
            percent = math.nan if read_bytes == 0 else math.inf
        message = (
            "snapshot network transfer progress"
            if self._network_transfer
            else "snapshot restore progress"
        )
        self._logger.info(
            "%s: read-bytes=%d percent-complete=%.2f%%", message, read_bytes, percent
        )

    def stop_and_wait(self) -> None:
        """Stop the monitor and wait for it to finish; later calls do nothing."""
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True
            self._stop.set()
            self._thread.join()


def start_snapshot_restore_monitor(
    logger: logging.Logger,
    reader: CountingReader,
    size: int,
    network_transfer: bool,
    interval: float = SNAPSHOT_RESTORE_MONITOR_INTERVAL,
) -> SnapshotRestoreMonitor:
    """Start a monitor reporting how much of ``size`` bytes ``reader`` has read."""
    return SnapshotRestoreMonitor(logger, reader, size, network_transfer, interval)