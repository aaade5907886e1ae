import msgpack
import pytest

from raftlet.inmem_snapshot import (
    SNAPSHOT_VERSION_MAX,
    InmemSnapshotSink,
    InmemSnapshotStore,
)
from raftlet.inmem_transport import InmemTransport, new_inmem_addr
from raftlet.peers import Configuration, Server, ServerSuffrage


def _configuration():
    return Configuration([Server(ServerSuffrage.VOTER, "my id", "over here")])


def test_create_snapshot():
    store = InmemSnapshotStore()
    assert store.list() == []

    configuration = _configuration()
    trans = InmemTransport(new_inmem_addr())
    sink = store.create(SNAPSHOT_VERSION_MAX, 10, 3, configuration, 2, trans)

    assert len(store.list()) == 1

    assert sink.write(b"first\n") == 6
    assert sink.write(b"second\n") == 7
    sink.close()

    snaps = store.list()
    assert len(snaps) == 1
    latest = snaps[0]
    assert latest.index == 10
    assert latest.term == 3
    assert latest.configuration == configuration
    assert latest.configuration_index == 2
    assert latest.size == 13

    _, reader = store.open(latest.id)
    assert reader.read() == b"first\nsecond\n"
    reader.close()


def test_open_snapshot_twice():
    store = InmemSnapshotStore()
    trans = InmemTransport(new_inmem_addr())
    sink = store.create(SNAPSHOT_VERSION_MAX, 10, 3, _configuration(), 2, trans)
    sink.write(b"data\n")
    sink.close()

    meta, first = store.open(sink.id())
    assert first.read() == b"data\n"
    assert meta.id == sink.id()
    _, second = store.open(sink.id())
    assert second.read() == b"data\n"


def test_unsupported_version():
    store = InmemSnapshotStore()
    with pytest.raises(ValueError, match="unsupported snapshot version 2"):
        store.create(2, 1, 1, _configuration(), 1, None)
    assert store.list() == []


def test_open_unknown_id():
    store = InmemSnapshotStore()
    store.create(SNAPSHOT_VERSION_MAX, 1, 1, _configuration(), 1, None)
    with pytest.raises(LookupError, match="failed to open snapshot id: nope"):
        store.open("nope")


def test_create_replaces_latest():
    store = InmemSnapshotStore()
    old = store.create(SNAPSHOT_VERSION_MAX, 5, 1, _configuration(), 1, None)
    old.write(b"old")
    new = store.create(SNAPSHOT_VERSION_MAX, 9, 2, _configuration(), 1, None)
    new.write(b"new")
    snaps = store.list()
    assert [s.index for s in snaps] == [9]
    assert store.open(new.id())[1].read() == b"new"


def test_snapshot_id_includes_term_and_index():
    store = InmemSnapshotStore()
    sink = store.create(SNAPSHOT_VERSION_MAX, 10, 3, _configuration(), 2, None)
    assert sink.id().startswith("3-10-")
    assert sink.meta.version == 1


def test_peers_encoded_for_voters():
    configuration = Configuration(
        [
            Server(ServerSuffrage.VOTER, "a", "addr-a"),
            Server(ServerSuffrage.NONVOTER, "b", "addr-b"),
        ]
    )
    store = InmemSnapshotStore()
    sink = store.create(SNAPSHOT_VERSION_MAX, 1, 1, configuration, 1, InmemTransport("x"))
    assert msgpack.unpackb(sink.meta.peers) == [b"addr-a"]


def test_sink_counts_size_and_cancel():
    sink = InmemSnapshotSink()
    with sink:
        sink.write(b"abc")
        sink.write(b"")
    sink.cancel()
    assert sink.meta.size == 3
    assert sink.contents() == b"abc"
    assert sink.id() == ""