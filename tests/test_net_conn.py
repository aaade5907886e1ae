import socket
import threading

import msgpack
import pytest

from raftlet.log import Log, LogType
from raftlet.net_conn import (
    NetConn,
    NetPipeline,
    RemoteRPCError,
    RPCType,
    decode_response,
    send_rpc,
)
from raftlet.rpc import (
    AppendEntriesRequest,
    AppendEntriesResponse,
    PipelineShutdownError,
    RequestVoteRequest,
    RPCHeader,
    TimeoutNowRequest,
    from_wire,
    to_wire,
)


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    client = NetConn("server", a)
    server = NetConn("client", b)
    yield client, server
    client.release()
    server.release()


def make_append():
    return AppendEntriesRequest(
        rpc_header=RPCHeader(addr=b"cartman"),
        term=10,
        prev_log_entry=100,
        prev_log_term=4,
        entries=[Log(index=101, term=4, type=LogType.NOOP)],
        leader_commit_index=90,
    )


def serve(conn, count, error=""):
    for _ in range(count):
        conn.read_byte()
        request = from_wire(AppendEntriesRequest, conn.decode())
        conn.encode(error)
        conn.encode(AppendEntriesResponse(term=4, last_log=request.prev_log_entry, success=True))
        conn.flush()


def test_send_rpc_writes_type_byte_and_request(pair):
    client, server = pair
    args = RequestVoteRequest(
        rpc_header=RPCHeader(addr=b"butters"), term=20, last_log_index=100, last_log_term=19
    )
    send_rpc(client, RPCType.REQUEST_VOTE, args)
    assert server.read_byte() == RPCType.REQUEST_VOTE
    assert from_wire(RequestVoteRequest, server.decode()) == args


def test_timeout_now_type_byte_on_wire(pair):
    client, server = pair
    send_rpc(client, RPCType.TIMEOUT_NOW, TimeoutNowRequest())
    assert server.read(1) == b"\x03"
    assert from_wire(TimeoutNowRequest, server.decode()) == TimeoutNowRequest()


def test_decode_response_round_trip(pair):
    client, server = pair
    resp = AppendEntriesResponse(term=4, last_log=90, success=True)
    server.encode("")
    server.encode(resp)
    server.flush()
    assert decode_response(client, AppendEntriesResponse) == resp
    assert client.released is False


def test_decode_response_remote_error_keeps_connection(pair):
    client, server = pair
    resp = AppendEntriesResponse(term=4, last_log=90, success=False)
    server.encode("remote failure")
    server.encode(resp)
    server.flush()
    with pytest.raises(RemoteRPCError, match="remote failure") as excinfo:
        decode_response(client, AppendEntriesResponse)
    assert excinfo.value.response == resp
    assert client.released is False


def test_decode_response_on_closed_peer_releases(pair):
    client, server = pair
    server.release()
    with pytest.raises(EOFError):
        decode_response(client, AppendEntriesResponse)
    assert client.released is True


def test_read_returns_buffered_bytes_after_object(pair):
    client, server = pair
    server.write(msgpack.packb({"a": 1}) + b"raw")
    server.flush()
    assert client.decode() == {"a": 1}
    assert client.read(3) == b"raw"


def test_encode_matches_to_wire(pair):
    client, server = pair
    args = make_append()
    client.encode(args)
    client.flush()
    raw = server.read(len(to_wire(args)))
    assert raw == to_wire(args)


def test_release_is_idempotent(pair):
    client, _ = pair
    client.release()
    client.release()
    assert client.released is True


def test_pipeline_rejects_small_in_flight(pair):
    client, _ = pair
    with pytest.raises(ValueError):
        NetPipeline(client, 1.0, 1)


def test_pipeline_round_trip_in_order(pair):
    client, server = pair
    worker = threading.Thread(target=serve, args=(server, 5), daemon=True)
    worker.start()
    pipeline = NetPipeline(client, 1.0, 10)
    try:
        for i in range(5):
            args = make_append()
            args.prev_log_entry = i
            pipeline.append_entries(args)
        for i in range(5):
            future = pipeline.consumer().get(timeout=2)
            assert future.error(timeout=2) is None
            assert future.response(timeout=2).last_log == i
            assert future.args.prev_log_entry == i
    finally:
        pipeline.close()
    worker.join(2)


def test_pipeline_remote_error_reaches_future(pair):
    client, server = pair
    worker = threading.Thread(target=serve, args=(server, 1, "remote failure"), daemon=True)
    worker.start()
    pipeline = NetPipeline(client, 1.0, 2)
    try:
        pipeline.append_entries(make_append())
        future = pipeline.consumer().get(timeout=2)
        err = future.error(timeout=2)
        assert isinstance(err, RemoteRPCError)
        assert str(err) == "remote failure"
    finally:
        pipeline.close()


def test_pipeline_blocks_at_max_in_flight(pair):
    client, server = pair
    pipeline = NetPipeline(client, 0, 2)
    try:
        pipeline.append_entries(make_append())
        done = threading.Event()

        def second():
            pipeline.append_entries(make_append())
            done.set()

        threading.Thread(target=second, daemon=True).start()
        assert not done.wait(0.2)

        serve(server, 1)
        first = pipeline.consumer().get(timeout=2)
        assert first.response(timeout=2).success is True
        assert done.wait(2)
    finally:
        pipeline.close()


def test_pipeline_closed_rejects_appends(pair):
    client, _ = pair
    pipeline = NetPipeline(client, 1.0, 2)
    pipeline.close()
    pipeline.close()
    assert client.released is True
    with pytest.raises(PipelineShutdownError):
        pipeline.append_entries(make_append())