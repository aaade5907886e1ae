# raftlet

Pieces that a Raft consensus implementation is built from: log entries and
log stores, a log cache, cluster configuration readers, snapshot storage,
observers, RPC messages with a msgpack wire form, and two transports (one
in-process, one over TCP).

## Modules

- `raftlet.log` – `Log` entries and the `LogType` enum, the abstract
  `LogStore` interface, the `MonotonicLogStore` protocol,
  `LogNotFoundError`, `oldest_log(store)` and
  `emit_log_store_metrics(store, prefix, interval, stop_event, set_gauge)`,
  which calls `set_gauge([*prefix, "oldestLogAge"], age_ms)` every
  `interval` seconds until `stop_event` is set (age 0 on error or when the
  entry has no `appended_at`).
- `raftlet.store` – `InmemStore`, an in-memory log store plus a key/value
  store (`set`/`get`, `set_uint64`/`get_uint64`). Meant for tests.
- `raftlet.log_cache` – `LogCache(capacity, store)`, a fixed-size ring buffer
  of recently written entries in front of any `LogStore`. Writes go through
  to the store first; `delete_range` clears the whole cache.
- `raftlet.peers` – `Configuration`, `Server`, `ServerSuffrage`,
  `check_configuration` and `ConfigurationError`, plus `read_peers_json`
  (a JSON list of addresses, each becoming a voter whose ID is its address)
  and `read_config_json` (a JSON list of objects with `id`, `address` and an
  optional `non_voter`).
- `raftlet.progress` – `CountingReader`, `CountingReadCloser`, and
  `start_snapshot_restore_monitor`, which logs bytes read and percent
  complete every interval (10 seconds by default) until `stop_and_wait()`.
- `raftlet.observer` – `Observer` and `ObserverRegistry`, with the event
  types `LeaderObservation`, `PeerObservation`,
  `FailedHeartbeatObservation` and `ResumedHeartbeatObservation`.
- `raftlet.rpc` – request/response dataclasses (`AppendEntriesRequest`,
  `RequestVoteRequest`, `InstallSnapshotRequest`, `TimeoutNowRequest` and
  their responses), `RPC`, `RPCResponse`, `AppendFuture`, the errors
  `TransportShutdownError`, `PipelineShutdownError` and
  `PipelineReplicationNotSupportedError`, and `to_wire` / `from_wire`.
- `raftlet.inmem_transport` – `InmemTransport`, which routes RPCs between
  transports in one process, and its `InmemPipeline`.
- `raftlet.inmem_snapshot` – `InmemSnapshotStore`, which keeps only the most
  recent snapshot, with `InmemSnapshotSink` and `SnapshotMeta`.
- `raftlet.net_conn` – `NetConn`, `send_rpc`, `decode_response`,
  `RemoteRPCError`, `RPCType` and `NetPipeline`: the framing used on the wire.
- `raftlet.net_transport` – `NetworkTransport`, `NetworkTransportConfig`,
  `TCPStreamLayer` and `new_tcp_transport`, with connection pooling,
  pipelined AppendEntries and a heartbeat fast path.

## Installation

```
pip install raftlet
```

## Example: an in-memory log store with a cache

```python
from raftlet.log import Log
from raftlet.store import InmemStore
from raftlet.log_cache import LogCache

store = InmemStore()
cache = LogCache(16, store)
cache.store_logs([Log(index=1, term=1), Log(index=2, term=1)])
print(cache.first_index(), cache.last_index())   # 1 2
print(cache.get_log(2).term)                      # 1
```

## Example: two in-memory transports

```python
import threading
from raftlet.inmem_transport import InmemTransport
from raftlet.rpc import AppendEntriesRequest, AppendEntriesResponse

a, b = InmemTransport(), InmemTransport()
a.connect(b.local_addr(), b)

def serve():
    rpc = b.consumer().get()
    rpc.respond(AppendEntriesResponse(term=1, last_log=7, success=True), None)

threading.Thread(target=serve, daemon=True).start()
resp = a.append_entries("server1", b.local_addr(), AppendEntriesRequest(term=1))
print(resp.last_log)   # 7
```

An `InmemTransport` waits `timeout` seconds (0.5 by default) for a peer to
accept and answer; past that it raises `TimeoutError` ("send timed out" or
"command timed out"). Sending to an unconnected address raises
`ConnectionError`.

## Example: a TCP transport

```python
from raftlet.net_transport import NetworkTransportConfig, new_tcp_transport

config = NetworkTransportConfig(max_pool=3, timeout=1.0)
transport = new_tcp_transport("127.0.0.1:0", config)
print(transport.local_addr())
transport.close()
```

Incoming RPCs arrive on `transport.consumer()` and are answered with
`rpc.respond(response, error)`. A non-empty error string from the remote
end is raised as `RemoteRPCError`. `max_rpcs_in_flight` of 0 means 2; with 1,
`append_entries_pipeline` raises `PipelineReplicationNotSupportedError`.

## Example: observers

```python
import queue
from raftlet.observer import LeaderObservation, Observer, ObserverRegistry

events = queue.Queue(maxsize=1)
registry = ObserverRegistry()
observer = Observer(events, blocking=False)
registry.register(observer)
registry.observe(LeaderObservation(leader_id="n1"))
registry.observe(LeaderObservation(leader_id="n2"))   # queue full: dropped
print(observer.num_observed(), observer.num_dropped())  # 1 1
```

## Errors

`LogNotFoundError` for missing entries, `KeyError` from `InmemStore.get`,
`RuntimeError` from `LogCache.store_logs` when the underlying store fails,
`ConfigurationError` for invalid configurations, `ValueError` for an
unsupported snapshot version and `LookupError` for an unknown snapshot ID.

## What it does not do

There is no Raft node here: no elections, replication loop or finite state
machine to apply entries to. Log and snapshot storage is in memory only;
nothing is written to disk. There is no command-line program.

## Running the tests

```
pip install -e ".[test]"
pytest
```