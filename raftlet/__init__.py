"""Raft building blocks: log stores and caching, configuration readers,
snapshots, observers, RPC messages, and in-memory and TCP transports."""

__version__ = "0.1.0"

__all__ = [
    "log",
    "store",
    "log_cache",
    "peers",
    "progress",
    "observer",
    "rpc",
    "inmem_transport",
    "inmem_snapshot",
    "net_conn",
    "net_transport",
]