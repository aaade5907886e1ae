"""Cluster configuration types and readers for peers.json recovery files."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ServerSuffrage(IntEnum):
    """Whether a server takes part in elections and commitment."""

    VOTER = 0
    NONVOTER = 1
    STAGING = 2

    def __str__(self) -> str:
        return _SUFFRAGE_NAMES[self]


_SUFFRAGE_NAMES = {
    ServerSuffrage.VOTER: "Voter",
    ServerSuffrage.NONVOTER: "Nonvoter",
    ServerSuffrage.STAGING: "Staging",
}


@dataclass(frozen=True)
class Server:
    """A member of the cluster configuration."""

    suffrage: ServerSuffrage = ServerSuffrage.VOTER
    id: str = ""
    address: str = ""


@dataclass
class Configuration:
    """The set of servers that make up the cluster."""

    servers: list[Server] = field(default_factory=list)


class ConfigurationError(ValueError):
    """Raised when a configuration is not valid."""


def check_configuration(configuration: Configuration) -> None:
    """Raise ConfigurationError unless ``configuration`` is usable."""
    ids: set[str] = set()
    addresses: set[str] = set()
    voters = 0
    for server in configuration.servers:
        if not server.id:
            raise ConfigurationError(f"empty ID in configuration: {configuration}")
        if not server.address:
            raise ConfigurationError(f"empty address in configuration: {server}")
        if server.id in ids:
            raise ConfigurationError(f"found duplicate ID in configuration: {server.id}")
        ids.add(server.id)
        if server.address in addresses:
            raise ConfigurationError(
                f"found duplicate address in configuration: {server.address}"
            )
        addresses.add(server.address)
        if server.suffrage == ServerSuffrage.VOTER:
            voters += 1
    if voters == 0:
        raise ConfigurationError("need at least one voter in configuration")


def _load_list(path: str | os.PathLike[str]) -> list[Any]:
    with open(path, "rb") as handle:
        decoded = json.load(handle)
    if decoded is None:
        return []
    if not isinstance(decoded, list):
        raise ValueError(f"expected a JSON array, got {type(decoded).__name__}")
    return decoded


def read_peers_json(path: str | os.PathLike[str]) -> Configuration:
    """Read a legacy peers.json holding a list of addresses.

    Every peer becomes a voter whose ID equals its address.
    """
    servers = []
    for peer in _load_list(path):
        if not isinstance(peer, str):
            raise ValueError(f"peer must be a string, got {peer!r}")
        servers.append(Server(ServerSuffrage.VOTER, peer, peer))
    configuration = Configuration(servers)
    check_configuration(configuration)
    return configuration


def read_config_json(path: str | os.PathLike[str]) -> Configuration:
    """Read a peers.json holding objects with id, address and non_voter."""
    servers = []
    for entry in _load_list(path):
        if not isinstance(entry, dict):
            raise ValueError(f"peer entry must be an object, got {entry!r}")
        server_id = entry.get("id") or ""
        address = entry.get("address") or ""
        non_voter = entry.get("non_voter") or False
        if not isinstance(server_id, str) or not isinstance(address, str):
            raise ValueError(f"id and address must be strings in {entry!r}")
        if not isinstance(non_voter, bool):
            raise ValueError(f"non_voter must be a boolean in {entry!r}")
        suffrage = ServerSuffrage.NONVOTER if non_voter else ServerSuffrage.VOTER
        servers.append(Server(suffrage, server_id, address))
    configuration = Configuration(servers)
    check_configuration(configuration)
    return configuration