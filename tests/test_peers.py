import pytest

from raftlet.peers import (
    Configuration,
    ConfigurationError,
    Server,
    ServerSuffrage,
    check_configuration,
    read_config_json,
    read_peers_json,
)


def _write(tmp_path, content):
    path = tmp_path / "peers.json"
    path.write_text(content)
    return path


def test_bad_configuration(tmp_path):
    path = _write(tmp_path, "null")
    with pytest.raises(ConfigurationError, match="at least one voter"):
        read_peers_json(path)


def test_read_peers_json(tmp_path):
    path = _write(
        tmp_path,
        '\n["127.0.0.1:123",\n "127.0.0.2:123",\n "127.0.0.3:123"]\n',
    )
    expected = Configuration(
        [
            Server(ServerSuffrage.VOTER, "127.0.0.1:123", "127.0.0.1:123"),
            Server(ServerSuffrage.VOTER, "127.0.0.2:123", "127.0.0.2:123"),
            Server(ServerSuffrage.VOTER, "127.0.0.3:123", "127.0.0.3:123"),
        ]
    )
    assert read_peers_json(path) == expected


def test_read_config_json(tmp_path):
    path = _write(
        tmp_path,
        """
[
  {
    "id": "adf4238a-882b-9ddc-4a9d-5b6758e4159e",
    "address": "127.0.0.1:123",
    "non_voter": false
  },
  {
    "id": "8b6dda82-3103-11e7-93ae-92361f002671",
    "address": "127.0.0.2:123"
  },
  {
    "id": "97e17742-3103-11e7-93ae-92361f002671",
    "address": "127.0.0.3:123",
    "non_voter": true
  }
]
""",
    )
    expected = Configuration(
        [
            Server(ServerSuffrage.VOTER, "adf4238a-882b-9ddc-4a9d-5b6758e4159e", "127.0.0.1:123"),
            Server(ServerSuffrage.VOTER, "8b6dda82-3103-11e7-93ae-92361f002671", "127.0.0.2:123"),
            Server(ServerSuffrage.NONVOTER, "97e17742-3103-11e7-93ae-92361f002671", "127.0.0.3:123"),
        ]
    )
    assert read_config_json(path) == expected


def test_config_json_all_nonvoters_rejected(tmp_path):
    path = _write(tmp_path, '[{"id": "a", "address": "127.0.0.1:123", "non_voter": true}]')
    with pytest.raises(ConfigurationError, match="at least one voter"):
        read_config_json(path)


def test_duplicate_id_rejected():
    configuration = Configuration(
        [
            Server(ServerSuffrage.VOTER, "a", "127.0.0.1:123"),
            Server(ServerSuffrage.VOTER, "a", "127.0.0.2:123"),
        ]
    )
    with pytest.raises(ConfigurationError, match="duplicate ID"):
        check_configuration(configuration)


def test_duplicate_address_rejected():
    configuration = Configuration(
        [
            Server(ServerSuffrage.VOTER, "a", "127.0.0.1:123"),
            Server(ServerSuffrage.VOTER, "b", "127.0.0.1:123"),
        ]
    )
    with pytest.raises(ConfigurationError, match="duplicate address"):
        check_configuration(configuration)


def test_malformed_json_raises(tmp_path):
    path = _write(tmp_path, "[not json")
    with pytest.raises(ValueError):
        read_peers_json(path)


def test_wrong_shape_raises(tmp_path):
    path = _write(tmp_path, '{"id": "a"}')
    with pytest.raises(ValueError, match="JSON array"):
        read_config_json(path)


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_peers_json(tmp_path / "absent.json")


def test_suffrage_names(tmp_path):
    path = _write(
        tmp_path,
        '[{"id": "a", "address": "127.0.0.1:123"},'
        ' {"id": "b", "address": "127.0.0.2:123", "non_voter": true}]',
    )
    configuration = read_config_json(path)
    assert [str(server.suffrage) for server in configuration.servers] == ["Voter", "Nonvoter"]