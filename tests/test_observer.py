import queue

from raftlet.observer import (
    LeaderObservation,
    Observer,
    ObserverRegistry,
    PeerObservation,
    ResumedHeartbeatObservation,
)
from raftlet.peers import Server, ServerSuffrage


def test_observation_delivered_with_raft_and_data():
    node = object()
    registry = ObserverRegistry(node)
    channel = queue.Queue()
    observer = Observer(channel)
    registry.register(observer)
    data = LeaderObservation(leader_addr="addr", leader_id="id")
    registry.observe(data)
    observation = channel.get_nowait()
    assert observation.raft is node
    assert observation.data == data
    assert observer.num_observed() == 1
    assert observer.num_dropped() == 0


def test_non_blocking_observer_drops_when_full():
    registry = ObserverRegistry()
    channel = queue.Queue(maxsize=1)
    observer = Observer(channel, blocking=False)
    registry.register(observer)
    registry.observe(ResumedHeartbeatObservation("a"))
    registry.observe(ResumedHeartbeatObservation("b"))
    assert observer.num_observed() == 1
    assert observer.num_dropped() == 1
    assert channel.get_nowait().data.peer_id == "a"


def test_blocking_observer_delivers_all():
    registry = ObserverRegistry()
    channel = queue.Queue()
    observer = Observer(channel, blocking=True)
    registry.register(observer)
    for name in ("a", "b", "c"):
        registry.observe(ResumedHeartbeatObservation(name))
    assert observer.num_observed() == 3
    assert [channel.get_nowait().data.peer_id for _ in range(3)] == ["a", "b", "c"]


def test_filter_excludes_observations():
    registry = ObserverRegistry()
    channel = queue.Queue()
    observer = Observer(
        channel, filter=lambda o: isinstance(o.data, PeerObservation)
    )
    registry.register(observer)
    registry.observe(LeaderObservation())
    peer = PeerObservation(removed=True, peer=Server(ServerSuffrage.VOTER, "x", "y"))
    registry.observe(peer)
    assert observer.num_observed() == 1
    assert channel.get_nowait().data == peer
    assert channel.empty()


def test_deregister_stops_delivery():
    registry = ObserverRegistry()
    channel = queue.Queue()
    observer = Observer(channel)
    registry.register(observer)
    registry.deregister(observer)
    registry.observe(LeaderObservation())
    assert channel.empty()
    assert observer.num_observed() == 0


def test_observer_without_channel_counts_nothing():
    registry = ObserverRegistry()
    observer = Observer(None)
    registry.register(observer)
    registry.observe(LeaderObservation())
    assert observer.num_observed() == 0
    assert observer.num_dropped() == 0


def test_observer_ids_are_unique():
    ids = {Observer(None).id for _ in range(20)}
    assert len(ids) == 20