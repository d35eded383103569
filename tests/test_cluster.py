import threading
from datetime import datetime, timezone

import pytest

from gofka.cluster import (
    BrokerInfo,
    ClusterMetadata,
    Command,
    CommandType,
    LeaderAssignment,
    LogEntry,
    Metadata,
    NotLeaderError,
    PartitionChange,
    is_not_leader_error,
)
from gofka.message import FromTopic


@pytest.fixture
def event():
    ev = threading.Event()
    yield ev
    ev.set()


@pytest.fixture
def cluster(event):
    return ClusterMetadata(event, 60.0)


class RecordingClient:
    def __init__(self):
        self.calls = []

    def apply_create_topic(self, command):
        self.calls.append(("create", command.topic))

    def apply_register_broker(self, command):
        self.calls.append(("register", command.broker.id))

    def apply_update_broker(self, command):
        self.calls.append(("update", command.broker.id))

    def apply_update_partition_leader(self, command):
        self.calls.append(("leader", len(command.assignments)))


def _create(cluster, topic="foo-topic", parts=3, rf=2):
    cluster.create_topic(
        Command(CommandType.CREATE_TOPIC, topic=topic, n_partitions=parts, replication_factor=rf)
    )


def _register(cluster, broker_id, address):
    cluster.register_broker(
        Command(CommandType.REGISTER_BROKER, broker=BrokerInfo(id=broker_id, address=address, alive=True))
    )


def test_not_leader_error_message():
    err = NotLeaderError(3, "foo")
    assert str(err) == "Not leader of foo-3"
    assert err.partition_id == 3 and err.topic == "foo"


def test_is_not_leader_error_follows_cause_chain():
    try:
        try:
            raise NotLeaderError(1, "bar")
        except NotLeaderError as inner:
            raise RuntimeError("wrapped") from inner
    except RuntimeError as outer:
        assert is_not_leader_error(outer)
    assert not is_not_leader_error(ValueError("other"))
    assert not is_not_leader_error(None)


def test_create_topic_builds_partitions(cluster):
    _create(cluster, parts=3, rf=2)
    assert cluster.partition_count("foo-topic") == 3
    info = cluster.topic("foo-topic")
    assert info.replication_factor == 2
    assert sorted(info.partitions) == [0, 1, 2]
    for number, part in info.partitions.items():
        assert part.id == number
        assert part.topic_name == "foo-topic"
        assert len(part.replicas) == 2


def test_missing_topic_lookups(cluster):
    assert cluster.topic("nope") is None
    with pytest.raises(LookupError):
        cluster.partition_count("nope")
    with pytest.raises(LookupError):
        cluster.update_offset("nope", 0, 5)
    with pytest.raises(LookupError):
        cluster.partition_leader("nope", 0)


def test_update_offset(cluster):
    _create(cluster)
    cluster.update_offset("foo-topic", 1, 42)
    assert cluster.topic("foo-topic").partitions[1].offset == 42
    with pytest.raises(LookupError):
        cluster.update_offset("foo-topic", 10, 1)


def test_partition_leader_after_assignment(cluster):
    _create(cluster)
    _register(cluster, "broker1", "localhost:42169")
    with pytest.raises(LookupError):
        cluster.partition_leader("foo-topic", 0)
    cluster.update_partition_leader(
        Command(
            CommandType.CHANGE_PARTITION_LEADER,
            assignments=[
                LeaderAssignment("foo-topic", 0, "broker1", ["broker1"], ["broker1", "broker2"], 4),
                LeaderAssignment("missing", 0, "broker1"),
            ],
        )
    )
    assert cluster.partition_leader("foo-topic", 0) == ("broker1", "localhost:42169")
    part = cluster.topic("foo-topic").partitions[0]
    assert part.leader_address == "localhost:42169"
    assert part.isr == ["broker1"]
    assert part.replicas == ["broker1", "broker2"]
    assert part.epoch == 4


def test_update_broker(cluster):
    _register(cluster, "broker1", "localhost:42169")
    seen = datetime(2024, 1, 1, tzinfo=timezone.utc)
    cluster.update_broker(
        Command(
            CommandType.UPDATE_BROKER,
            broker=BrokerInfo(id="broker1", address="localhost:42170", alive=False, last_seen=seen),
        )
    )
    broker = cluster.brokers()["broker1"]
    assert (broker.address, broker.alive, broker.last_seen) == ("localhost:42170", False, seen)
    cluster.update_broker(Command(CommandType.UPDATE_BROKER, broker=BrokerInfo(id="ghost")))
    assert set(cluster.brokers()) == {"broker1"}


def test_commit_offset(cluster):
    _create(cluster)
    cluster.commit_offset([FromTopic("foo-topic", 2, 17)])
    assert cluster.topic("foo-topic").partitions[2].committed_offset == 17
    with pytest.raises(LookupError):
        cluster.commit_offset([FromTopic("foo-topic", 9, 1)])
    with pytest.raises(LookupError):
        cluster.commit_offset([FromTopic("other", 0, 1)])


def test_alter_partition(cluster):
    _create(cluster)
    cluster.alter_partition(
        Command(CommandType.ALTER_PARTITION, changes=[PartitionChange("foo-topic", 1, ["a", "b"])])
    )
    assert cluster.topic("foo-topic").partitions[1].isr == ["a", "b"]
    assert cluster.topic("foo-topic").partitions[0].isr == []


def test_decode_log_applies_and_notifies_client(cluster):
    client = RecordingClient()
    cluster.decode_log(
        LogEntry(1, Command(CommandType.CREATE_TOPIC, topic="t", n_partitions=2, replication_factor=1)),
        client,
    )
    cluster.decode_log(
        LogEntry(2, Command(CommandType.REGISTER_BROKER, broker=BrokerInfo(id="b1", address="h:1"))),
        client,
    )
    cluster.decode_log(
        LogEntry(3, Command(CommandType.UPDATE_BROKER, broker=BrokerInfo(id="b1", address="h:2"))),
        client,
    )
    cluster.decode_log(
        LogEntry(4, Command(CommandType.CHANGE_PARTITION_LEADER, assignments=[LeaderAssignment("t", 0, "b1")])),
        client,
    )
    cluster.decode_log(
        LogEntry(5, Command(CommandType.ALTER_PARTITION, changes=[PartitionChange("t", 1, ["b1"])])),
        client,
    )
    assert client.calls == [("create", "t"), ("register", "b1"), ("update", "b1"), ("leader", 1)]
    assert cluster.partition_count("t") == 2
    assert cluster.partition_leader("t", 0) == ("b1", "h:2")
    assert cluster.topic("t").partitions[1].isr == ["b1"]
    assert cluster.metadata.last_index == 5


def test_decode_log_without_command_changes_nothing(cluster):
    client = RecordingClient()
    cluster.decode_log(LogEntry(9, None), client)
    assert cluster.metadata.last_index == 0
    assert client.calls == []


def test_fetch_metadata_by_index(cluster):
    cluster.decode_log(LogEntry(7, Command(CommandType.CREATE_TOPIC, topic="t", n_partitions=1)), RecordingClient())
    assert cluster.fetch_metadata(7) is None
    fetched = cluster.fetch_metadata(3)
    assert fetched is cluster.metadata
    assert "t" in fetched.topics


def test_update_metadata_replaces(cluster):
    fresh = Metadata(last_index=11)
    cluster.update_metadata(fresh)
    assert cluster.metadata is fresh
    assert cluster.topics() == {} and cluster.brokers() == {}


def test_stable_callback_fires_and_rearms(event):
    fired = threading.Event()
    cluster = ClusterMetadata(event, 0.05)
    cluster.set_stable_func(fired.set)
    assert fired.wait(2.0)
    assert cluster.stable
    fired.clear()
    _create(cluster, "again", 1, 1)
    assert not cluster.stable
    assert fired.wait(2.0)
    assert cluster.stable