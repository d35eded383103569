import threading

import pytest

from gofka.message import Message, ReadOptions
from gofka.partition import NotLeaderStateError
from gofka.topic import Topic

OPTIONS = ReadOptions(max_messages=50, max_bytes=1 << 20)


@pytest.fixture
def event():
    ev = threading.Event()
    yield ev
    ev.set()


@pytest.fixture
def topic(tmp_path, event):
    t = Topic("orders", 2, event, tmp_path)
    yield t
    t.shutdown()


def _fill(topic, partition, count):
    topic.append_batch(partition, [Message(value=f"value-{i}") for i in range(count)])
    topic.get_partition(partition).log.active.flush()


def test_partition_directories_created(topic, tmp_path):
    assert (tmp_path / "orders" / "0").is_dir()
    assert (tmp_path / "orders" / "1").is_dir()
    assert len(topic.partitions) == topic.n_partitions


def test_non_positive_partition_count_becomes_one(tmp_path, event):
    t = Topic("single", 0, event, tmp_path)
    try:
        assert t.n_partitions == 1
        assert len(t.partitions) == 1
    finally:
        t.shutdown()


def test_append_and_read_round_trip(topic):
    _fill(topic, 0, 3)
    start = topic.get_partition(0).hwm - 2
    messages = topic.read_from_partition(0, start, OPTIONS)
    assert [m.value for m in messages] == ["value-0", "value-1", "value-2"]
    assert all(m.topic == "orders" and m.partition == 0 for m in messages)
    offsets = [m.offset for m in messages]
    assert offsets == sorted(offsets)


def test_append_empty_batch_raises(topic):
    with pytest.raises(ValueError):
        topic.append_batch(0, [])


def test_partition_info_matches_partition(topic):
    _fill(topic, 1, 2)
    partition = topic.get_partition(1)
    assert topic.partition_info(1) == (partition.hwm, partition.leo)
    hwm, leo = topic.partition_info(1)
    assert hwm == leo
    assert topic.get_leo(1) == leo


def test_partition_info_out_of_range(topic):
    with pytest.raises(IndexError):
        topic.partition_info(topic.n_partitions)


def test_get_partition_out_of_range(topic):
    with pytest.raises(IndexError):
        topic.get_partition(5)
    with pytest.raises(IndexError):
        topic.get_leo(5)


def test_read_unknown_partition_yields_nothing(topic):
    assert topic.read_from_partition(9, 0, OPTIONS) == []
    assert topic.read_from_partition(-1, 0, OPTIONS) == []
    assert topic.read_from_partition_replica(9, 0, OPTIONS) == []


def test_replica_read_goes_past_high_water_mark(topic):
    partition = topic.get_partition(0)
    partition.become_leader("b1", 1, ["b1", "b2"])
    hwm_before = partition.hwm
    _fill(topic, 0, 3)
    assert partition.hwm == hwm_before
    beyond = partition.hwm + 1
    assert topic.read_from_partition(0, beyond, OPTIONS) == []
    replica = topic.read_from_partition_replica(0, beyond, OPTIONS)
    assert replica
    assert all(m.offset >= beyond and m.topic == "orders" for m in replica)


def test_update_follower_state_requires_leader(topic):
    with pytest.raises(NotLeaderStateError):
        topic.update_follower_state("b2", 0, 0, 0)


def test_update_follower_state_unknown_partition_ignored(topic):
    topic.update_follower_state("b2", 7, 0, 0)
    assert topic.get_partition(0).isr == []


def test_update_follower_state_adds_to_isr(topic):
    partition = topic.get_partition(0)
    partition.become_leader("b1", 1, ["b1", "b2"])
    topic.update_follower_state("b2", 0, 0, partition.leo)
    assert partition.isr == ["b1", "b2"]


def test_shutdown_twice_is_harmless(tmp_path, event):
    t = Topic("closing", 1, event, tmp_path)
    t.shutdown()
    t.shutdown()
    assert t.get_partition(0).log.active is not None and t.n_partitions == 1