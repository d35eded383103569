import threading

import pytest

from gofka.log import Log
from gofka.message import Message, ReadOptions

VALUE = (
    "msg value - msg value - msg value - msg value - msg value - msg value - msg value - "
    "msg value - msg value - msg value - msg value - msg value - msg value - msg value"
)
BIG = ReadOptions(max_messages=1000, max_bytes=10 * 1024 * 1024)


def make_messages(count=50):
    return [Message(value=VALUE, topic="foo-topic", partition=0) for _ in range(count)]


@pytest.fixture
def stop_event():
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture
def log(tmp_path, stop_event):
    log = Log("test", stop_event, tmp_path)
    yield log
    log.shutdown()


def test_reopened_log_recovers_offsets(tmp_path, stop_event):
    log = Log("test", stop_event, tmp_path)
    for _ in range(4):
        log.append_batch(make_messages())
        log.active.flush()
    size = log.size()
    log.active.close()

    reopened = Log("test", stop_event, tmp_path)
    try:
        assert reopened.size() == size
        assert reopened.active.base_offset == 0
        messages = reopened.read_batch(1, BIG)
        assert len(messages) == 200
        assert all(m.value == VALUE for m in messages)
        assert [m.offset for m in messages] == list(range(1, 201))
    finally:
        reopened.shutdown()
        log.shutdown()


def test_append_returns_offset_before_last(log):
    batch = make_messages(5)
    result = log.append_batch(batch)
    assert result == batch[-1].offset - 1
    assert log.size() == batch[-1].offset + 1


def test_default_max_messages_is_one_hundred(log):
    for _ in range(3):
        log.append_batch(make_messages())
        log.active.flush()
    messages = log.read_batch(1, ReadOptions(max_bytes=10 * 1024 * 1024))
    assert len(messages) == 100


def test_zero_max_bytes_reads_nothing(log):
    log.append_batch(make_messages(3))
    log.active.flush()
    assert log.read_batch(1, ReadOptions()) == []


def test_negative_offset_has_no_segment(log):
    with pytest.raises(ValueError, match="segment not found"):
        log.read_batch(-1, BIG)


def test_roll_to_new_segment(log):
    log.segment_bytes = 1
    log.append_batch(make_messages(5))
    log.active.flush()
    first = log.active

    second = make_messages(5)
    log.append_batch(second)
    log.active.flush()

    assert len(log.segments) == 2
    assert log.active is not first
    assert log.active.base_offset == first.final_offset()
    assert second[0].offset == log.active.base_offset + 1
    read = log.read_batch(second[0].offset, BIG)
    assert [m.offset for m in read] == [m.offset for m in second]
    assert len(list(log.directory.glob("*.log"))) == 2


def test_truncate_removes_oldest_segment(log):
    log.segment_bytes = 1
    log.append_batch(make_messages(5))
    log.active.flush()
    first = log.active
    log.append_batch(make_messages(5))
    log.active.flush()

    log.retention_bytes = 0
    log.truncate()
    assert log.segments == [log.active]
    assert not first.log_path.exists()
    assert not first.index_path.exists()


def test_truncate_keeps_segments_within_retention(log):
    log.append_batch(make_messages(5))
    log.active.flush()
    before = log.segments
    log.truncate()
    assert log.segments == before


def test_remove_old_drops_expired_segments(log):
    log.append_batch(make_messages(5))
    log.active.flush()
    segment = log.active
    log.retention_time = 10
    log.remove_old()
    assert log.segments == [segment]

    segment.last_modified -= 100
    log.remove_old()
    assert log.segments == []
    assert not segment.log_path.exists()


def test_non_numeric_log_files_are_ignored(tmp_path, stop_event):
    directory = tmp_path / "test"
    directory.mkdir()
    (directory / "junk.log").write_bytes(b"")
    with Log("test", stop_event, tmp_path) as log:
        assert [s.base_offset for s in log.segments] == [0]


def test_shutdown_closes_segments(log):
    log.append_batch(make_messages(3))
    log.active.flush()
    log.shutdown()
    log.shutdown()
    with pytest.raises(ValueError):
        log.read_batch(1, BIG)