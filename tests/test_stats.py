import struct

import pytest

from taskconsole.stats import (
    AsyncOpStats,
    Histogram,
    PollStats,
    ResourceStats,
    TaskStats,
    TimeAnchor,
)
from taskconsole.visitors import WakeOp

SECOND = 1_000_000_000
ANCHOR = TimeAnchor(mono=10 * SECOND, sys=1_600_000_000 * SECOND)


def _task():
    return TaskStats(poll_duration_max=1000, scheduled_duration_max=1000, created_at=0)


def test_time_anchor_clamps_earlier_instants():
    assert ANCHOR.to_system_time(5 * SECOND) == ANCHOR.sys
    assert ANCHOR.to_system_time(ANCHOR.mono) == ANCHOR.sys


def test_time_anchor_adds_elapsed():
    later = ANCHOR.mono + 3 * SECOND + 7
    assert ANCHOR.to_system_time(later) == ANCHOR.sys + 3 * SECOND + 7


def test_to_timestamp_splits_seconds_and_nanos():
    t = ANCHOR.mono + 2 * SECOND + 123
    seconds, nanos = ANCHOR.to_timestamp(t)
    assert 0 <= nanos < SECOND
    assert seconds * SECOND + nanos == ANCHOR.to_system_time(t)


def test_histogram_clamps_outliers():
    hist = Histogram(1000)
    hist.record_duration(2000)
    hist.record_duration(3000)
    hist.record_duration(10)
    proto = hist.to_proto()
    assert proto.high_outliers == 2
    assert proto.highest_outlier == 3000
    assert proto.max_value == 1000
    assert hist.count == 3


def test_histogram_without_outliers():
    hist = Histogram(1000)
    hist.record_duration(1000)
    proto = hist.to_proto()
    assert proto.high_outliers == 0
    assert proto.highest_outlier is None


def test_histogram_rejects_negative_duration():
    with pytest.raises(ValueError):
        Histogram(1000).record_duration(-1)


def test_histogram_rejects_tiny_max():
    with pytest.raises(ValueError):
        Histogram(1)


def test_histogram_serialization_header():
    hist = Histogram(5000)
    hist.record_duration(42)
    raw = hist.to_proto().raw_histogram
    cookie, length, offset, sigfig, lowest, highest, ratio = struct.unpack(
        ">IIIIQQd", raw[:40]
    )
    assert raw[:4] == bytes.fromhex("1c849303")
    assert length == len(raw) - 40
    assert offset == 0
    assert sigfig == 2
    assert lowest == 1
    assert highest == 5000
    assert ratio == 1.0


def test_empty_histogram_payload():
    raw = Histogram(1000).to_proto().raw_histogram
    assert raw[40:] == b"\x00"


def test_serialization_grows_with_spread_of_values():
    small = Histogram(1000)
    small.record_duration(1)
    large = Histogram(1000)
    large.record_duration(1)
    large.record_duration(900)
    assert len(large.to_proto().raw_histogram) > len(small.to_proto().raw_histogram)


def test_poll_busy_and_scheduled_time():
    stats = _task()
    stats.record_wake_op(WakeOp.wake_by_ref(), 100)
    stats.start_poll(150)
    stats.end_poll(400)
    snap = stats.to_proto(TimeAnchor(mono=0, sys=0))
    assert snap.poll_stats.polls == 1
    assert snap.poll_stats.busy_time == 400 - 150
    assert snap.scheduled_time == 150 - 100
    assert snap.poll_stats.first_poll == (0, 150)
    assert snap.poll_stats.last_poll_ended == (0, 400)
    assert snap.last_wake == (0, 100)


def test_nested_polls_count_once():
    stats = PollStats()
    stats.start_poll(10)
    stats.start_poll(20)
    stats.end_poll(30)
    assert stats.last_poll_ended is None
    stats.end_poll(40)
    assert stats.polls == 1
    assert stats.last_poll_started == 10
    assert stats.busy_time == 40 - 10


def test_scheduled_measured_from_last_poll_end():
    stats = PollStats()
    stats.start_poll(0)
    stats.end_poll(50)
    stats.start_poll(80)
    assert stats.scheduled_time == 80 - 50
    assert stats.polls == 2


def test_start_before_wake_records_no_scheduled_time():
    stats = _task()
    stats.record_wake_op(WakeOp.wake(), 500)
    stats.start_poll(100)
    snap = stats.to_proto(TimeAnchor(mono=0, sys=0))
    assert snap.scheduled_time == 0
    assert snap.poll_stats.polls == 1
    assert stats.scheduled_duration_histogram().raw_histogram[40:] == b"\x00"


def test_end_without_start_records_nothing():
    stats = PollStats()
    stats.end_poll(100)
    assert stats.last_poll_ended is None
    assert stats.busy_time == 0


def test_poll_histogram_records_outlier():
    stats = _task()
    stats.start_poll(0)
    stats.end_poll(5000)
    hist = stats.poll_duration_histogram()
    assert hist.high_outliers == 1
    assert hist.highest_outlier == 5000


def test_waker_counts():
    stats = _task()
    stats.record_wake_op(WakeOp.clone(), 1)
    stats.record_wake_op(WakeOp.clone(), 2)
    stats.record_wake_op(WakeOp.drop(), 3)
    stats.record_wake_op(WakeOp.wake(), 4)
    stats.record_wake_op(WakeOp.wake_by_ref(self_wake=True), 5)
    snap = stats.to_proto(ANCHOR)
    assert snap.waker_clones == 2
    assert snap.waker_drops == 2
    assert snap.wakes == 3
    assert snap.self_wakes == 0


def test_unsent_flag():
    stats = _task()
    assert stats.is_unsent()
    assert stats.take_unsent() is True
    assert stats.take_unsent() is False
    assert not stats.is_unsent()
    stats.record_wake_op(WakeOp.clone(), 1)
    assert stats.is_unsent()


def test_drop_task_keeps_first_timestamp():
    stats = _task()
    assert stats.dropped_at() is None
    stats.take_unsent()
    stats.drop_task(100)
    stats.drop_task(200)
    assert stats.dropped_at() == 100
    assert stats.take_unsent() is True
    anchor = TimeAnchor(mono=0, sys=0)
    assert stats.to_proto(anchor).dropped_at == anchor.to_timestamp(100)


def test_resource_stats():
    stats = ResourceStats(created_at=ANCHOR.mono + SECOND, parent_id=7)
    snap = stats.to_proto(ANCHOR)
    assert snap.created_at == ANCHOR.to_timestamp(ANCHOR.mono + SECOND)
    assert snap.dropped_at is None
    assert stats.parent_id == 7
    stats.take_unsent()
    stats.drop_resource(ANCHOR.mono + 2 * SECOND)
    stats.drop_resource(ANCHOR.mono + 9 * SECOND)
    assert stats.is_unsent()
    assert stats.to_proto(ANCHOR).dropped_at == ANCHOR.to_timestamp(ANCHOR.mono + 2 * SECOND)


def test_async_op_task_id():
    op = AsyncOpStats(created_at=0)
    assert op.task_id() is None
    op.take_unsent()
    op.set_task_id(42)
    assert op.task_id() == 42
    assert op.take_unsent() is True
    op.set_task_id(0)
    assert op.task_id() is None


def test_async_op_polls_and_drop():
    op = AsyncOpStats(created_at=0, inherit_child_attributes=True)
    op.start_poll(10)
    op.end_poll(30)
    op.drop_async_op(50)
    snap = op.to_proto(TimeAnchor(mono=0, sys=0))
    assert snap.poll_stats.polls == 1
    assert snap.poll_stats.busy_time == 30 - 10
    assert snap.dropped_at == (0, 50)
    assert op.dropped_at() == 50
    assert snap.task_id is None
    assert op.stats.inherit_child_attributes is True