"""Per-task, per-resource and per-async-op statistics.

Instants are monotonic clock readings in integer nanoseconds (as from
:func:`time.monotonic_ns`); durations are integer nanoseconds as well.
Timestamps sent over the wire are ``(seconds, nanos)`` pairs since the Unix
epoch.
"""

from __future__ import annotations

import logging
import struct
import threading
import time
from dataclasses import dataclass, field

from .visitors import WakeOp

__all__ = [
    "TimeAnchor",
    "DurationHistogram",
    "Histogram",
    "PollStatsSnapshot",
    "PollStats",
    "TaskStatsSnapshot",
    "TaskStats",
    "ResourceStatsSnapshot",
    "ResourceStats",
    "AsyncOpStatsSnapshot",
    "AsyncOpStats",
]

log = logging.getLogger(__name__)

_NANOS_PER_SEC = 1_000_000_000
_U64_MASK = (1 << 64) - 1

Timestamp = tuple[int, int]


def _later(a: int | None, b: int | None) -> int | None:
    """The later of two optional instants; a missing one counts as earliest."""
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


@dataclass(frozen=True)
class TimeAnchor:
    """Ties a monotonic instant to a wall-clock time in nanoseconds since the epoch."""

    mono: int = field(default_factory=time.monotonic_ns)
    sys: int = field(default_factory=time.time_ns)

    def to_system_time(self, t: int) -> int:
        """Convert a monotonic instant to nanoseconds since the Unix epoch.

        Instants earlier than the anchor map to the anchor's wall-clock time.
        """
        return self.sys + max(t - self.mono, 0)

    def to_timestamp(self, t: int) -> Timestamp:
        """Convert a monotonic instant to a ``(seconds, nanos)`` timestamp."""
        seconds, nanos = divmod(self.to_system_time(t), _NANOS_PER_SEC)
        return seconds, nanos


@dataclass(frozen=True)
class DurationHistogram:
    """A serialized histogram of durations with its outlier bookkeeping."""

    raw_histogram: bytes
    max_value: int
    high_outliers: int
    highest_outlier: int | None


class _HdrHistogram:
    """An HDR histogram of unsigned integers, serializable in the V2 format."""

    _V2_COOKIE = 0x1C849303

    def __init__(self, lowest: int, highest: int, sigfig: int) -> None:
        if lowest < 1:
            raise ValueError("lowest discernible value must be at least 1")
        if highest < 2 * lowest:
            raise ValueError("highest trackable value must be at least twice the lowest")
        if not 0 <= sigfig <= 5:
            raise ValueError("significant figures must be in the range 0..=5")
        self.lowest = lowest
        self.highest = highest
        self.sigfig = sigfig

        single_unit = 2 * 10**sigfig
        self.unit_magnitude = lowest.bit_length() - 1
        sub_bucket_count_magnitude = (single_unit - 1).bit_length()
        self.sub_bucket_half_count_magnitude = max(sub_bucket_count_magnitude, 1) - 1
        self.sub_bucket_count = 1 << (self.sub_bucket_half_count_magnitude + 1)
        self.sub_bucket_half_count = self.sub_bucket_count // 2
        self.sub_bucket_mask = (self.sub_bucket_count - 1) << self.unit_magnitude
        self.leading_zero_count_base = (
            64 - self.unit_magnitude - self.sub_bucket_half_count_magnitude - 1
        )

        bucket_count = 1
        smallest_untrackable = self.sub_bucket_count << self.unit_magnitude
        while smallest_untrackable <= highest:
            if smallest_untrackable > _U64_MASK // 2:
                bucket_count += 1
                break
            smallest_untrackable <<= 1
            bucket_count += 1
        self.counts = [0] * ((bucket_count + 1) * self.sub_bucket_half_count)
        self.max_value = 0
        self.total = 0

    def index_for(self, value: int) -> int:
        leading_zeros = 64 - (value | self.sub_bucket_mask).bit_length()
        bucket_index = self.leading_zero_count_base - leading_zeros
        sub_bucket_index = value >> (bucket_index + self.unit_magnitude)
        base = (bucket_index + 1) << self.sub_bucket_half_count_magnitude
        return base + sub_bucket_index - self.sub_bucket_half_count

    def record(self, value: int) -> None:
        if value < 0:
            raise ValueError(f"cannot record a negative value: {value}")
        index = self.index_for(value)
        if index >= len(self.counts):
            raise ValueError(f"value {value} is beyond the histogram's range")
        self.counts[index] += 1
        self.total += 1
        self.max_value = max(self.max_value, value)

    def _encoded_counts(self) -> bytes:
        limit = self.index_for(self.max_value)
        out = bytearray()
        index = 0
        while index <= limit:
            count = self.counts[index]
            index += 1
            zeros = 0
            if count == 0:
                zeros = 1
                while index <= limit and self.counts[index] == 0:
                    zeros += 1
                    index += 1
            value = -zeros if zeros > 1 else count
            out += _varint(((value << 1) ^ (value >> 63)) & _U64_MASK)
        return bytes(out)

    def serialize(self) -> bytes:
        payload = self._encoded_counts()
        header = struct.pack(
            ">IIIIQQd",
            self._V2_COOKIE,
            len(payload),
            0,
            self.sigfig,
            self.lowest,
            self.highest,
            1.0,
        )
        return header + payload


def _varint(value: int) -> bytes:
    """LEB128 with a ninth byte that carries a full eight bits."""
    out = bytearray()
    for _ in range(8):
        if value < 0x80:
            out.append(value)
            return bytes(out)
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value & 0xFF)
    return bytes(out)


class Histogram:
    """A duration histogram that clamps values above its maximum and counts them."""

    def __init__(self, max: int) -> None:
        # Two significant figures keep memory use small.
        self._histogram = _HdrHistogram(1, max, 2)
        self.max = max
        self.outliers = 0
        self.max_outlier: int | None = None

    @property
    def count(self) -> int:
        """The number of durations recorded."""
        return self._histogram.total

    def record_duration(self, duration_ns: int) -> None:
        """Record a duration, clamping it to the histogram's maximum."""
        if duration_ns < 0:
            raise ValueError(f"durations cannot be negative: {duration_ns}")
        if duration_ns > self.max:
            self.outliers += 1
            self.max_outlier = _later(self.max_outlier, duration_ns)
            duration_ns = self.max
        self._histogram.record(duration_ns)

    def to_proto(self) -> DurationHistogram:
        return DurationHistogram(
            raw_histogram=self._histogram.serialize(),
            max_value=self.max,
            high_outliers=self.outliers,
            highest_outlier=self.max_outlier,
        )


@dataclass(frozen=True)
class PollStatsSnapshot:
    polls: int
    first_poll: Timestamp | None
    last_poll_started: Timestamp | None
    last_poll_ended: Timestamp | None
    busy_time: int


class PollStats:
    """Poll counts and timings; histograms are optional."""

    def __init__(
        self,
        poll_histogram: Histogram | None = None,
        scheduled_histogram: Histogram | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self.current_polls = 0
        self.polls = 0
        self.first_poll: int | None = None
        self.last_wake: int | None = None
        self.last_poll_started: int | None = None
        self.last_poll_ended: int | None = None
        self.busy_time = 0
        self.scheduled_time = 0
        self.poll_histogram = poll_histogram
        self.scheduled_histogram = scheduled_histogram

    def wake(self, at: int) -> None:
        with self._lock:
            self.last_wake = _later(self.last_wake, at)

    def start_poll(self, at: int) -> None:
        with self._lock:
            previous = self.current_polls
            self.current_polls += 1
            if previous > 0:
                return
            if self.first_poll is None:
                self.first_poll = at
            self.last_poll_started = at
            self.polls += 1

            # A poll ending after the last wake was likely a self-wake, so the
            # scheduled time is measured from the end of that poll instead.
            scheduled = _later(self.last_wake, self.last_poll_ended)
            if scheduled is None:
                return
            elapsed = at - scheduled
            if elapsed < 0:
                log.warning(
                    "possible clock skew detected: a poll's start timestamp was "
                    "before the wake time/last poll end timestamp "
                    "(wake = %d, start = %d)",
                    scheduled,
                    at,
                )
                return
            if self.scheduled_histogram is not None:
                self.scheduled_histogram.record_duration(elapsed)
            self.scheduled_time += elapsed

    def end_poll(self, at: int) -> None:
        with self._lock:
            previous = self.current_polls
            self.current_polls -= 1
            if previous > 1:
                return
            started = self.last_poll_started
            if started is None:
                log.warning("a poll ended, but no start timestamp was recorded")
                return
            self.last_poll_ended = at
            elapsed = at - started
            if elapsed < 0:
                log.warning(
                    "possible clock skew detected: a poll's end timestamp was "
                    "before its start timestamp (start = %d, end = %d)",
                    started,
                    at,
                )
                return
            if self.poll_histogram is not None:
                self.poll_histogram.record_duration(elapsed)
            self.busy_time += elapsed

    def to_proto(self, base_time: TimeAnchor) -> PollStatsSnapshot:
        def stamp(at: int | None) -> Timestamp | None:
            return None if at is None else base_time.to_timestamp(at)

        with self._lock:
            return PollStatsSnapshot(
                polls=self.polls,
                first_poll=stamp(self.first_poll),
                last_poll_started=stamp(self.last_poll_started),
                last_poll_ended=stamp(self.last_poll_ended),
                busy_time=self.busy_time,
            )


class _Tracked:
    """Dirty and dropped bookkeeping shared by tasks and resources."""

    def __init__(self, created_at: int) -> None:
        self._state_lock = threading.Lock()
        self._dirty = True
        self._dropped = False
        self.created_at = created_at
        self._dropped_at: int | None = None

    def _make_dirty(self) -> None:
        with self._state_lock:
            self._dirty = True

    def _mark_dropped(self, dropped_at: int) -> bool:
        with self._state_lock:
            if self._dropped:
                return False
            self._dropped = True
            self._dropped_at = dropped_at
            self._dirty = True
            return True

    def _swap_dirty(self) -> bool:
        with self._state_lock:
            dirty, self._dirty = self._dirty, False
            return dirty

    def _peek_dirty(self) -> bool:
        with self._state_lock:
            return self._dirty

    def _dropped_instant(self) -> int | None:
        with self._state_lock:
            return self._dropped_at if self._dropped else None


@dataclass(frozen=True)
class TaskStatsSnapshot:
    poll_stats: PollStatsSnapshot
    created_at: Timestamp
    dropped_at: Timestamp | None
    wakes: int
    waker_clones: int
    waker_drops: int
    self_wakes: int
    last_wake: Timestamp | None
    scheduled_time: int


class TaskStats(_Tracked):
    """Statistics for one task."""

    def __init__(
        self, poll_duration_max: int, scheduled_duration_max: int, created_at: int
    ) -> None:
        super().__init__(created_at)
        self._counts_lock = threading.Lock()
        self.wakes = 0
        self.waker_clones = 0
        self.waker_drops = 0
        self.self_wakes = 0
        self.poll_stats = PollStats(
            Histogram(poll_duration_max), Histogram(scheduled_duration_max)
        )

    def record_wake_op(self, op: WakeOp, at: int) -> None:
        if op.kind == WakeOp.CLONE:
            with self._counts_lock:
                self.waker_clones += 1
        elif op.kind == WakeOp.DROP:
            with self._counts_lock:
                self.waker_drops += 1
        elif op.kind == WakeOp.WAKE_BY_REF:
            self._wake(at, op.self_wake)
        else:
            # Waking by value consumes the waker without a drop event, so count
            # it as a drop to keep clones minus drops equal to live wakers.
            with self._counts_lock:
                self.waker_drops += 1
            self._wake(at, op.self_wake)
        self._make_dirty()

    def _wake(self, at: int, self_wake: bool) -> None:
        self.poll_stats.wake(at)
        with self._counts_lock:
            self.wakes += 2 if self_wake else 1
        self._make_dirty()

    def start_poll(self, at: int) -> None:
        self.poll_stats.start_poll(at)
        self._make_dirty()

    def end_poll(self, at: int) -> None:
        self.poll_stats.end_poll(at)
        self._make_dirty()

    def drop_task(self, dropped_at: int) -> None:
        """Record when the task was dropped; later calls are ignored."""
        self._mark_dropped(dropped_at)

    def poll_duration_histogram(self) -> DurationHistogram:
        with self.poll_stats._lock:
            return self.poll_stats.poll_histogram.to_proto()

    def scheduled_duration_histogram(self) -> DurationHistogram:
        with self.poll_stats._lock:
            return self.poll_stats.scheduled_histogram.to_proto()

    def take_unsent(self) -> bool:
        """Return whether there are unsent updates, clearing the flag."""
        return self._swap_dirty()

    def is_unsent(self) -> bool:
        """Return whether there are unsent updates, leaving the flag as is."""
        return self._peek_dirty()

    def dropped_at(self) -> int | None:
        """The instant the task was dropped, if it has been."""
        return self._dropped_instant()

    def to_proto(self, base_time: TimeAnchor) -> TaskStatsSnapshot:
        poll_stats = self.poll_stats.to_proto(base_time)
        with self.poll_stats._lock:
            last_wake = self.poll_stats.last_wake
            scheduled_time = self.poll_stats.scheduled_time
        dropped_at = self.dropped_at()
        with self._counts_lock:
            return TaskStatsSnapshot(
                poll_stats=poll_stats,
                created_at=base_time.to_timestamp(self.created_at),
                dropped_at=None if dropped_at is None else base_time.to_timestamp(dropped_at),
                wakes=self.wakes,
                waker_clones=self.waker_clones,
                waker_drops=self.waker_drops,
                self_wakes=self.self_wakes,
                last_wake=None if last_wake is None else base_time.to_timestamp(last_wake),
                scheduled_time=scheduled_time,
            )


@dataclass(frozen=True)
class ResourceStatsSnapshot:
    created_at: Timestamp
    dropped_at: Timestamp | None
    attributes: tuple = ()


class ResourceStats(_Tracked):
    """Statistics for one resource."""

    def __init__(
        self,
        created_at: int,
        inherit_child_attributes: bool = False,
        parent_id: int | None = None,
    ) -> None:
        super().__init__(created_at)
        self.inherit_child_attributes = inherit_child_attributes
        self.parent_id = parent_id
        self.attributes: dict = {}

    def drop_resource(self, dropped_at: int) -> None:
        """Record when the resource was dropped; later calls are ignored."""
        self._mark_dropped(dropped_at)

    def take_unsent(self) -> bool:
        """Return whether there are unsent updates, clearing the flag."""
        return self._swap_dirty()

    def is_unsent(self) -> bool:
        """Return whether there are unsent updates, leaving the flag as is."""
        return self._peek_dirty()

    def dropped_at(self) -> int | None:
        """The instant the resource was dropped, if it has been."""
        return self._dropped_instant()

    def to_proto(self, base_time: TimeAnchor) -> ResourceStatsSnapshot:
        dropped_at = self.dropped_at()
        return ResourceStatsSnapshot(
            created_at=base_time.to_timestamp(self.created_at),
            dropped_at=None if dropped_at is None else base_time.to_timestamp(dropped_at),
            attributes=tuple(self.attributes.values()),
        )


@dataclass(frozen=True)
class AsyncOpStatsSnapshot:
    poll_stats: PollStatsSnapshot
    created_at: Timestamp
    dropped_at: Timestamp | None
    task_id: int | None
    attributes: tuple = ()


class AsyncOpStats:
    """Statistics for one async operation: resource stats plus polls."""

    def __init__(
        self,
        created_at: int,
        inherit_child_attributes: bool = False,
        parent_id: int | None = None,
    ) -> None:
        self._task_id = 0
        self.stats = ResourceStats(created_at, inherit_child_attributes, parent_id)
        self.poll_stats = PollStats()

    def task_id(self) -> int | None:
        """The id of the last task to poll this operation, if any."""
        task_id = self._task_id
        return task_id if task_id > 0 else None

    def set_task_id(self, task_id: int) -> None:
        self._task_id = task_id
        self.stats._make_dirty()

    def drop_async_op(self, dropped_at: int) -> None:
        self.stats.drop_resource(dropped_at)

    def start_poll(self, at: int) -> None:
        self.poll_stats.start_poll(at)
        self.stats._make_dirty()

    def end_poll(self, at: int) -> None:
        self.poll_stats.end_poll(at)
        self.stats._make_dirty()

    def take_unsent(self) -> bool:
        return self.stats.take_unsent()

    def is_unsent(self) -> bool:
        return self.stats.is_unsent()

    def dropped_at(self) -> int | None:
        return self.stats.dropped_at()

    def to_proto(self, base_time: TimeAnchor) -> AsyncOpStatsSnapshot:
        resource = self.stats.to_proto(base_time)
        return AsyncOpStatsSnapshot(
            poll_stats=self.poll_stats.to_proto(base_time),
            created_at=resource.created_at,
            dropped_at=resource.dropped_at,
            task_id=self.task_id(),
            attributes=resource.attributes,
        )