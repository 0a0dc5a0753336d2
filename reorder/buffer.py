"""Adaptive K-Slack reorder buffer.

Events come in out of order; they go out in timestamp order once they are
at least k timestamp units behind the largest timestamp seen so far.  k
only grows when a freshly observed spread exceeds it, and that growth is
scaled by alpha, which the PD controller retunes every batch_size events.

Staging uses two ordered maps.  New events land in `primary`; whenever the
largest timestamp advances, primary is merged into `secondary` and cleared,
then secondary is swept from its smallest key while key + k <= largest.
Events that arrive without advancing the maximum wait in primary for the
next sweep.

An optional timeout flush (tick) releases anything older than
now - timeout regardless of k, so a stalled stream cannot strand events.

State: one ReorderBuffer per stream partition.  Every public method holds
the buffer's lock; ingest and tick never interleave.
"""

import bisect
import heapq
import threading
import time
from collections import deque

from reorder.config import ReorderConfig
from reorder.controller import AlphaController
from reorder.coverage import WindowCoverageEstimator
from reorder.schedule import ScheduleGate, Scheduler
from reorder.snapshot import ReorderSnapshot

# timestamps kept for runtime coverage, in batches
_TIMESTAMP_SAMPLE_BATCHES = 10


def _now_ms() -> int:
    return int(time.time() * 1000)


class OrderedBuckets:
    """Timestamp -> FIFO list of payloads, iterated in key order."""

    __slots__ = ("_keys", "_buckets", "_size")

    def __init__(self):
        self._keys: list[int] = []
        self._buckets: dict[int, list] = {}
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def __bool__(self) -> bool:
        return self._size > 0

    def append(self, key: int, item) -> None:
        bucket = self._buckets.get(key)
        if bucket is None:
            bisect.insort(self._keys, key)
            bucket = self._buckets[key] = []
        bucket.append(item)
        self._size += 1

    def first_key(self) -> int | None:
        return self._keys[0] if self._keys else None

    def absorb(self, other: "OrderedBuckets") -> None:
        """Move everything from *other* into self (appending within a key), then clear *other*."""
        for key, items in other.items():
            bucket = self._buckets.get(key)
            if bucket is None:
                bisect.insort(self._keys, key)
                self._buckets[key] = list(items)
            else:
                bucket.extend(items)
            self._size += len(items)
        other.clear()

    def pop_through(self, limit: int) -> list[tuple[int, list]]:
        """Remove and return every (key, items) with key <= limit, smallest first."""
        cut = bisect.bisect_right(self._keys, limit)
        if not cut:
            return []
        released = [(key, self._buckets.pop(key)) for key in self._keys[:cut]]
        del self._keys[:cut]
        self._size -= sum(len(items) for _, items in released)
        return released

    def items(self):
        return [(key, self._buckets[key]) for key in self._keys]

    def clear(self) -> None:
        self._keys.clear()
        self._buckets.clear()
        self._size = 0


class ReorderBuffer:

    def __init__(self, config: ReorderConfig | None = None,
                 scheduler: Scheduler | None = None, clock=None):
        self.config = config or ReorderConfig()
        self._clock = clock or _now_ms
        self._lock = threading.Lock()

        self._estimator = WindowCoverageEstimator(
            self.config.error_threshold, self.config.confidence_level,
        )
        self._controller = AlphaController()
        self._gate = ScheduleGate(self.config.timeout, scheduler)

        self._primary = OrderedBuckets()
        self._secondary = OrderedBuckets()

        self._k = 0
        # window used for the next runtime-coverage measurement; derived
        # from alpha * k after each batch, never written back into k
        self._coverage_window = 0
        self._largest: int | None = None
        self._last_emitted: int | None = None
        self._counter = 0
        # a discarded arrival is sampled but not counted, so bound the sample
        self._correlations: deque[float] = deque(maxlen=self.config.batch_size + 1)
        self._timestamps: deque[int] = deque(
            maxlen=self.config.batch_size * _TIMESTAMP_SAMPLE_BATCHES
        )

        self.emitted = 0
        self.dropped = 0

    # ------------------------------------------------------------------ #
    # Read-only views
    # ------------------------------------------------------------------ #

    @property
    def k(self) -> int:
        return self._k

    @property
    def alpha(self) -> float:
        return self._controller.alpha

    @property
    def coverage_window(self) -> int:
        return self._coverage_window

    @property
    def largest_timestamp(self) -> int | None:
        return self._largest

    @property
    def last_emitted_timestamp(self) -> int | None:
        return self._last_emitted

    @property
    def next_wake(self) -> int:
        return self._gate.last_scheduled

    @property
    def pending(self) -> int:
        return len(self._primary) + len(self._secondary)

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    def ingest(self, timestamp: int, correlation_value: float, payload) -> list:
        """Buffer one event; return the payloads that became safe to emit, in order."""
        with self._lock:
            self._timestamps.append(timestamp)
            self._correlations.append(correlation_value)

            if (self.config.discard_late_arrivals and self._last_emitted is not None
                    and timestamp < self._last_emitted):
                self.dropped += 1
                return []

            self._gate.on_ingest(self._clock())
            self._primary.append(timestamp, payload)

            self._counter += 1
            if self._counter > self.config.batch_size:
                self._recompute_alpha(timestamp)

            if self._largest is not None and timestamp <= self._largest:
                return []
            self._largest = timestamp
            self._grow_window()

            self._secondary.absorb(self._primary)
            return self._release(self._secondary.pop_through(self._largest - self._k))

    def tick(self, now: int) -> list:
        """Timeout flush: release everything older than now - timeout, ignoring k."""
        with self._lock:
            if not self._gate.enabled:
                return []
            limit = now - self.config.timeout - 1
            expired = heapq.merge(
                self._secondary.pop_through(limit),
                self._primary.pop_through(limit),
                key=lambda entry: entry[0],
            )
            released = self._release(expired)
            self._gate.after_flush(pending=self.pending > 0)
            return released

    # ------------------------------------------------------------------ #
    # Checkpointing
    # ------------------------------------------------------------------ #

    def snapshot(self, event_id=None) -> ReorderSnapshot:
        """Capture the full state.  *event_id* maps a payload to what gets stored."""
        event_id = event_id or (lambda payload: payload)
        with self._lock:
            alpha, previous_alpha, previous_error = self._controller.state()
            return ReorderSnapshot(
                k=self._k,
                alpha=alpha,
                previous_alpha=previous_alpha,
                previous_error=previous_error,
                coverage_window=self._coverage_window,
                largest_timestamp=self._largest,
                last_emitted_timestamp=self._last_emitted,
                last_scheduled_wake=self._gate.last_scheduled,
                needs_scheduling=self._gate.needs_scheduling,
                counter=self._counter,
                correlation_sample=list(self._correlations),
                timestamp_sample=list(self._timestamps),
                primary=[(key, [event_id(p) for p in items])
                         for key, items in self._primary.items()],
                secondary=[(key, [event_id(p) for p in items])
                           for key, items in self._secondary.items()],
            )

    def restore(self, snapshot: ReorderSnapshot, resolve=None) -> None:
        """Replace the state with *snapshot*.  *resolve* maps stored ids back to payloads."""
        resolve = resolve or (lambda event_id: event_id)
        with self._lock:
            self._k = snapshot.k
            self._controller.load(
                snapshot.alpha, snapshot.previous_alpha, snapshot.previous_error,
            )
            self._coverage_window = snapshot.coverage_window
            self._largest = snapshot.largest_timestamp
            self._last_emitted = snapshot.last_emitted_timestamp
            self._gate.last_scheduled = snapshot.last_scheduled_wake
            self._gate.needs_scheduling = snapshot.needs_scheduling
            self._counter = snapshot.counter
            self._correlations.clear()
            self._correlations.extend(snapshot.correlation_sample)
            self._timestamps.clear()
            self._timestamps.extend(snapshot.timestamp_sample)

            for buckets, entries in ((self._primary, snapshot.primary),
                                     (self._secondary, snapshot.secondary)):
                buckets.clear()
                for key, ids in entries:
                    for event_id in ids:
                        buckets.append(key, resolve(event_id))

    # ------------------------------------------------------------------ #
    # Internals (lock held)
    # ------------------------------------------------------------------ #

    def _recompute_alpha(self, timestamp: int) -> None:
        threshold = self._estimator.spread_estimate(self._correlations)
        if self._coverage_window == 0:
            runtime = 1.0
        else:
            runtime = self._estimator.runtime_coverage(
                timestamp, self._timestamps, self._coverage_window,
                self.config.reference_span,
            )
        alpha = self._controller.update(threshold, runtime)
        self._coverage_window = min(round(alpha * self._k), self._k)

        self._counter = 0
        self._correlations.clear()
        horizon = timestamp - self.config.reference_span
        if self._timestamps and min(self._timestamps) < horizon:
            kept = [ts for ts in self._timestamps if ts >= horizon]
            self._timestamps.clear()
            self._timestamps.extend(kept)

    def _grow_window(self) -> None:
        difference = self._largest - self._primary.first_key()
        if difference > self._k:
            self._k = min(round(difference * self._controller.alpha), self.config.max_k)

    def _release(self, entries) -> list:
        released = []
        for key, items in entries:
            released.extend(items)
            if self._last_emitted is None or key > self._last_emitted:
                self._last_emitted = key
        self.emitted += len(released)
        return released
