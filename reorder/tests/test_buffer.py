"""Tests for ReorderBuffer: window rule, ordering, discard policy, batches, timeouts."""

import random
import threading
from unittest.mock import MagicMock, patch

from reorder.buffer import OrderedBuckets, ReorderBuffer
from reorder.config import ReorderConfig
from reorder.controller import AlphaController
from reorder.schedule import Scheduler
from reorder.snapshot import ReorderSnapshot


def _buffer(scheduler=None, now=0, **config):
    """Buffer with a frozen clock; config defaults to the dataclass defaults."""
    return ReorderBuffer(ReorderConfig(**config), scheduler, clock=lambda: now)


def _feed(buf, timestamps, value=1.0):
    """Ingest (ts, "e<i>") pairs, return one output list per ingest."""
    return [buf.ingest(ts, value, f"e{i}") for i, ts in enumerate(timestamps)]


def _disordered(seed, n, max_lag=50):
    rng = random.Random(seed)
    return [i * 10 - rng.randint(0, max_lag) for i in range(n)]


# ---------------------------------------------------------------------------
# OrderedBuckets
# ---------------------------------------------------------------------------

class TestOrderedBuckets:
    def test_keys_sorted_and_fifo_within_key(self):
        b = OrderedBuckets()
        for key, item in [(5, "a"), (1, "b"), (5, "c"), (3, "d")]:
            b.append(key, item)
        assert b.items() == [(1, ["b"]), (3, ["d"]), (5, ["a", "c"])]
        assert len(b) == 4
        assert b.first_key() == 1

    def test_pop_through_is_inclusive_prefix(self):
        b = OrderedBuckets()
        for key in (1, 2, 3, 4):
            b.append(key, key)
        assert b.pop_through(2) == [(1, [1]), (2, [2])]
        assert b.items() == [(3, [3]), (4, [4])]
        assert len(b) == 2

    def test_pop_through_below_first_key(self):
        b = OrderedBuckets()
        b.append(10, "x")
        assert b.pop_through(9) == []
        assert len(b) == 1

    def test_absorb_appends_and_clears_source(self):
        older, newer = OrderedBuckets(), OrderedBuckets()
        older.append(5, "a")
        newer.append(5, "b")
        newer.append(2, "c")
        older.absorb(newer)
        assert older.items() == [(2, ["c"]), (5, ["a", "b"])]
        assert len(older) == 3
        assert not newer
        assert newer.first_key() is None


# ---------------------------------------------------------------------------
# Window rule
# ---------------------------------------------------------------------------

class TestWindowRule:
    def test_k_starts_at_zero_and_releases_immediately(self):
        buf = _buffer()
        assert buf.k == 0
        assert buf.ingest(100, 1.0, "a") == ["a"]
        assert buf.last_emitted_timestamp == 100

    def test_scenario_from_disordered_prefix(self):
        """[100, 105, 102, 150, 101] then 300, with max_k = 100."""
        buf = _buffer(max_k=100)
        out = _feed(buf, [100, 105, 102, 150])
        assert out[0] == ["e0"]              # 100, k = 0
        assert out[1] == ["e1"]              # 105, k = 0
        assert out[2] == []                  # 102 waits for a new maximum
        assert out[3] == ["e2"]              # 150: k = 150 - 102 = 48, releases 102
        assert buf.k == 48

        assert buf.ingest(101, 1.0, "e4") == []               # waits
        assert buf.ingest(300, 1.0, "e5") == ["e4", "e3"]     # k capped at 100
        assert buf.k == 100
        assert buf.pending == 1

    def test_non_advancing_event_waits_in_primary(self):
        buf = _buffer()
        buf.ingest(100, 1.0, "a")
        assert buf.ingest(90, 1.0, "b") == []
        assert buf.ingest(100, 1.0, "c") == []
        assert buf.pending == 2

    def test_window_grows_only_when_spread_exceeds_k(self):
        buf = _buffer()
        _feed(buf, [100, 50, 200])           # spread 150 -> k 150
        assert buf.k == 150
        _feed(buf, [190, 260])               # spread 70 < 150, k stays
        assert buf.k == 150

    def test_alpha_scales_growth(self):
        buf = _buffer()
        buf.restore(ReorderSnapshot(alpha=0.5))
        buf.ingest(100, 1.0, "a")
        buf.ingest(50, 1.0, "b")
        assert buf.ingest(200, 1.0, "c") == ["b"]
        assert buf.k == 75                   # round(150 * 0.5)

    def test_k_capped_at_max_k(self):
        buf = _buffer(max_k=25)
        for ts in _disordered(3, 300, max_lag=200):
            buf.ingest(ts, 1.0, ts)
            assert 0 <= buf.k <= 25

    def test_max_k_zero_releases_every_new_maximum(self):
        buf = _buffer(max_k=0)
        out = _feed(buf, [100, 50, 200])
        assert out == [["e0"], [], ["e1", "e2"]]


# ---------------------------------------------------------------------------
# Ordering invariants
# ---------------------------------------------------------------------------

class TestOrdering:
    def test_fifo_within_timestamp(self):
        buf = _buffer()
        buf.ingest(50, 1.0, "x")
        buf.ingest(10, 1.0, "a")
        buf.ingest(10, 1.0, "b")
        assert buf.ingest(60, 1.0, "y") == ["a", "b"]     # k = 50
        buf.ingest(60, 1.0, "z")                          # same key, later arrival
        assert buf.ingest(200, 1.0, "w") == ["y", "z"]    # k = 140

    def test_discard_policy_output_is_sorted(self):
        buf = _buffer(discard_late_arrivals=True)
        emitted = []
        for ts in _disordered(11, 2_000):
            emitted.extend(buf.ingest(ts, 1.0, ts))
        assert emitted == sorted(emitted)

    def test_last_emitted_never_decreases(self):
        buf = _buffer()
        marks = []
        for ts in _disordered(5, 1_000, max_lag=120):
            buf.ingest(ts, 1.0, ts)
            if buf.last_emitted_timestamp is not None:
                marks.append(buf.last_emitted_timestamp)
        assert marks == sorted(marks)

    def test_every_event_emitted_exactly_once(self):
        buf = _buffer(max_k=1_000)
        timestamps = _disordered(7, 1_500, max_lag=80)
        emitted = []
        for i, ts in enumerate(timestamps):
            emitted.extend(buf.ingest(ts, 1.0, i))
        # a far-future sentinel pushes everything through the capped window
        emitted.extend(buf.ingest(max(timestamps) + 10_000, 1.0, "sentinel"))
        assert sorted(emitted) == list(range(len(timestamps)))
        assert buf.pending == 1
        assert buf.emitted == len(timestamps)


# ---------------------------------------------------------------------------
# Discard policy
# ---------------------------------------------------------------------------

class TestDiscardLateArrivals:
    def test_late_arrivals_are_dropped(self):
        buf = _buffer(discard_late_arrivals=True)
        out = _feed(buf, [100, 105, 102, 150, 101])
        assert out == [["e0"], ["e1"], [], ["e3"], []]
        assert buf.dropped == 2
        assert buf.pending == 0

    def test_equal_to_high_water_mark_is_kept(self):
        buf = _buffer(discard_late_arrivals=True)
        buf.ingest(100, 1.0, "a")
        buf.ingest(100, 1.0, "b")
        assert buf.dropped == 0
        assert buf.pending == 1

    def test_without_policy_late_arrivals_are_buffered(self):
        buf = _buffer()
        _feed(buf, [100, 105, 102, 150, 101])
        assert buf.dropped == 0
        assert buf.pending == 2                       # 150 and 101

    def test_dropped_events_still_feed_the_samples(self):
        buf = _buffer(discard_late_arrivals=True)
        _feed(buf, [100, 105, 99])
        snap = buf.snapshot()
        assert snap.timestamp_sample == [100, 105, 99]
        assert len(snap.correlation_sample) == 3
        assert snap.counter == 2

    def test_stream_stuck_behind_mark_keeps_sample_bounded(self):
        buf = _buffer(batch_size=15, discard_late_arrivals=True)
        buf.ingest(1_000_000, 0.0, "ahead")
        for ts in range(1_000):
            assert buf.ingest(ts, float(ts), ts) == []
        snap = buf.snapshot()
        assert buf.dropped == 1_000
        assert snap.counter == 1
        assert snap.correlation_sample == [float(ts) for ts in range(984, 1_000)]


# ---------------------------------------------------------------------------
# Batch boundary / alpha recomputation
# ---------------------------------------------------------------------------

class TestBatchBoundary:
    def setup_method(self):
        self.original = AlphaController.update

    def test_sixteenth_event_recomputes_once(self):
        buf = _buffer(batch_size=15)
        with patch.object(AlphaController, "update", autospec=True,
                          side_effect=self.original) as spy:
            _feed(buf, range(1, 16))
            assert spy.call_count == 0
            assert len(buf.snapshot().correlation_sample) == 15

            k_before = buf.k
            buf.ingest(5, 1.0, "late")              # 16th, below the maximum
            assert spy.call_count == 1
            assert buf.k == k_before

        snap = buf.snapshot()
        assert snap.counter == 0
        assert snap.correlation_sample == []
        assert len(snap.timestamp_sample) == 16     # retained across batches

    def test_first_recompute_assumes_full_coverage(self):
        buf = _buffer(batch_size=15)
        with patch.object(AlphaController, "update", autospec=True,
                          side_effect=self.original) as spy:
            _feed(buf, range(1, 17))
        _, threshold, runtime = spy.call_args.args
        assert runtime == 1.0
        assert threshold == 0.0                     # constant correlation values

    def test_recompute_changes_alpha_not_k(self):
        buf = _buffer(batch_size=15)
        _feed(buf, [100, 40, 200])                  # k = 160
        k = buf.k
        for i in range(12):
            buf.ingest(150, float(i % 3), i)        # no new maximum
        assert buf.alpha == 1.0
        buf.ingest(150, 2.0, "16th")
        assert buf.alpha != 1.0
        assert buf.k == k
        assert buf.coverage_window == min(round(buf.alpha * k), k)

    def test_second_recompute_measures_runtime_coverage(self):
        buf = _buffer(batch_size=15)
        with patch.object(AlphaController, "update", autospec=True,
                          side_effect=self.original) as spy:
            _feed(buf, [100, 40, 200])
            for i in range(12):
                buf.ingest(150, float(i % 3), i)
            # 210 closes the first batch, the next 16 close the second
            _feed(buf, [210 + i for i in range(17)])
        assert spy.call_count == 2
        _, _, runtime = spy.call_args.args
        assert 0.0 <= runtime <= 1.0


# ---------------------------------------------------------------------------
# Timeout flush
# ---------------------------------------------------------------------------

class TestTimeoutFlush:
    def setup_method(self):
        self.scheduler = MagicMock(spec=Scheduler)
        self.buf = _buffer(self.scheduler, now=1_500, timeout=1_000)
        _feed(self.buf, [1_500, 1_000, 1_200])     # 1000 and 1200 wait

    def test_first_ingest_requests_wake(self):
        self.scheduler.notify_at.assert_called_once_with(2_500)
        assert self.buf.next_wake == 2_500

    def test_tick_drains_stalled_stream(self):
        assert self.buf.pending == 2
        assert self.buf.tick(2_600) == ["e1", "e2"]
        assert self.buf.pending == 0
        assert self.buf.last_emitted_timestamp == 1_500
        self.scheduler.cancel.assert_called_once()

    def test_partial_flush_rearms(self):
        assert self.buf.tick(2_100) == ["e1"]       # only 1000 < 2100 - 1000
        self.scheduler.notify_at.assert_called_with(3_500)
        self.scheduler.cancel.assert_not_called()

    def test_key_at_cutoff_is_kept(self):
        assert self.buf.tick(2_000) == []           # 1000 is not < 1000

    def test_tick_without_timeout_is_noop(self):
        buf = _buffer()
        _feed(buf, [100, 50])
        assert buf.tick(10**12) == []
        assert buf.pending == 1

    def test_flush_merges_both_buffers_in_key_order(self):
        buf = _buffer(timeout=0)
        buf.ingest(100, 1.0, "a")
        buf.ingest(50, 1.0, "b")
        buf.ingest(300, 1.0, "c")                   # k 250, releases b
        buf.ingest(310, 1.0, "d")                   # secondary: 300, 310
        buf.ingest(200, 1.0, "e")                   # primary: 200
        buf.ingest(300, 1.0, "f")                   # primary: 200, 300
        assert buf.tick(1_000) == ["e", "c", "f", "d"]

    def test_flush_advances_discard_mark(self):
        buf = _buffer(timeout=0, discard_late_arrivals=True)
        _feed(buf, [100, 150, 150, 300, 250])      # k 150; 300 and 250 wait
        assert buf.last_emitted_timestamp == 150
        assert buf.tick(1_000) == ["e4", "e3"]
        assert buf.last_emitted_timestamp == 300
        assert buf.ingest(280, 1.0, "late") == []
        assert buf.dropped == 1

    def test_ingest_after_drain_rearms_on_grid(self):
        self.buf.tick(2_600)
        buf = ReorderBuffer(self.buf.config, self.scheduler, clock=lambda: 4_100)
        buf.restore(self.buf.snapshot())
        buf.ingest(4_000, 1.0, "next")
        # 2500 + ceil(1600 / 1000) * 1000
        self.scheduler.notify_at.assert_called_with(4_500)


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class TestConcurrency:
    def test_concurrent_ingest_and_tick_lose_nothing(self):
        buf = _buffer(timeout=50)
        emitted = []
        emitted_lock = threading.Lock()
        stop = threading.Event()

        def producer(worker):
            rng = random.Random(worker)
            for i in range(500):
                out = buf.ingest(rng.randint(0, 10_000), 1.0, (worker, i))
                with emitted_lock:
                    emitted.extend(out)

        def ticker():
            now = 0
            while not stop.is_set():
                now += 100
                out = buf.tick(now)
                with emitted_lock:
                    emitted.extend(out)

        workers = [threading.Thread(target=producer, args=(w,)) for w in range(4)]
        tick_thread = threading.Thread(target=ticker)
        tick_thread.start()
        for t in workers:
            t.start()
        for t in workers:
            t.join()
        stop.set()
        tick_thread.join()

        emitted.extend(buf.tick(10**9))
        assert len(emitted) == 2_000
        assert set(emitted) == {(w, i) for w in range(4) for i in range(500)}
        assert buf.pending == 0
