"""Tests for ScheduleGate and PollingScheduler: arming, re-arming, realignment."""

from unittest.mock import MagicMock

import pytest

from reorder.schedule import FLUSH_INTERVAL, PollingScheduler, ScheduleGate, Scheduler


def _gate(timeout=1000):
    scheduler = MagicMock(spec=Scheduler)
    return ScheduleGate(timeout, scheduler), scheduler


class TestDisabled:
    def test_no_wake_without_timeout(self):
        gate, scheduler = _gate(timeout=-1)
        gate.on_ingest(10_000)
        assert not gate.enabled
        assert gate.last_scheduled == -1
        scheduler.notify_at.assert_not_called()

    def test_gate_without_scheduler_still_tracks_time(self):
        gate = ScheduleGate(500)
        gate.on_ingest(1_000)
        assert gate.last_scheduled == 1_500


class TestArming:
    def test_first_ingest_arms_now_plus_timeout(self):
        gate, scheduler = _gate()
        gate.on_ingest(10_000)
        scheduler.notify_at.assert_called_once_with(11_000)
        assert gate.last_scheduled == 11_000

    def test_later_ingests_do_not_rearm(self):
        gate, scheduler = _gate()
        gate.on_ingest(10_000)
        gate.on_ingest(10_400)
        gate.on_ingest(12_000)
        assert scheduler.notify_at.call_count == 1

    def test_pending_flush_rearms_one_interval_later(self):
        gate, scheduler = _gate()
        gate.on_ingest(10_000)
        gate.after_flush(pending=True)
        scheduler.notify_at.assert_called_with(11_000 + FLUSH_INTERVAL)
        gate.after_flush(pending=True)
        scheduler.notify_at.assert_called_with(11_000 + 2 * FLUSH_INTERVAL)


class TestDrain:
    def setup_method(self):
        self.gate, self.scheduler = _gate()
        self.gate.on_ingest(10_000)          # armed at 11_000
        self.gate.after_flush(pending=False)

    def test_drain_cancels_and_waits(self):
        self.scheduler.cancel.assert_called_once()
        assert self.gate.needs_scheduling

    def test_next_ingest_realigns_to_grid(self):
        self.gate.on_ingest(13_500)
        # ceil(2500 / 1000) = 3 steps past 11_000
        self.scheduler.notify_at.assert_called_with(14_000)
        assert not self.gate.needs_scheduling

    def test_realigned_wake_on_grid_point(self):
        self.gate.on_ingest(13_000)
        self.scheduler.notify_at.assert_called_with(13_000)

    def test_realign_happens_once(self):
        self.gate.on_ingest(13_500)
        self.gate.on_ingest(13_600)
        assert self.scheduler.notify_at.call_count == 2   # initial + realign


class TestPollingScheduler:
    def test_nothing_due_until_armed(self):
        s = PollingScheduler()
        assert not s.due(10**12)

    def test_due_at_and_after_wake_time(self):
        s = PollingScheduler()
        s.notify_at(5_000)
        assert not s.due(4_999)
        assert s.due(5_000)
        assert s.due(9_000)

    def test_cancel_clears_wake(self):
        s = PollingScheduler()
        s.notify_at(5_000)
        s.cancel()
        assert s.wake_at is None
        assert not s.due(5_000)

    def test_base_scheduler_is_abstract(self):
        with pytest.raises(NotImplementedError):
            Scheduler().notify_at(1)
        with pytest.raises(NotImplementedError):
            Scheduler().cancel()
