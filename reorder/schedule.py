"""Wake-up scheduling for timeout flushes.

The buffer never waits on a clock.  It tells the host's Scheduler when it
wants the next tick and the host calls ReorderBuffer.tick() at or after
that time.  ScheduleGate owns only the *when*; the flush itself lives in
the buffer.
"""

import math

# Re-arm step after a flush that left events behind.  Same unit as the
# event timestamps (milliseconds for every producer in this repo).
FLUSH_INTERVAL = 1000


class Scheduler:
    """Host-side timer. Subclass and implement notify_at() + cancel()."""

    def notify_at(self, wake_time: int) -> None:
        raise NotImplementedError

    def cancel(self) -> None:
        raise NotImplementedError


class PollingScheduler(Scheduler):
    """Scheduler for poll-loop hosts: remembers the wake time, host asks due()."""

    __slots__ = ("wake_at",)

    def __init__(self):
        self.wake_at: int | None = None

    def notify_at(self, wake_time):
        self.wake_at = wake_time

    def cancel(self):
        self.wake_at = None

    def due(self, now: int) -> bool:
        return self.wake_at is not None and now >= self.wake_at


class ScheduleGate:
    __slots__ = ("timeout", "scheduler", "last_scheduled", "needs_scheduling")

    def __init__(self, timeout: int, scheduler: Scheduler | None = None):
        self.timeout = timeout
        self.scheduler = scheduler
        self.last_scheduled = -1
        # set once a flush drains both buffers; the next ingest re-arms
        self.needs_scheduling = False

    @property
    def enabled(self) -> bool:
        return self.timeout != -1

    def on_ingest(self, now: int) -> None:
        if not self.enabled:
            return
        if self.last_scheduled < 0:
            self._arm(now + self.timeout)
        elif self.needs_scheduling:
            # realign to the one-second grid that started at the first wake
            steps = math.ceil((now - self.last_scheduled) / FLUSH_INTERVAL)
            self._arm(self.last_scheduled + steps * FLUSH_INTERVAL)

    def after_flush(self, pending: bool) -> None:
        if pending:
            self._arm(self.last_scheduled + FLUSH_INTERVAL)
            return
        self.needs_scheduling = True
        if self.scheduler is not None:
            self.scheduler.cancel()

    def _arm(self, wake_time: int) -> None:
        self.last_scheduled = wake_time
        self.needs_scheduling = False
        if self.scheduler is not None:
            self.scheduler.notify_at(wake_time)
