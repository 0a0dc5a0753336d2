"""Reorder engine: feeds event dicts into per-partition reorder buffers.

Pure business logic, no Kafka dependency.  The service feeds events in and
publishes whatever comes back, in order.

State: dict[partition, ReorderBuffer], created on first event for that
partition.  Each buffer gets its own PollingScheduler so the poll loop can
tell which partitions want a timeout flush.
"""

import threading
import time

from reorder.buffer import ReorderBuffer
from reorder.config import StreamConfig
from reorder.schedule import PollingScheduler


class MalformedEvent(ValueError):
    """Event is missing its ordering key or carries a non-numeric one."""


class ReorderEngine:

    def __init__(self, config: StreamConfig | None = None, clock=None):
        self.config = config or StreamConfig()
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._lock = threading.Lock()
        self._buffers: dict[str, ReorderBuffer] = {}
        self._schedulers: dict[str, PollingScheduler] = {}

    @property
    def partitions(self) -> list[str]:
        return list(self._buffers)

    def buffer_for(self, partition) -> ReorderBuffer:
        key = str(partition)
        with self._lock:
            buf = self._buffers.get(key)
            if buf is None:
                scheduler = PollingScheduler()
                buf = ReorderBuffer(self.config.reorder, scheduler, self._clock)
                self._buffers[key] = buf
                self._schedulers[key] = scheduler
            return buf

    def extract(self, event: dict) -> tuple[int, float]:
        """Pull (timestamp, correlation value) out of *event*.

        A missing correlation field counts as 0.0: the event still gets
        ordered, it just tells the controller nothing.
        """
        try:
            timestamp = int(event[self.config.timestamp_field])
        except KeyError:
            raise MalformedEvent(
                f"event has no '{self.config.timestamp_field}' field"
            ) from None
        except (TypeError, ValueError) as e:
            raise MalformedEvent(f"bad timestamp: {e}") from None
        try:
            value = float(event.get(self.config.correlation_field, 0.0))
        except (TypeError, ValueError) as e:
            raise MalformedEvent(f"bad correlation value: {e}") from None
        return timestamp, value

    def evaluate(self, event: dict, partition=0) -> list[dict]:
        """Feed one event, get back zero or more events in timestamp order."""
        timestamp, value = self.extract(event)
        return self.buffer_for(partition).ingest(timestamp, value, event)

    def tick(self, now: int | None = None) -> dict[str, list[dict]]:
        """Timeout-flush every partition whose wake time has come.

        Returns {partition: released events} for partitions that released
        anything.
        """
        now = self._clock() if now is None else now
        with self._lock:
            due = [(key, self._buffers[key]) for key, s in self._schedulers.items()
                   if s.due(now)]
        flushed = {}
        for key, buf in due:
            released = buf.tick(now)
            if released:
                flushed[key] = released
        return flushed
