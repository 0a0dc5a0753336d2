"""Prometheus metrics for the reorder service.

Each metric auto-registers in the global REGISTRY on construction;
start_http_server() in reorder.main serves them on /metrics.
"""

from prometheus_client import Counter, Gauge

from reorder.buffer import ReorderBuffer

events_ingested = Counter(
    "reorder_events_ingested_total",
    "Events handed to a reorder buffer",
    ["partition"],
)
events_emitted = Counter(
    "reorder_events_emitted_total",
    "Events released in timestamp order",
    ["partition", "trigger"],  # trigger: window | timeout
)
late_arrivals_dropped = Counter(
    "reorder_late_arrivals_dropped_total",
    "Events discarded for arriving behind the emitted high-water mark",
    ["partition"],
)
rejected_events = Counter(
    "reorder_rejected_events_total",
    "Messages that could not be decoded or had no usable timestamp",
)

window_size = Gauge(
    "reorder_window_size",
    "Current K-Slack window size (timestamp units)",
    ["partition"],
)
alpha = Gauge(
    "reorder_alpha",
    "Current window multiplier from the PD controller",
    ["partition"],
)
buffered_events = Gauge(
    "reorder_buffered_events",
    "Events waiting in the staging buffers",
    ["partition"],
)


def observe(partition: str, buf: ReorderBuffer, released: int, trigger: str,
            dropped_before: int) -> None:
    """Update every per-partition metric after one ingest or tick."""
    if trigger == "window":
        events_ingested.labels(partition=partition).inc()
    if released:
        events_emitted.labels(partition=partition, trigger=trigger).inc(released)
    if buf.dropped > dropped_before:
        late_arrivals_dropped.labels(partition=partition).inc(buf.dropped - dropped_before)
    window_size.labels(partition=partition).set(buf.k)
    alpha.labels(partition=partition).set(buf.alpha)
    buffered_events.labels(partition=partition).set(buf.pending)
