"""Prometheus disorder exporter: compares the raw and the reordered stream.

Subscribes to both raw-api-events and ordered-api-events and tracks, per
topic and partition, how far behind the running maximum timestamp each
event arrives.  Grafana plots the two side by side: the raw topic shows the
disorder the network introduced, the ordered topic shows what the reorder
service let through.

Usage:
    python -m exporter.main
    python -m exporter.main --bootstrap-servers kafka-1:29092 --port 9090
"""

import argparse
import json
import signal
import sys
import time

from confluent_kafka import Consumer, KafkaError
from prometheus_client import Counter, Histogram, Gauge, start_http_server

# ---------------------------------------------------------------------------
# Disorder metrics
# ---------------------------------------------------------------------------
events_total = Counter(
    "disorder_events_total",
    "Events observed per topic",
    ["topic"],
)
inversions_total = Counter(
    "disorder_inversions_total",
    "Events whose timestamp is below the partition's running maximum",
    ["topic"],
)
# Only inversions are observed; in-order events would pile up in the
# zero bucket and drown the tail.
lateness = Histogram(
    "disorder_lateness_milliseconds",
    "How far behind the running maximum an inverted event arrived",
    ["topic"],
    buckets=[1, 10, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000],
)

# ---------------------------------------------------------------------------
# Throughput gauge (updated every second)
# ---------------------------------------------------------------------------
events_per_second = Gauge(
    "disorder_events_per_second",
    "Current event processing rate across both topics",
)
export_errors_total = Counter(
    "disorder_export_errors_total",
    "JSON parse or Kafka consumer errors in the exporter",
)

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down exporter...")
    running = False


signal.signal(signal.SIGINT, _shutdown)
signal.signal(signal.SIGTERM, _shutdown)


# ---------------------------------------------------------------------------
# Disorder tracking
# ---------------------------------------------------------------------------

class DisorderTracker:
    """Running maximum timestamp per (topic, partition)."""

    __slots__ = ("_high_water",)

    def __init__(self):
        self._high_water: dict[tuple[str, int], int] = {}

    def observe(self, topic: str, partition: int, timestamp: int) -> int:
        """Return how far *timestamp* is behind the running max (0 if not behind)."""
        key = (topic, partition)
        last = self._high_water.get(key)
        if last is None or timestamp >= last:
            self._high_water[key] = timestamp
            return 0
        return last - timestamp


def _process_event(tracker: DisorderTracker, topic: str, partition: int, event: dict):
    """Update Prometheus metrics for one event from either topic."""
    events_total.labels(topic=topic).inc()
    behind = tracker.observe(topic, partition, int(event["timestamp"]))
    if behind > 0:
        inversions_total.labels(topic=topic).inc()
        lateness.labels(topic=topic).observe(behind)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="Prometheus disorder exporter")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--raw-topic", default="raw-api-events")
    parser.add_argument("--ordered-topic", default="ordered-api-events")
    parser.add_argument(
        "--port", type=int, default=9090, help="Prometheus metrics HTTP port",
    )
    args = parser.parse_args()

    start_http_server(args.port)
    print(f"Prometheus metrics server started on :{args.port}")

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": "disorder-exporter",
        "auto.offset.reset": "latest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([args.raw_topic, args.ordered_topic])

    tracker = DisorderTracker()
    count = 0
    window_start = time.time()
    window_count = 0

    print(f"Exporter consuming from {args.raw_topic} + {args.ordered_topic} ...")

    try:
        while running:
            msg = consumer.poll(1.0)
            if msg is None:
                continue
            if msg.error():
                if msg.error().code() == KafkaError._PARTITION_EOF:
                    continue
                export_errors_total.inc()
                print(f"Consumer error: {msg.error()}", file=sys.stderr)
                continue

            try:
                data = json.loads(msg.value().decode("utf-8"))
                _process_event(tracker, msg.topic(), msg.partition(), data)
            except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, ValueError):
                export_errors_total.inc()
                continue

            count += 1
            window_count += 1

            # Update EPS gauge roughly every second
            now = time.time()
            elapsed = now - window_start
            if elapsed >= 1.0:
                events_per_second.set(window_count / elapsed)
                window_start = now
                window_count = 0

            if count % 5000 == 0:
                print(f"  ... {count} messages exported to metrics")
    finally:
        consumer.close()
        print(f"Exporter done. {count} messages processed.")


if __name__ == "__main__":
    main()
