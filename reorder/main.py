"""Reorder service: reads out-of-order events, republishes them in timestamp order.

Consumes from raw-api-events, runs every event through the per-partition
K-Slack buffer and produces whatever the buffer releases to the ordered
topic, on the same partition number.  The poll loop is also the timer: on
every iteration partitions whose timeout flush is due get ticked.

Usage:
    python -m reorder.main
    python -m reorder.main --config config/reorder.yml --metrics-port 9091
    python -m reorder.main --bootstrap-servers kafka-1:29092 --input-topic raw-api-events
"""

import argparse
import json
import signal
import sys

from confluent_kafka import Consumer, Producer, KafkaError
from confluent_kafka.admin import AdminClient, NewTopic
from prometheus_client import start_http_server

from reorder import metrics
from reorder.config import StreamConfig, load_config
from reorder.engine import MalformedEvent, ReorderEngine

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down reorder service...")
    running = False


signal.signal(signal.SIGINT, _shutdown)
signal.signal(signal.SIGTERM, _shutdown)


def _ensure_topic(bootstrap_servers, topic):
    """Create the output topic if it doesn't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    fs = admin.create_topics([NewTopic(topic, num_partitions=3, replication_factor=3)])
    for t, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{t}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{t}' already exists")
            else:
                raise


def _publish(producer, topic, partition, events):
    for event in events:
        producer.produce(
            topic,
            value=json.dumps(event).encode("utf-8"),
            partition=int(partition),
        )


def main():
    parser = argparse.ArgumentParser(description="Adaptive K-Slack reorder service")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--input-topic", default="raw-api-events")
    parser.add_argument("--output-topic", default="ordered-api-events")
    parser.add_argument("--group-id", default="reorder-service")
    parser.add_argument("--config", help="YAML config (stream + reorder sections)")
    parser.add_argument(
        "--metrics-port", type=int, default=9091,
        help="Prometheus metrics HTTP port (0 disables)",
    )
    args = parser.parse_args()

    config = load_config(args.config) if args.config else StreamConfig()
    engine = ReorderEngine(config)

    _ensure_topic(args.bootstrap_servers, args.output_topic)
    if args.metrics_port:
        start_http_server(args.metrics_port)
        print(f"Prometheus metrics server started on :{args.metrics_port}")

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": args.group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([args.input_topic])

    producer = Producer({"bootstrap.servers": args.bootstrap_servers})

    consumed = 0
    emitted = 0
    reorder = config.reorder

    print(f"Reorder service started  input={args.input_topic}  "
          f"output={args.output_topic}  key={config.timestamp_field}  "
          f"correlation={config.correlation_field}  batch={reorder.batch_size}  "
          f"timeout={reorder.timeout}")

    try:
        while running:
            for partition, released in engine.tick().items():
                buf = engine.buffer_for(partition)
                metrics.observe(partition, buf, len(released), "timeout", buf.dropped)
                _publish(producer, args.output_topic, partition, released)
                emitted += len(released)

            msg = consumer.poll(1.0)
            if msg is None:
                continue
            if msg.error():
                if msg.error().code() == KafkaError._PARTITION_EOF:
                    continue
                print(f"Consumer error: {msg.error()}", file=sys.stderr)
                continue

            try:
                event = json.loads(msg.value().decode("utf-8"))
                partition = str(msg.partition())
                buf = engine.buffer_for(partition)
                dropped_before = buf.dropped
                released = engine.evaluate(event, partition)
            except (json.JSONDecodeError, UnicodeDecodeError, MalformedEvent) as e:
                metrics.rejected_events.inc()
                print(f"Rejected message at offset {msg.offset()}: {e}", file=sys.stderr)
                continue
            consumed += 1

            metrics.observe(partition, buf, len(released), "window", dropped_before)
            _publish(producer, args.output_topic, partition, released)
            emitted += len(released)
            producer.poll(0)

            if consumed % 1000 == 0:
                producer.flush()

            if consumed % 500 == 0:
                print(f"  ... {consumed} consumed, {emitted} emitted  "
                      f"[partition {partition}: k={buf.k} alpha={buf.alpha:.3f} "
                      f"buffered={buf.pending} dropped={buf.dropped}]")
    finally:
        producer.flush()
        consumer.close()
        pending = sum(engine.buffer_for(p).pending for p in engine.partitions)
        print(f"Done. {consumed} events consumed, {emitted} emitted, "
              f"{pending} still buffered.")


if __name__ == "__main__":
    main()
