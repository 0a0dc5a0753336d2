"""Simple consumer for checking the ordered output of the reorder service.

Counts timestamp inversions per partition: an inversion is an event whose
timestamp is below the largest one already seen on that partition.  A
healthy reorder service with discard_late_arrivals keeps this at zero.

Usage:
    python consumer.py
    python consumer.py --bootstrap-servers kafka-1:29092 --topic ordered-api-events
"""

import argparse
import json
import signal

from confluent_kafka import Consumer

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down consumer...")
    running = False


signal.signal(signal.SIGINT, _shutdown)
signal.signal(signal.SIGTERM, _shutdown)


def main():
    parser = argparse.ArgumentParser(description="Ordered stream verifier")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="ordered-api-events")
    parser.add_argument("--group-id", default="order-verifier")
    args = parser.parse_args()

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": args.group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([args.topic])

    count = 0
    inversions = 0
    high_water: dict[int, int] = {}
    try:
        while running:
            msg = consumer.poll(1.0)
            if msg is None:
                continue
            if msg.error():
                print(f"Consumer error: {msg.error()}")
                continue

            event = json.loads(msg.value().decode("utf-8"))
            count += 1
            partition = msg.partition()
            ts = event["timestamp"]
            last = high_water.get(partition)
            if last is not None and ts < last:
                inversions += 1
                print(f"[partition={partition}] INVERSION ts={ts} "
                      f"behind={last - ts}ms  source={event.get('source_id')}")
            else:
                high_water[partition] = ts

            if count % 500 == 0:
                print(f"  ... {count} events consumed, {inversions} inversions")
    finally:
        consumer.close()
        print(f"Done. {count} events consumed, {inversions} inversions.")


if __name__ == "__main__":
    main()
