"""Out-of-order API telemetry generator.

Simulates API gateways that stamp each request with its event time and
ship it over links with jittery, occasionally very slow delivery.  Events
reach Kafka in delivery order, not event order; that disorder is what the
reorder service has to undo.

Usage:
    python producer.py
    python producer.py --sources 6 --stragglers 2 --eps 100
    python producer.py --topic raw-api-events --partitions 1
"""

import argparse
import heapq
import itertools
import json
import random
import signal
import time
import uuid
from dataclasses import dataclass

from confluent_kafka import Producer
from confluent_kafka.admin import AdminClient, NewTopic

ENDPOINTS = ["/v1/messages", "/v1/complete", "/v1/embeddings"]

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down generator...")
    running = False


signal.signal(signal.SIGINT, _shutdown)   # Ctrl+C (local dev)
signal.signal(signal.SIGTERM, _shutdown)  # docker stop / k8s pod termination


# ---------------------------------------------------------------------------
# Source profiles
# ---------------------------------------------------------------------------

@dataclass
class Source:
    source_id: str
    role: str               # steady | straggler
    weight: float           # relative share of traffic
    delay_lo_ms: int        # usual delivery delay range
    delay_hi_ms: int
    spike_rate: float       # fraction of events stuck behind a slow link
    spike_ms: int           # extra delay for those
    latency_mean_ms: float  # the correlation field the reorderer tunes for


def _create_sources(n_steady, n_stragglers):
    """Build the gateway pool: mostly steady links plus a few bad ones."""
    sources = []
    sid = 0

    # --- Steady gateways: small jitter, rare spikes ---
    for _ in range(n_steady):
        sid += 1
        sources.append(Source(
            source_id=f"gw_{sid:03d}", role="steady",
            weight=random.uniform(1.0, 3.0),
            delay_lo_ms=5, delay_hi_ms=80,
            spike_rate=0.002, spike_ms=1_500,
            latency_mean_ms=random.uniform(300, 900),
        ))

    # --- Stragglers: wide jitter, frequent multi-second stalls ---
    for _ in range(n_stragglers):
        sid += 1
        sources.append(Source(
            source_id=f"gw_{sid:03d}", role="straggler",
            weight=random.uniform(0.5, 1.5),
            delay_lo_ms=50, delay_hi_ms=1_200,
            spike_rate=0.05, spike_ms=6_000,
            latency_mean_ms=random.uniform(800, 2_500),
        ))

    return sources


# ---------------------------------------------------------------------------
# Event generation
# ---------------------------------------------------------------------------

def _make_event(source: Source, now_ms: int) -> dict:
    """One request record, stamped with the time it happened at the gateway."""
    return {
        "event_type": "api_request",
        "timestamp": now_ms,
        "request_id": f"req_{uuid.uuid4().hex[:12]}",
        "source_id": source.source_id,
        "endpoint": random.choice(ENDPOINTS),
        "latency_ms": max(1, int(random.gauss(source.latency_mean_ms,
                                              source.latency_mean_ms / 4))),
        "status_code": 200 if random.random() > 0.01 else 500,
    }


def _delivery_delay(source: Source) -> int:
    """How long the event spends on the wire before Kafka sees it."""
    delay = random.randint(source.delay_lo_ms, source.delay_hi_ms)
    if random.random() < source.spike_rate:
        delay += random.randint(source.spike_ms // 2, source.spike_ms)
    return delay


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

def _ensure_topics(bootstrap_servers, topics, partitions):
    """Create Kafka topics if they don't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    new_topics = [NewTopic(t, num_partitions=partitions, replication_factor=3)
                  for t in topics]
    fs = admin.create_topics(new_topics)
    for topic, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{topic}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{topic}' already exists")
            else:
                raise


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="Out-of-order telemetry generator")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="raw-api-events")
    parser.add_argument("--partitions", type=int, default=3)
    parser.add_argument("--sources", type=int, default=6)
    parser.add_argument("--stragglers", type=int, default=1)
    parser.add_argument("--eps", type=float, default=50, help="Target events/sec")
    args = parser.parse_args()

    sources = _create_sources(args.sources, args.stragglers)
    weights = [s.weight for s in sources]

    print(f"Generating to topic '{args.topic}' at ~{args.eps} events/sec")
    print(f"Sources: {len(sources)} total")
    for s in sources:
        print(f"  {s.source_id}  {s.role:<10s} delay={s.delay_lo_ms}-{s.delay_hi_ms}ms  "
              f"spikes={s.spike_rate:.1%}  latency~{s.latency_mean_ms:.0f}ms")

    _ensure_topics(args.bootstrap_servers, [args.topic], args.partitions)

    producer = Producer({
        "bootstrap.servers": args.bootstrap_servers,
        "acks": "all",
        "client.id": "out-of-order-generator",
    })

    # events in flight: (deliver_at_ms, seq, event)
    in_flight = []
    seq = itertools.count()
    count = 0
    delay = 1.0 / args.eps

    while running:
        now_ms = int(time.time() * 1000)
        source = random.choices(sources, weights=weights, k=1)[0]
        event = _make_event(source, now_ms)
        heapq.heappush(in_flight, (now_ms + _delivery_delay(source), next(seq), event))

        while in_flight and in_flight[0][0] <= now_ms:
            _, _, ready = heapq.heappop(in_flight)
            producer.produce(
                topic=args.topic,
                key=ready["source_id"].encode(),
                value=json.dumps(ready),
            )
            count += 1
            if count % 500 == 0:
                print(f"  ... {count} events produced, {len(in_flight)} in flight")
        producer.poll(0)

        time.sleep(delay)

    # deliver whatever is still on the wire, in delivery order
    while in_flight:
        _, _, ready = heapq.heappop(in_flight)
        producer.produce(topic=args.topic, key=ready["source_id"].encode(),
                         value=json.dumps(ready))
        count += 1
    producer.flush()
    print(f"Done. {count} events produced.")


if __name__ == "__main__":
    main()
