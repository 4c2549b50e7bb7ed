"""Anti-abuse gating service — reads gateway request events, publishes decisions.

Consumes from gateway-requests, runs each request through the AbuseDetector,
and publishes one decision per request to abuse-decisions.  The gateway
reads decisions keyed by request_id and answers blocked requests with the
429 in the decision's ``http`` block.  Prometheus metrics are served on
--metrics-port.

Run several replicas against the same --redis-url to share windows and
penalties; without it each replica keeps its own in-process state.

Usage:
    python -m antiabuse.main --settings antiabuse.yml
    python -m antiabuse.main --bootstrap-servers kafka-1:29092 \\
        --redis-url redis://redis:6379/0 --audit-url postgresql://...
"""

import argparse
import json
import logging
import signal
import sys
import time

from confluent_kafka import Consumer, Producer, KafkaError
from confluent_kafka.admin import AdminClient, NewTopic
from prometheus_client import start_http_server

from antiabuse.audit import DEFAULT_AUDIT_URL
from antiabuse.backends.memory import MemoryBackend
from antiabuse.engine import AbuseDetector
from antiabuse.exceptions import SettingsError
from antiabuse.gate import decision_response
from antiabuse.services import build_services
from antiabuse.settings import FileSettingsProvider, SettingsProvider

# Check the settings file for edits this often (in messages).
_RELOAD_EVERY = 200

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down gating service...")
    running = False


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


def handle_event(detector: AbuseDetector, event: dict) -> dict | None:
    """Run one gateway request event through the detector.

    Returns the decision message, or None for events without a token
    (unauthenticated traffic never reaches the abuse check).
    """
    token_id = event.get("token_id")
    if token_id is None:
        return None

    result = detector.check_request(
        token_id=int(token_id),
        user_id=int(event.get("user_id") or 0),
        group=event.get("group") or "",
        model_name=event.get("model") or "",
        content=event.get("content") or "",
    )
    status, headers, body = decision_response(result)
    return {
        "request_id": event.get("request_id"),
        "token_id": int(token_id),
        "decision": result.to_dict(),
        "http": {"status": status, "headers": headers, "body": body},
        "timestamp": time.time(),
    }


def main():
    parser = argparse.ArgumentParser(description="Anti-abuse gating service")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--input-topic", default="gateway-requests")
    parser.add_argument("--output-topic", default="abuse-decisions")
    parser.add_argument("--group-id", default="antiabuse-gate")
    parser.add_argument("--settings", default=None,
                        help="YAML settings file (re-read when it changes)")
    parser.add_argument("--redis-url", default=None,
                        help="Redis URL; omit to keep state in-process")
    parser.add_argument("--audit-url", default=DEFAULT_AUDIT_URL,
                        help="SQLAlchemy URL for the penalty audit trail")
    parser.add_argument("--backend-timeout", type=float, default=0.5,
                        help="Seconds before a backend call counts as failed")
    parser.add_argument("--sweep-interval", type=float, default=60.0,
                        help="In-process backend sweep interval, seconds")
    parser.add_argument("--metrics-port", type=int, default=9100)
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        settings = FileSettingsProvider(args.settings) if args.settings else SettingsProvider()
    except SettingsError as e:
        print(f"Cannot load settings: {e}", file=sys.stderr)
        sys.exit(2)

    services = build_services(
        settings,
        redis_url=args.redis_url,
        audit_url=args.audit_url,
        backend_timeout=args.backend_timeout,
    )
    if isinstance(services.backend, MemoryBackend):
        services.backend.start_sweeper(args.sweep_interval)

    start_http_server(args.metrics_port)
    print(f"Prometheus metrics server started on :{args.metrics_port}")

    _ensure_topic(args.bootstrap_servers, args.output_topic)

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": args.group_id,
        "auto.offset.reset": "latest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([args.input_topic])

    producer = Producer({"bootstrap.servers": args.bootstrap_servers})

    consumed = 0
    blocked = 0
    current = settings.current()

    print(f"Gating service started  input={args.input_topic}  "
          f"output={args.output_topic}  backend={services.backend.name}  "
          f"enabled={current.enable_anti_abuse}")

    try:
        while running:
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
            except (json.JSONDecodeError, UnicodeDecodeError):
                continue
            consumed += 1

            try:
                decision = handle_event(services.detector, event)
            except (TypeError, ValueError) as e:
                print(f"Malformed request event skipped: {e}", file=sys.stderr)
                continue
            if decision is None:
                continue

            producer.produce(
                args.output_topic,
                key=str(decision["token_id"]).encode(),
                value=json.dumps(decision).encode("utf-8"),
            )
            producer.poll(0)

            verdict = decision["decision"]
            if not verdict["allowed"]:
                blocked += 1
                print(f"BLOCK  token={decision['token_id']:<8} "
                      f"type={verdict['penalty_type']:<10s} "
                      f"score={verdict['abuse_score']:<3d} "
                      f"retry_after={verdict['retry_after']}s")

            if consumed % _RELOAD_EVERY == 0 and isinstance(settings, FileSettingsProvider):
                try:
                    if settings.reload_if_changed():
                        print(f"Settings reloaded from {settings.path}")
                except SettingsError as e:
                    print(f"Settings reload failed, keeping previous: {e}", file=sys.stderr)

            if consumed % 1000 == 0:
                producer.flush()
                print(f"  ... {consumed} requests checked, {blocked} blocked")
    finally:
        producer.flush()
        consumer.close()
        services.close()
        print(f"Done. {consumed} requests checked, {blocked} blocked.")


if __name__ == "__main__":
    main()
