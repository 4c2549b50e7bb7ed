"""Gateway request generator.

Simulates authenticated traffic hitting the gateway's abuse check: one
event per relayed request, carrying the token, its owner and group, the
requested model, and the prompt text.  Abusive profiles reproduce the two
patterns the detector scores: model hopping and probe prompts.

Usage:
    python producer.py
    python producer.py --normal 20 --hoppers 2 --probers 2 --resellers 1
    python producer.py --rps 100 --topic gateway-requests
"""

import argparse
import json
import random
import signal
import time
import uuid
from dataclasses import dataclass

from confluent_kafka import Producer
from confluent_kafka.admin import AdminClient, NewTopic

MODELS = [
    "gpt-4o",
    "gpt-4o-mini",
    "o3-mini",
    "claude-sonnet-4-20250514",
    "claude-haiku-35-20241022",
    "claude-opus-4-20250115",
    "gemini-2.0-flash",
    "gemini-1.5-pro",
    "deepseek-chat",
    "deepseek-reasoner",
    "qwen-max",
    "glm-4-plus",
    "moonshot-v1-8k",
    "llama-3.3-70b",
]
PROBES = ["hi", "hello", "test", "ping", "你好", "测试", "Hi!", "ok", "1"]
PROMPTS = [
    "Summarize the following meeting notes into three action items.",
    "Write a SQL query that returns the top five customers by revenue.",
    "Explain the difference between a mutex and a semaphore with an example.",
    "Translate this paragraph into French, keeping the formal register.",
    "Review this function for off-by-one errors and suggest a fix.",
]
GROUPS = ["default", "default", "default", "vip", "internal"]

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down generator...")
    running = False


# ---------------------------------------------------------------------------
# Token profiles
# ---------------------------------------------------------------------------

@dataclass
class Token:
    token_id: int
    user_id: int
    group: str
    role: str  # normal | hopper | prober | reseller
    requests_per_min: float
    models: list
    probe_rate: float  # fraction of requests that send probe content


def _create_tokens(n_normal, n_hoppers, n_probers, n_resellers):
    """Build the token pool. Each token gets a stable owner and group."""
    tokens = []
    tid = 0

    def _next(role, rpm, models, probe_rate, group=None):
        nonlocal tid
        tid += 1
        tokens.append(Token(
            token_id=tid, user_id=1000 + tid,
            group=group or random.choice(GROUPS), role=role,
            requests_per_min=rpm, models=models, probe_rate=probe_rate,
        ))

    # --- Normal: one or two pinned models, real prompts ---
    for _ in range(n_normal):
        _next("normal", random.uniform(2, 40), random.sample(MODELS, k=random.choice([1, 2])), 0.01)

    # --- Hoppers: walk the catalogue, real-looking prompts ---
    for _ in range(n_hoppers):
        _next("hopper", random.uniform(20, 60), list(MODELS), 0.05, group="default")

    # --- Probers: a few models, nearly every prompt is a probe ---
    for _ in range(n_probers):
        _next("prober", random.uniform(20, 60), random.sample(MODELS, k=3), 0.9, group="default")

    # --- Resellers validating upstream channels: both signals at once ---
    for _ in range(n_resellers):
        _next("reseller", random.uniform(40, 120), list(MODELS), 0.8, group="default")

    return tokens


# ---------------------------------------------------------------------------
# Event generation
# ---------------------------------------------------------------------------

def _make_event(token: Token) -> dict:
    """Generate one gateway request event for a token based on its profile."""
    content = random.choice(PROBES) if random.random() < token.probe_rate else random.choice(PROMPTS)
    return {
        "request_id": f"req_{uuid.uuid4().hex[:12]}",
        "timestamp": time.time(),
        "token_id": token.token_id,
        "user_id": token.user_id,
        "group": token.group,
        "model": random.choice(token.models),
        "content": content,
    }


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

def _ensure_topics(bootstrap_servers, topics):
    """Create Kafka topics if they don't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    new_topics = [NewTopic(t, num_partitions=3, replication_factor=3) for t in topics]
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
    parser = argparse.ArgumentParser(description="Gateway request generator")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="gateway-requests")
    parser.add_argument("--normal", type=int, default=8)
    parser.add_argument("--hoppers", type=int, default=1)
    parser.add_argument("--probers", type=int, default=1)
    parser.add_argument("--resellers", type=int, default=1)
    parser.add_argument("--rps", type=float, default=50, help="Target requests/sec")
    args = parser.parse_args()

    signal.signal(signal.SIGINT, _shutdown)   # Ctrl+C (local dev)
    signal.signal(signal.SIGTERM, _shutdown)  # docker stop / k8s pod termination

    tokens = _create_tokens(args.normal, args.hoppers, args.probers, args.resellers)
    weights = [t.requests_per_min for t in tokens]

    print(f"Generating to topic '{args.topic}' at ~{args.rps} requests/sec")
    print(f"Tokens: {len(tokens)} total")
    for t in tokens:
        print(f"  token={t.token_id:<4d} {t.role:<9s} ~{t.requests_per_min:>5.0f} rpm  "
              f"models={len(t.models):<2d} group={t.group}")

    _ensure_topics(args.bootstrap_servers, [args.topic])

    producer = Producer({
        "bootstrap.servers": args.bootstrap_servers,
        "acks": "all",
        "client.id": "gateway-request-generator",
    })

    count = 0
    delay = 1.0 / args.rps

    while running:
        token = random.choices(tokens, weights=weights, k=1)[0]
        event = _make_event(token)

        producer.produce(
            topic=args.topic,
            key=str(event["token_id"]).encode(),
            value=json.dumps(event),
        )
        producer.poll(0)

        count += 1
        if count % 500 == 0:
            print(f"  ... {count} requests produced")

        time.sleep(delay)

    producer.flush()
    print(f"Done. {count} requests produced.")


if __name__ == "__main__":
    main()
