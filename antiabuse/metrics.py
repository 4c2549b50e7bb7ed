"""Prometheus metrics for the anti-abuse path.

Each metric registers itself in prometheus_client's global REGISTRY on
import; the gating service exposes them with start_http_server().
Token IDs are never labels.
"""

from prometheus_client import Counter, Histogram

# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------
# outcome: disabled | whitelisted | penalized | new_penalty | warning |
#          allowed | fail_open
decisions_total = Counter(
    "antiabuse_decisions_total",
    "check_request outcomes",
    ["outcome"],
)
check_latency = Histogram(
    "antiabuse_check_latency_seconds",
    "Time spent in check_request, backend round-trips included",
    buckets=[0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)
abuse_scores = Histogram(
    "antiabuse_score",
    "Composite abuse score at decision time",
    buckets=[0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100],
)

# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------
test_content_total = Counter(
    "antiabuse_test_content_total",
    "Requests classified as probe content",
)

# ---------------------------------------------------------------------------
# Penalties
# ---------------------------------------------------------------------------
penalties_applied_total = Counter(
    "antiabuse_penalties_applied_total",
    "Penalties applied, automatic and manual",
    ["penalty_type"],
)
penalties_lifted_total = Counter(
    "antiabuse_penalties_lifted_total",
    "Penalties lifted by an administrator",
)

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
# operation: record | penalty_check | score | penalty_apply
storage_errors_total = Counter(
    "antiabuse_storage_errors_total",
    "Backend or audit failures absorbed by fail-open",
    ["operation"],
)
