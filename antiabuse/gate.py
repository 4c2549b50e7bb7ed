"""HTTP shape of an anti-abuse decision.

Framework-neutral: returns (status, headers, body) so any gateway —
the Kafka gating service here, or an ASGI/WSGI middleware in front of the
relay — renders the same 429.
"""

from antiabuse.engine import CheckResult

HTTP_OK = 200
HTTP_TOO_MANY_REQUESTS = 429


def decision_response(result: CheckResult) -> tuple[int, dict, dict | None]:
    """Map a CheckResult to status, headers, and JSON body (None when allowed)."""
    if result.allowed:
        return HTTP_OK, {}, None

    headers = {"Retry-After": str(result.retry_after)}
    body = {
        "error": {
            "message": (f"Request blocked: {result.reason}. "
                        f"Retry after {result.retry_after} seconds."),
            "type": "abuse_detection",
            "code": result.penalty_type,
        }
    }
    return HTTP_TOO_MANY_REQUESTS, headers, body
