"""Administrative CLI — inspect scores and manage penalties off the hot path.

Point it at the same Redis and audit database as the gating service.
Without --redis-url it runs against a fresh in-process backend, which only
makes sense for the audit-backed commands (penalties, history).

Usage:
    python -m antiabuse.admin --redis-url redis://localhost:6379/0 status 42
    python -m antiabuse.admin penalties --page 2 --page-size 20
    python -m antiabuse.admin history 42
    python -m antiabuse.admin apply 42 --type temp_ban --duration 60 --reason "manual review"
    python -m antiabuse.admin lift 42 --admin-id 1
"""

import argparse
import json
import sys

from antiabuse.audit import DEFAULT_AUDIT_URL
from antiabuse.exceptions import AntiAbuseError
from antiabuse.models import PenaltyStatus, PenaltyType
from antiabuse.services import Services, build_services
from antiabuse.settings import FileSettingsProvider, SettingsProvider


def _status_dict(status: PenaltyStatus) -> dict:
    return {
        "is_penalized": status.is_penalized,
        "penalty_type": status.penalty_type.value if status.penalty_type else "",
        "reason": status.reason,
        "abuse_score": status.abuse_score,
        "expires_at": status.expires_at,
        "rate_limit_rpm": status.rate_limit_rpm,
    }


def _page_dict(entries, total) -> dict:
    return {"penalties": [e.to_dict() for e in entries], "total": total}


def _cmd_score(services: Services, args) -> dict:
    return services.detector.get_abuse_score(args.token_id).to_dict()


def _cmd_status(services: Services, args) -> dict:
    score = services.detector.get_abuse_score(args.token_id)
    status = services.penalty_manager.check_penalty(args.token_id)
    history, total = services.penalty_manager.get_penalty_history(args.token_id, 1, 10)
    return {
        "token_id": args.token_id,
        "abuse_score": score.to_dict(),
        "penalty_status": _status_dict(status),
        "penalty_history": _page_dict(history, total),
    }


def _cmd_penalties(services: Services, args) -> dict:
    entries, total = services.penalty_manager.get_active_penalties(args.page, args.page_size)
    return _page_dict(entries, total)


def _cmd_history(services: Services, args) -> dict:
    entries, total = services.penalty_manager.get_penalty_history(
        args.token_id, args.page, args.page_size,
    )
    return _page_dict(entries, total)


def _cmd_apply(services: Services, args) -> dict:
    state = services.penalty_manager.apply_penalty(
        args.token_id,
        args.type,
        args.reason,
        args.score,
        args.duration,
        user_id=args.user_id,
    )
    return {
        "token_id": state.token_id,
        "penalty_type": state.penalty_type.value,
        "expires_at": state.expires_at,
    }


def _cmd_lift(services: Services, args) -> dict:
    removed = services.penalty_manager.lift_penalty(args.token_id, args.admin_id)
    return {"token_id": args.token_id, "lifted": removed}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Anti-abuse administration")
    parser.add_argument("--settings", default=None, help="YAML settings file")
    parser.add_argument("--redis-url", default=None)
    parser.add_argument("--audit-url", default=DEFAULT_AUDIT_URL)
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("score", help="Current abuse score for a token")
    p.add_argument("token_id", type=int)
    p.set_defaults(func=_cmd_score)

    p = sub.add_parser("status", help="Score, penalty status, and recent history")
    p.add_argument("token_id", type=int)
    p.set_defaults(func=_cmd_status)

    p = sub.add_parser("penalties", help="Active penalties, newest first")
    p.add_argument("--page", type=int, default=1)
    p.add_argument("--page-size", type=int, default=10)
    p.set_defaults(func=_cmd_penalties)

    p = sub.add_parser("history", help="Penalty history for a token")
    p.add_argument("token_id", type=int)
    p.add_argument("--page", type=int, default=1)
    p.add_argument("--page-size", type=int, default=10)
    p.set_defaults(func=_cmd_history)

    p = sub.add_parser("apply", help="Apply a penalty by hand")
    p.add_argument("token_id", type=int)
    p.add_argument("--type", choices=[t.value for t in PenaltyType],
                   default=PenaltyType.TEMP_BAN.value)
    p.add_argument("--reason", default="Manual penalty")
    p.add_argument("--duration", type=int, default=0,
                   help="Minutes; 0 uses the configured temp ban duration")
    p.add_argument("--score", type=int, default=0)
    p.add_argument("--user-id", type=int, default=0)
    p.set_defaults(func=_cmd_apply)

    p = sub.add_parser("lift", help="Lift a token's penalty")
    p.add_argument("token_id", type=int)
    p.add_argument("--admin-id", type=int, default=0)
    p.set_defaults(func=_cmd_lift)

    return parser


def main(argv=None, services: Services | None = None) -> int:
    args = build_parser().parse_args(argv)

    owns_services = services is None
    try:
        if owns_services:
            settings = (FileSettingsProvider(args.settings) if args.settings
                        else SettingsProvider())
            services = build_services(settings, redis_url=args.redis_url,
                                      audit_url=args.audit_url)
        output = args.func(services, args)
    except AntiAbuseError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        if owns_services and services is not None:
            services.close()

    print(json.dumps(output, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
