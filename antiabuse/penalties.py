"""Penalty lifecycle — apply, check, lift, list.

Working state (one PenaltyState per token) lives in the storage backend
and is what enforcement reads.  Every application also appends a row to
the relational audit trail.  The two writes aren't transactional: if the
audit write fails after the working state landed, the penalty still
stands and the gap is logged for reconciliation.

    None ──apply──▶ rate_limit | temp_ban | perm_ban ──lift / expiry──▶ None

Expiry is implicit: an expired state reads as "not penalized" whether or
not the backend has deleted it yet.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from antiabuse import metrics
from antiabuse.audit import AuditStore
from antiabuse.backends import Backend
from antiabuse.exceptions import StorageError
from antiabuse.models import PenaltyAuditEntry, PenaltyState, PenaltyStatus, PenaltyType
from antiabuse.settings import SecuritySettings, SettingsProvider

logger = logging.getLogger(__name__)

# "Permanent" bans still carry an expiry and share the TTL path with every
# other penalty.
PERM_BAN_SECONDS = 365 * 24 * 60 * 60

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def _page_bounds(page: int, page_size: int) -> tuple[int, int]:
    page = max(1, page)
    if page_size < 1:
        page_size = DEFAULT_PAGE_SIZE
    return page, min(page_size, MAX_PAGE_SIZE)


def _utc(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class PenaltyManager:

    def __init__(self, backend: Backend, audit: AuditStore,
                 settings: SettingsProvider):
        self.backend = backend
        self.audit = audit
        self.settings = settings

    def expiry_for(self, penalty_type: PenaltyType, duration_minutes: int,
                   settings: SecuritySettings, now: float) -> float:
        if penalty_type is PenaltyType.PERM_BAN:
            return now + PERM_BAN_SECONDS
        if duration_minutes <= 0:
            duration_minutes = settings.temp_ban_duration_minutes
        return now + duration_minutes * 60

    def apply_penalty(self, token_id: int, penalty_type: PenaltyType | str,
                      reason: str, abuse_score: int, duration_minutes: int = 0,
                      user_id: int = 0, now: float | None = None) -> PenaltyState:
        """Put a token under penalty, replacing whatever it had.

        Raises InvalidPenaltyError for an unknown type and StorageError if
        the working state can't be written.  An audit failure after that
        point is logged, not raised.
        """
        penalty_type = PenaltyType.parse(penalty_type)
        settings = self.settings.current()
        now = time.time() if now is None else now

        state = PenaltyState(
            token_id=token_id,
            penalty_type=penalty_type,
            reason=reason,
            abuse_score=abuse_score,
            applied_at=now,
            expires_at=self.expiry_for(penalty_type, duration_minutes, settings, now),
            rate_limit_rpm=settings.rate_limit_requests,
        )
        self.backend.set_penalty(state, ttl_seconds=state.expires_at - now)
        metrics.penalties_applied_total.labels(penalty_type=penalty_type.value).inc()

        logger.info(
            "penalty applied token=%s type=%s reason=%r score=%d expires=%s",
            token_id, penalty_type.value, reason, abuse_score,
            _utc(state.expires_at).isoformat(),
        )

        entry = PenaltyAuditEntry(
            token_id=token_id,
            user_id=user_id,
            penalty_type=penalty_type,
            reason=reason,
            abuse_score=abuse_score,
            created_at=_utc(now),
            expires_at=None if penalty_type is PenaltyType.PERM_BAN else _utc(state.expires_at),
        )
        try:
            self.audit.record(entry)
        except StorageError as e:
            logger.error(
                "penalty audit write failed, working state kept; reconcile "
                "token=%s type=%s: %s", token_id, penalty_type.value, e,
            )
        return state

    def check_penalty(self, token_id: int, now: float | None = None) -> PenaltyStatus:
        """Current status. Read-only: an expired state is reported clear but
        left for the backend's TTL or sweep to remove."""
        state = self.backend.get_penalty(token_id)
        now = time.time() if now is None else now
        if state is None or state.is_expired(now):
            return PenaltyStatus.clear()
        return PenaltyStatus.from_state(state)

    def lift_penalty(self, token_id: int, lifted_by: int = 0) -> bool:
        """Clear the token's penalty. Lifting nothing is fine.

        Returns True if there was working state to remove.  The audit stamp
        goes on every open row for the token, so duplicate rows from
        concurrent applies are closed together.
        """
        removed = self.backend.delete_penalty(token_id)
        try:
            lifted_rows = self.audit.mark_lifted(token_id, lifted_by)
        except StorageError as e:
            logger.error(
                "penalty lift audit failed, working state already cleared; "
                "reconcile token=%s lifted_by=%s: %s", token_id, lifted_by, e,
            )
            lifted_rows = 0
        if removed or lifted_rows:
            metrics.penalties_lifted_total.inc()
            logger.info("penalty lifted token=%s by=%s", token_id, lifted_by)
        return removed

    def get_active_penalties(self, page: int = 1,
                             page_size: int = DEFAULT_PAGE_SIZE) -> tuple[list[PenaltyAuditEntry], int]:
        page, page_size = _page_bounds(page, page_size)
        return self.audit.active(page, page_size)

    def get_penalty_history(self, token_id: int, page: int = 1,
                            page_size: int = DEFAULT_PAGE_SIZE) -> tuple[list[PenaltyAuditEntry], int]:
        page, page_size = _page_bounds(page, page_size)
        return self.audit.history(token_id, page, page_size)

    def working_penalties(self, now: float | None = None) -> list[PenaltyState]:
        """Unexpired working state straight from the backend, newest first.

        Differs from get_active_penalties() after a restart of the in-process
        backend (working state gone, audit rows still open).
        """
        now = time.time() if now is None else now
        states = [s for s in self.backend.iter_penalties() if not s.is_expired(now)]
        return sorted(states, key=lambda s: s.applied_at, reverse=True)
