"""Value types shared by the recorders, backends, and penalty manager.

Events and penalty states are stored as sorted-key JSON using the field
names below.  Both backends store the exact same payload strings, so a
deployment can switch from the in-process store to Redis (or read a Redis
dump from a debugging shell) without any translation layer.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from antiabuse.exceptions import InvalidPenaltyError, StorageError


class PenaltyType(str, Enum):
    RATE_LIMIT = "rate_limit"
    TEMP_BAN = "temp_ban"
    PERM_BAN = "perm_ban"

    @classmethod
    def parse(cls, value) -> "PenaltyType":
        try:
            return cls(value)
        except ValueError:
            raise InvalidPenaltyError(f"unknown penalty type: {value!r}") from None


def _decode(payload: str, kind: str) -> dict:
    try:
        data = json.loads(payload)
    except (TypeError, json.JSONDecodeError) as e:
        raise StorageError(f"corrupt {kind} payload: {e}") from e
    if not isinstance(data, dict):
        raise StorageError(f"corrupt {kind} payload: expected an object")
    return data


def _encode(data: dict) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _new_event_id() -> str:
    return uuid.uuid4().hex[:12]


# ---------------------------------------------------------------------------
# Signal events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModelRequestEvent:
    token_id: int
    model_name: str
    timestamp: float
    # Keeps two identical requests in the same instant distinct in a sorted set.
    event_id: str = field(default_factory=_new_event_id, compare=False)

    def to_payload(self) -> str:
        return _encode(asdict(self))

    @classmethod
    def from_payload(cls, payload: str) -> "ModelRequestEvent":
        data = _decode(payload, "model request")
        try:
            return cls(
                token_id=int(data["token_id"]),
                model_name=str(data["model_name"]),
                timestamp=float(data["timestamp"]),
                event_id=str(data.get("event_id", "")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"corrupt model request payload: {e}") from e


@dataclass(frozen=True)
class TestContentEvent:
    __test__ = False  # not a pytest class

    token_id: int
    timestamp: float
    event_id: str = field(default_factory=_new_event_id, compare=False)

    def to_payload(self) -> str:
        return _encode(asdict(self))

    @classmethod
    def from_payload(cls, payload: str) -> "TestContentEvent":
        data = _decode(payload, "test content")
        try:
            return cls(
                token_id=int(data["token_id"]),
                timestamp=float(data["timestamp"]),
                event_id=str(data.get("event_id", "")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"corrupt test content payload: {e}") from e


# ---------------------------------------------------------------------------
# Penalties
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PenaltyState:
    """Working state of the single active penalty on a token."""

    token_id: int
    penalty_type: PenaltyType
    reason: str
    abuse_score: int
    applied_at: float
    expires_at: float
    rate_limit_rpm: int = 0

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_payload(self) -> str:
        data = asdict(self)
        data["penalty_type"] = self.penalty_type.value
        return _encode(data)

    @classmethod
    def from_payload(cls, payload: str) -> "PenaltyState":
        data = _decode(payload, "penalty")
        try:
            return cls(
                token_id=int(data["token_id"]),
                penalty_type=PenaltyType(data["penalty_type"]),
                reason=str(data.get("reason", "")),
                abuse_score=int(data.get("abuse_score", 0)),
                applied_at=float(data["applied_at"]),
                expires_at=float(data["expires_at"]),
                rate_limit_rpm=int(data.get("rate_limit_rpm", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"corrupt penalty payload: {e}") from e


@dataclass(frozen=True)
class PenaltyStatus:
    """Answer to "is this token penalized right now?"."""

    is_penalized: bool
    penalty_type: Optional[PenaltyType] = None
    reason: str = ""
    abuse_score: int = 0
    expires_at: float = 0.0
    rate_limit_rpm: int = 0

    @classmethod
    def clear(cls) -> "PenaltyStatus":
        return cls(is_penalized=False)

    @classmethod
    def from_state(cls, state: PenaltyState) -> "PenaltyStatus":
        return cls(
            is_penalized=True,
            penalty_type=state.penalty_type,
            reason=state.reason,
            abuse_score=state.abuse_score,
            expires_at=state.expires_at,
            rate_limit_rpm=state.rate_limit_rpm,
        )


@dataclass
class PenaltyAuditEntry:
    """One row of the append-only penalty trail.

    ``expires_at`` is None for permanent bans.  ``lifted_at``/``lifted_by``
    are written once, when an administrator lifts the penalty.
    """

    token_id: int
    user_id: int
    penalty_type: PenaltyType
    reason: str
    abuse_score: int
    created_at: datetime
    expires_at: Optional[datetime] = None
    lifted_at: Optional[datetime] = None
    lifted_by: Optional[int] = None
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "token_id": self.token_id,
            "user_id": self.user_id,
            "penalty_type": self.penalty_type.value,
            "reason": self.reason,
            "abuse_score": self.abuse_score,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "lifted_at": self.lifted_at.isoformat() if self.lifted_at else None,
            "lifted_by": self.lifted_by,
        }
