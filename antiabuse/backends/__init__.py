# Storage backends for signal events and penalty working state.
#
# One contract, two implementations: Redis (shared across gateway replicas,
# atomic MULTI pipelines, TTL-driven cleanup) and an in-process store
# (single replica, explicit locks, lazy cleanup).  Which one runs is decided
# once, when the service container is built; nothing switches at runtime.
#
# Every method may raise StorageError.  Callers decide what that means;
# the detector turns it into fail-open.

from __future__ import annotations

from typing import Iterator, Optional

from antiabuse.models import PenaltyState

# Event streams. Each has its own per-token sorted container / sorted set.
MODEL_SWITCH_STREAM = "model_switch"
TEST_CONTENT_STREAM = "test_content"
STREAMS = (MODEL_SWITCH_STREAM, TEST_CONTENT_STREAM)

# Events older than this are gone, whatever window a caller asks for.
EVENT_RETENTION_SECONDS = 24 * 60 * 60


class Backend:
    """Storage contract. Subclass and implement every method."""

    name: str

    # -- events -----------------------------------------------------------

    def add_event(self, stream: str, token_id: int, timestamp: float,
                  payload: str) -> None:
        """Append one serialized event to the token's stream."""
        raise NotImplementedError

    def events_between(self, stream: str, token_id: int, start: float,
                       end: float) -> list[tuple[float, str]]:
        """(timestamp, payload) pairs with start <= timestamp <= end, oldest first."""
        raise NotImplementedError

    # -- penalties --------------------------------------------------------

    def set_penalty(self, state: PenaltyState, ttl_seconds: float) -> None:
        """Store the token's penalty, replacing any previous one."""
        raise NotImplementedError

    def get_penalty(self, token_id: int) -> Optional[PenaltyState]:
        """The stored penalty, or None. May return an expired state; the
        penalty manager compares against the clock."""
        raise NotImplementedError

    def delete_penalty(self, token_id: int) -> bool:
        """Remove the token's penalty. True if something was removed."""
        raise NotImplementedError

    def iter_penalties(self) -> Iterator[PenaltyState]:
        """Every stored penalty, in no particular order."""
        raise NotImplementedError

    # -- housekeeping -----------------------------------------------------

    def sweep(self, now: float) -> int:
        """Drop expired events and penalties. Returns how many entries went.
        Backends whose store expires entries on its own return 0."""
        return 0

    def close(self) -> None:
        pass


import redis

from antiabuse.backends.memory import MemoryBackend
from antiabuse.backends.redis_store import RedisBackend


def create_backend(redis_url: str | None = None, *,
                   socket_timeout: float = 0.5,
                   lock_timeout: float = 0.5) -> Backend:
    """Pick the backend for this process: Redis when a URL is configured,
    otherwise the in-process store.

    The timeouts bound every backend call, so a stalled Redis or a stuck
    lock turns into a StorageError instead of a hung request.
    """
    if redis_url:
        client = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return RedisBackend(client)
    return MemoryBackend(lock_timeout=lock_timeout)
