"""Redis backend — sorted sets for event windows, expiring keys for penalties.

Key layout:
  abuse:model_switch:<token_id>   ZSET  member=event JSON  score=unix ts
  abuse:test_content:<token_id>   ZSET  member=event JSON  score=unix ts
  abuse:penalty:<token_id>        STRING penalty JSON, TTL = time to expiry

Event appends run as one MULTI/EXEC: add, trim anything past the 24h
horizon, refresh the key TTL.  A token that goes quiet disappears entirely
24h after its last event without any sweep.
"""

from __future__ import annotations

import logging
import math
import time
from contextlib import contextmanager
from typing import Iterator

import redis

from antiabuse.backends import EVENT_RETENTION_SECONDS, STREAMS, Backend
from antiabuse.exceptions import StorageError
from antiabuse.models import PenaltyState

logger = logging.getLogger(__name__)

KEY_PREFIX = "abuse:"
PENALTY_KEY_PREFIX = KEY_PREFIX + "penalty:"


def event_key(stream: str, token_id: int) -> str:
    if stream not in STREAMS:
        raise StorageError(f"unknown event stream: {stream}")
    return f"{KEY_PREFIX}{stream}:{token_id}"


def penalty_key(token_id: int) -> str:
    return f"{PENALTY_KEY_PREFIX}{token_id}"


@contextmanager
def _redis_errors(operation: str):
    try:
        yield
    except redis.RedisError as e:
        raise StorageError(f"redis {operation} failed: {e}") from e


class RedisBackend(Backend):
    name = "redis"

    def __init__(self, client: redis.Redis,
                 retention_seconds: int = EVENT_RETENTION_SECONDS):
        # The client must be built with decode_responses=True.
        self.client = client
        self.retention_seconds = retention_seconds

    # -- events -----------------------------------------------------------

    def add_event(self, stream, token_id, timestamp, payload):
        key = event_key(stream, token_id)
        horizon = time.time() - self.retention_seconds
        with _redis_errors("event append"):
            pipe = self.client.pipeline(transaction=True)
            pipe.zadd(key, {payload: timestamp})
            pipe.zremrangebyscore(key, "-inf", f"({horizon}")
            pipe.expire(key, self.retention_seconds)
            pipe.execute()

    def events_between(self, stream, token_id, start, end):
        key = event_key(stream, token_id)
        with _redis_errors("window query"):
            rows = self.client.zrangebyscore(key, start, end, withscores=True)
        return [(float(score), member) for member, score in rows]

    # -- penalties --------------------------------------------------------

    def set_penalty(self, state, ttl_seconds):
        # SET with PX is atomic; concurrent writers resolve last-write-wins.
        ttl_ms = max(1, math.ceil(ttl_seconds * 1000))
        with _redis_errors("penalty set"):
            self.client.set(penalty_key(state.token_id), state.to_payload(), px=ttl_ms)

    def get_penalty(self, token_id):
        with _redis_errors("penalty get"):
            data = self.client.get(penalty_key(token_id))
        if data is None:
            return None
        return PenaltyState.from_payload(data)

    def delete_penalty(self, token_id):
        with _redis_errors("penalty delete"):
            return self.client.delete(penalty_key(token_id)) > 0

    def iter_penalties(self) -> Iterator[PenaltyState]:
        with _redis_errors("penalty scan"):
            keys = list(self.client.scan_iter(match=PENALTY_KEY_PREFIX + "*", count=100))
            values = self.client.mget(keys) if keys else []
        for key, data in zip(keys, values):
            if data is None:
                continue  # expired between SCAN and MGET
            try:
                yield PenaltyState.from_payload(data)
            except StorageError as e:
                logger.warning("skipping unreadable penalty key %s: %s", key, e)

    def close(self):
        self.client.close()
