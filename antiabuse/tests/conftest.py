"""Shared fixtures for anti-abuse tests."""

import fnmatch
import time

import pytest
import redis

from antiabuse.audit import AuditStore
from antiabuse.backends.memory import MemoryBackend
from antiabuse.backends.redis_store import RedisBackend
from antiabuse.services import build_services
from antiabuse.settings import SecuritySettings, SettingsProvider


class FakeRedis:
    """Just enough of redis.Redis (decode_responses=True) for RedisBackend.

    Sorted sets are dicts member -> score; strings carry an optional
    absolute expiry.  ``fail = True`` makes every call raise ConnectionError.
    """

    def __init__(self):
        self.zsets: dict[str, dict[str, float]] = {}
        self.strings: dict[str, tuple[str, float | None]] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("connection refused")

    @staticmethod
    def _bound(value):
        if isinstance(value, str):
            if value in ("-inf", "+inf", "inf"):
                return float(value), False
            if value.startswith("("):
                return float(value[1:]), True
        return float(value), False

    # -- sorted sets ------------------------------------------------------

    def zadd(self, key, mapping):
        self._check()
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def zremrangebyscore(self, key, lo, hi):
        self._check()
        lo_v, lo_x = self._bound(lo)
        hi_v, hi_x = self._bound(hi)
        zset = self.zsets.get(key, {})
        doomed = [m for m, s in zset.items()
                  if (s > lo_v if lo_x else s >= lo_v) and (s < hi_v if hi_x else s <= hi_v)]
        for m in doomed:
            del zset[m]
        return len(doomed)

    def zrangebyscore(self, key, lo, hi, withscores=False):
        self._check()
        lo_v, _ = self._bound(lo)
        hi_v, _ = self._bound(hi)
        rows = sorted(((m, s) for m, s in self.zsets.get(key, {}).items()
                       if lo_v <= s <= hi_v), key=lambda r: (r[1], r[0]))
        return rows if withscores else [m for m, _ in rows]

    def expire(self, key, seconds):
        self._check()
        self.ttls[key] = seconds
        return True

    # -- strings ----------------------------------------------------------

    def set(self, key, value, px=None):
        self._check()
        expires = time.time() + px / 1000 if px else None
        self.strings[key] = (value, expires)
        return True

    def get(self, key):
        self._check()
        entry = self.strings.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires is not None and time.time() >= expires:
            del self.strings[key]
            return None
        return value

    def mget(self, keys):
        return [self.get(k) for k in keys]

    def delete(self, *keys):
        self._check()
        removed = 0
        for k in keys:
            removed += self.strings.pop(k, None) is not None
            removed += self.zsets.pop(k, None) is not None
        return removed

    def scan_iter(self, match="*", count=None):
        self._check()
        return iter([k for k in list(self.strings) if fnmatch.fnmatch(k, match)])

    # -- plumbing ---------------------------------------------------------

    def pipeline(self, transaction=True):
        return _FakePipeline(self)

    def close(self):
        self.closed = True


class _FakePipeline:
    def __init__(self, client):
        self._client = client
        self._calls = []

    def __getattr__(self, name):
        def _queue(*args, **kwargs):
            self._calls.append((name, args, kwargs))
            return self
        return _queue

    def execute(self):
        self._client._check()
        return [getattr(self._client, name)(*a, **kw) for name, a, kw in self._calls]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def enabled_settings():
    """Anti-abuse switched on, everything else at its default."""
    return SecuritySettings(enable_anti_abuse=True)


@pytest.fixture
def settings_provider(enabled_settings):
    return SettingsProvider(enabled_settings)


@pytest.fixture
def memory_backend():
    backend = MemoryBackend(lock_timeout=1.0)
    yield backend
    backend.close()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_backend(fake_redis):
    return RedisBackend(fake_redis)


@pytest.fixture(params=["memory", "redis"])
def backend(request):
    """Every backend-contract test runs against both implementations."""
    if request.param == "memory":
        b = MemoryBackend(lock_timeout=1.0)
    else:
        b = RedisBackend(FakeRedis())
    yield b
    b.close()


@pytest.fixture
def audit_store(tmp_path):
    store = AuditStore(f"sqlite:///{tmp_path / 'audit.db'}")
    yield store
    store.close()


@pytest.fixture
def services(settings_provider, memory_backend, audit_store):
    return build_services(settings_provider, backend=memory_backend, audit=audit_store)
