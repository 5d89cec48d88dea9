"""Shared test fixtures for autoheal."""

from __future__ import annotations

import json
import sys
from typing import Any, Optional

import pytest
import pytest_asyncio


# ---------------------------------------------------------------------------
# Environment fixture (needed by any test that instantiates Settings)
# ---------------------------------------------------------------------------


@pytest.fixture
def settings_env(monkeypatch):
    """Set minimal environment for Settings to load."""
    monkeypatch.setenv("AUTOHEAL_REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.delenv("AUTOHEAL_SLACK_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("AUTOHEAL_PAGERDUTY_INTEGRATION_KEY", raising=False)
    monkeypatch.delenv("AUTOHEAL_CUSTOM_WEBHOOK_URL", raising=False)


# ---------------------------------------------------------------------------
# Singleton reset fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Reset all module-level singletons between tests."""
    modules_and_attrs = [
        ("autoheal.store", "_store"),
        ("autoheal.config_store", "_config_store"),
    ]

    yield

    for mod_path, attr in modules_and_attrs:
        mod = sys.modules.get(mod_path)
        if mod is not None:
            setattr(mod, attr, None)


# ---------------------------------------------------------------------------
# Fake Redis
# ---------------------------------------------------------------------------


def _bound(value, default: float) -> float:
    if value in ("-inf", "+inf", "inf"):
        return default
    return float(value)


class FakeRedis:
    """Dict-backed async Redis stand-in for tests."""

    def __init__(self):
        self._store: dict[str, Any] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._lists: dict[str, list[str]] = {}
        self._sets: dict[str, set[str]] = {}
        self._sorted_sets: dict[str, dict[str, float]] = {}
        self._expiry: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        return self._store.get(key)

    async def set(
        self, key: str, value: str, nx: bool = False, px: Optional[int] = None, **kwargs
    ) -> Optional[bool]:
        if nx and key in self._store:
            return None
        self._store[key] = value
        if px is not None:
            self._expiry[key] = px
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for k in keys:
            if self._store.pop(k, None) is not None:
                removed += 1
        return removed

    async def eval(self, script: str, numkeys: int, *args: Any) -> int:
        """Run the store's Lua scripts in Python, without yielding."""
        from autoheal.store import (
            RELEASE_LEASE_SCRIPT,
            RENEW_LEASE_SCRIPT,
            SAVE_COMMAND_SCRIPT,
        )

        keys, argv = list(args[:numkeys]), list(args[numkeys:])
        if script == RELEASE_LEASE_SCRIPT:
            if self._store.get(keys[0]) != argv[0]:
                return 0
            del self._store[keys[0]]
            return 1
        if script == RENEW_LEASE_SCRIPT:
            if self._store.get(keys[0]) != argv[0]:
                return 0
            self._expiry[keys[0]] = int(argv[1])
            return 1
        if script == SAVE_COMMAND_SCRIPT:
            command_id, payload, score, expected, cluster_id = argv
            if expected:
                current = self._hashes.get(keys[0], {}).get(command_id)
                if current is None or json.loads(current)["status"] != expected:
                    return 0
            self._hashes.setdefault(keys[0], {})[command_id] = payload
            for index in keys[2:-1]:
                self._sorted_sets.get(index, {}).pop(command_id, None)
            self._sorted_sets.setdefault(keys[1], {})[command_id] = float(score)
            self._sets.setdefault(keys[-1], set()).add(cluster_id)
            return 1
        raise NotImplementedError("unknown script")

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def hget(self, name: str, key: str) -> Optional[str]:
        return self._hashes.get(name, {}).get(key)

    async def hset(self, name: str, key: str, value: str) -> None:
        self._hashes.setdefault(name, {})[key] = value

    async def hdel(self, name: str, *keys: str) -> None:
        h = self._hashes.get(name, {})
        for k in keys:
            h.pop(k, None)

    async def hgetall(self, name: str) -> dict[str, str]:
        return dict(self._hashes.get(name, {}))

    async def lpush(self, name: str, *values: str) -> None:
        lst = self._lists.setdefault(name, [])
        for v in values:
            lst.insert(0, v)

    async def ltrim(self, name: str, start: int, stop: int) -> None:
        lst = self._lists.get(name, [])
        self._lists[name] = lst[start : stop + 1]

    async def lrange(self, name: str, start: int, stop: int) -> list[str]:
        lst = self._lists.get(name, [])
        return lst[start : stop + 1] if stop >= 0 else lst[start:]

    async def sadd(self, name: str, *values: str) -> None:
        self._sets.setdefault(name, set()).update(values)

    async def smembers(self, name: str) -> set[str]:
        return set(self._sets.get(name, set()))

    async def zadd(self, name: str, mapping: dict[str, float]) -> None:
        ss = self._sorted_sets.setdefault(name, {})
        ss.update(mapping)

    async def zrem(self, name: str, *members: str) -> None:
        ss = self._sorted_sets.get(name, {})
        for m in members:
            ss.pop(m, None)

    async def zrangebyscore(self, name: str, min_score, max_score) -> list[str]:
        ss = self._sorted_sets.get(name, {})
        lo = _bound(min_score, float("-inf"))
        hi = _bound(max_score, float("inf"))
        ordered = sorted(ss.items(), key=lambda item: item[1])
        return [m for m, s in ordered if lo <= s <= hi]

    async def zrevrange(self, name: str, start: int, stop: int) -> list[str]:
        ss = self._sorted_sets.get(name, {})
        ordered = [m for m, _ in sorted(ss.items(), key=lambda item: item[1], reverse=True)]
        return ordered[start : stop + 1] if stop >= 0 else ordered[start:]

    async def expire(self, name: str, seconds: int) -> None:
        self._expiry[name] = seconds

    async def close(self) -> None:
        pass


class FakePipeline:
    """Buffers commands and applies them together on execute()."""

    def __init__(self, redis: FakeRedis):
        self._redis = redis
        self._queued: list[tuple[Any, tuple, dict]] = []

    def __getattr__(self, name: str):
        method = getattr(self._redis, name)

        def _queue(*args, **kwargs):
            self._queued.append((method, args, kwargs))
            return self

        return _queue

    async def execute(self) -> list[Any]:
        queued, self._queued = self._queued, []
        return [await method(*args, **kwargs) for method, args, kwargs in queued]

    async def __aenter__(self) -> FakePipeline:
        return self

    async def __aexit__(self, *exc_info) -> None:
        self._queued = []


@pytest.fixture
def fake_redis():
    """Return a FakeRedis instance."""
    return FakeRedis()


@pytest.fixture
def store(fake_redis, settings_env):
    """Return a RemediationStore wired to a FakeRedis backend."""
    import autoheal.store as store_module
    from autoheal.store import RemediationStore

    s = RemediationStore("redis://fake:6379/0", timeout_seconds=1.0)
    s.available = True
    s._redis = fake_redis
    store_module._store = s
    return s


@pytest.fixture
def disconnected_store(settings_env):
    """Return a RemediationStore that reports unavailable."""
    import autoheal.store as store_module
    from autoheal.store import RemediationStore

    s = RemediationStore("redis://fake:6379/0", timeout_seconds=1.0)
    store_module._store = s
    return s


# ---------------------------------------------------------------------------
# Engine components
# ---------------------------------------------------------------------------


@pytest.fixture
def queue(store):
    from autoheal.command_queue import CommandQueue

    return CommandQueue(store, max_retries=3, base_delay_seconds=30, max_delay_seconds=900)


@pytest.fixture
def engine(store, queue):
    from autoheal.engine import ReconciliationEngine

    return ReconciliationEngine(store, queue=queue)


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------


def _anomaly(
    cluster_id: str = "c1",
    kind: str = "crash_loop_backoff",
    severity: str = "critical",
    record_id: Optional[str] = None,
    description: str = "",
    **detail: Any,
):
    from autoheal.models import ProblemRecord

    return ProblemRecord.from_dict(
        {
            "id": record_id or f"a-{kind}",
            "cluster_id": cluster_id,
            "source": "anomaly",
            "kind": kind,
            "severity": severity,
            "description": description,
            "detail": detail,
        }
    )


def _threat(
    cluster_id: str = "c1",
    kind: str = "missing_resource_limits",
    severity: str = "high",
    record_id: Optional[str] = None,
    description: str = "",
    **detail: Any,
):
    from autoheal.models import ProblemRecord

    return ProblemRecord.from_dict(
        {
            "id": record_id or f"t-{kind}",
            "cluster_id": cluster_id,
            "source": "security_threat",
            "kind": kind,
            "severity": severity,
            "description": description,
            "detail": detail,
        }
    )


def _settings(**overrides: Any):
    from autoheal.models import AutoHealSettings

    data = {
        "enabled": True,
        "auto_apply_anomalies": True,
        "auto_apply_security": True,
        "severity_threshold": "high",
    }
    data.update(overrides)
    return AutoHealSettings.from_dict(data)


@pytest.fixture
def make_anomaly():
    """Factory for anomaly records; keyword extras become the detail payload."""
    return _anomaly


@pytest.fixture
def make_threat():
    """Factory for security threat records."""
    return _threat


@pytest.fixture
def make_settings():
    """Factory for an enabled AutoHealSettings with overrides."""
    return _settings


# ---------------------------------------------------------------------------
# httpx / FastAPI test client
# ---------------------------------------------------------------------------


@pytest.fixture
def app_no_lifespan(store):
    """Create a FastAPI app instance without running lifespan.

    Routes are registered and the engine is wired to the FakeRedis store.
    """
    from autoheal.api import app_state, build_engine, create_app

    app_state.engine, app_state.retry = build_engine()
    app_state.scheduler = None

    app = create_app()
    # Remove the lifespan so httpx can call routes directly
    app.router.lifespan_context = None
    yield app
    app_state.engine = None
    app_state.retry = None


@pytest_asyncio.fixture
async def async_client(app_no_lifespan):
    """Async httpx test client for FastAPI endpoint tests."""
    from httpx import ASGITransport, AsyncClient

    transport = ASGITransport(app=app_no_lifespan)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
