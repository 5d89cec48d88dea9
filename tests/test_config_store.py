"""Tests for autoheal.config_store.ConfigStore."""

import pytest

from autoheal.config import settings
from autoheal.config_store import REDIS_HASH_KEY, ConfigStore, get_config_store


@pytest.fixture
def config_store(store):
    """Return a fresh ConfigStore backed by the FakeRedis store singleton."""
    return ConfigStore()


# -------------------------------------------------------------------
# get
# -------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_returns_default_when_no_override(config_store):
    value = await config_store.get("reconcile_interval_seconds")
    assert value == settings.reconcile_interval_seconds


@pytest.mark.asyncio
async def test_get_raises_for_unknown_key(config_store):
    with pytest.raises(ValueError, match="Unknown or read-only configuration key"):
        await config_store.get("redis_url")


@pytest.mark.asyncio
async def test_get_falls_back_when_store_disconnected(disconnected_store):
    value = await ConfigStore().get("retry_interval_seconds")
    assert value == settings.retry_interval_seconds


# -------------------------------------------------------------------
# set
# -------------------------------------------------------------------


@pytest.mark.asyncio
async def test_set_and_get_roundtrip(config_store, fake_redis):
    await config_store.set("reconcile_interval_seconds", "120")
    assert await config_store.get("reconcile_interval_seconds") == 120
    assert fake_redis._hashes[REDIS_HASH_KEY]["reconcile_interval_seconds"] == "120"


@pytest.mark.asyncio
async def test_set_validates_type(config_store):
    with pytest.raises(ValueError, match="Validation failed"):
        await config_store.set("retry_interval_seconds", "soon")


@pytest.mark.asyncio
async def test_set_rejects_non_positive(config_store):
    with pytest.raises(ValueError, match="at least 1"):
        await config_store.set("max_concurrent_clusters", 0)


@pytest.mark.asyncio
async def test_set_raises_when_store_unavailable(disconnected_store):
    with pytest.raises(RuntimeError, match="Redis is unavailable"):
        await ConfigStore().set("retry_interval_seconds", 30)


# -------------------------------------------------------------------
# get_all / reset
# -------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_all_merges_overrides(config_store):
    await config_store.set("max_concurrent_clusters", 8)
    merged = await config_store.get_all()
    assert merged["max_concurrent_clusters"] == 8
    assert merged["retry_interval_seconds"] == settings.retry_interval_seconds
    assert set(merged) == {
        "reconcile_interval_seconds",
        "retry_interval_seconds",
        "max_concurrent_clusters",
    }


@pytest.mark.asyncio
async def test_reset_removes_override(config_store):
    await config_store.set("retry_interval_seconds", 15)
    await config_store.reset("retry_interval_seconds")
    assert await config_store.get("retry_interval_seconds") == settings.retry_interval_seconds


@pytest.mark.asyncio
async def test_reset_raises_for_unknown_key(config_store):
    with pytest.raises(ValueError, match="Unknown or read-only configuration key"):
        await config_store.reset("port")


def test_singleton():
    assert get_config_store() is get_config_store()
