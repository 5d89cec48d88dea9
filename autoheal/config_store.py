"""
Redis-backed runtime overrides for scheduler tuning.

A small set of ``Settings`` fields can be changed at runtime through the
Redis hash ``autoheal:config``.  Reads fall back to environment-derived
defaults from ``autoheal/config.py`` when no override exists.  Writes are
type-validated against the Pydantic schema before persisting.
"""

from typing import Any, Dict, Optional

import structlog

from .config import Settings, settings
from .store import get_store

logger = structlog.get_logger(__name__)

REDIS_HASH_KEY = "autoheal:config"

# Fields that may be overridden at runtime
TUNABLE_KEYS = (
    "reconcile_interval_seconds",
    "retry_interval_seconds",
    "max_concurrent_clusters",
)


class ConfigStore:
    """Async, Redis-backed override store with Pydantic validation.

    Values stored in Redis take precedence over environment defaults
    exposed by :pydata:`settings`.
    """

    def _check_key(self, key: str):
        if key not in TUNABLE_KEYS:
            raise ValueError(f"Unknown or read-only configuration key: {key}")

    def _validate_value(self, key: str, value: Any) -> int:
        """Validate *value* against the Settings schema for *key*.

        Returns the coerced value; raises ``ValueError`` on failure.
        """
        self._check_key(key)
        try:
            partial = Settings.model_validate({key: value})
            coerced = getattr(partial, key)
        except Exception as exc:
            raise ValueError(f"Validation failed for {key}={value!r}: {exc}") from exc
        if coerced < 1:
            raise ValueError(f"{key} must be at least 1, got {coerced}")
        return coerced

    async def get(self, key: str) -> int:
        """Read a value: the Redis override if present, else the env default."""
        self._check_key(key)

        store = get_store()
        if store.available and store._redis:
            try:
                raw = await store._redis.hget(REDIS_HASH_KEY, key)
                if raw is not None:
                    return int(raw)
            except Exception as exc:
                logger.warning(
                    "config.get redis read failed, using default",
                    key=key,
                    error=str(exc),
                )

        return getattr(settings, key)

    async def set(self, key: str, value: Any) -> int:
        """Validate and store a runtime override in Redis."""
        validated = self._validate_value(key, value)

        store = get_store()
        if not store.available or not store._redis:
            raise RuntimeError("Redis is unavailable; cannot persist runtime config")

        try:
            await store._redis.hset(REDIS_HASH_KEY, key, str(validated))
            logger.info("config.set", key=key, value=validated)
        except Exception as exc:
            logger.error("config.set redis write failed", key=key, error=str(exc))
            raise RuntimeError(f"Failed to write config key {key} to Redis") from exc
        return validated

    async def get_all(self) -> Dict[str, int]:
        """Return every tunable value, overrides merged over defaults."""
        values = {k: getattr(settings, k) for k in TUNABLE_KEYS}

        store = get_store()
        if store.available and store._redis:
            try:
                overrides = await store._redis.hgetall(REDIS_HASH_KEY)
                for key, raw in overrides.items():
                    if key in values:
                        values[key] = int(raw)
            except Exception as exc:
                logger.warning(
                    "config.get_all redis read failed, returning defaults only",
                    error=str(exc),
                )

        return values

    async def reset(self, key: str) -> None:
        """Delete a runtime override, reverting to the env default."""
        self._check_key(key)

        store = get_store()
        if not store.available or not store._redis:
            raise RuntimeError("Redis is unavailable; cannot reset runtime config")

        try:
            await store._redis.hdel(REDIS_HASH_KEY, key)
            logger.info("config.reset", key=key)
        except Exception as exc:
            logger.error("config.reset redis delete failed", key=key, error=str(exc))
            raise RuntimeError(f"Failed to reset config key {key} in Redis") from exc


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_config_store: Optional[ConfigStore] = None


def get_config_store() -> ConfigStore:
    """Get or create the ConfigStore singleton."""
    global _config_store
    if _config_store is None:
        _config_store = ConfigStore()
    return _config_store
