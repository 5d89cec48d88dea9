"""
Redis-backed durable store for the auto-heal engine.

Holds problem records, per-cluster policies, the command table with its
status indexes, the append-only action log, and stored notifications.
Unlike optional caches, the engine cannot run without this store: every
operation carries a timeout and raises ``StoreError`` subclasses instead of
degrading silently.
"""

import asyncio
import json
from datetime import datetime
from typing import Any, Awaitable, Optional, TypeVar

import redis.asyncio as aioredis
import structlog

from .config import settings
from .errors import StoreError, StoreTimeout, StoreUnavailable
from .models import (
    ActionLogEntry,
    AutoHealSettings,
    Command,
    CommandStatus,
    Notification,
    ProblemRecord,
    ProblemSource,
    ThreatStatus,
    utcnow,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

KEY_CLUSTERS = "autoheal:clusters"
KEY_SETTINGS = "autoheal:settings"
KEY_COMMANDS = "autoheal:commands"
KEY_PROBLEMS_PREFIX = "autoheal:problems:"
KEY_COMMAND_INDEX_PREFIX = "autoheal:cmdidx:"
KEY_ACTIONS_PREFIX = "autoheal:actions:"
KEY_NOTIFICATIONS_PREFIX = "autoheal:notifications:"

# Compare-and-delete so a lease is only released by its holder
RELEASE_LEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Extend a lease only while the caller still holds it
RENEW_LEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""

# Write a command and its status index in one step.  With ARGV[4] set, the
# write only happens while the stored status still equals it.
# KEYS: commands hash, target index, other status indexes..., clusters set
# ARGV: command id, command json, index score, expected status, cluster id
SAVE_COMMAND_SCRIPT = """
if ARGV[4] ~= "" then
    local current = redis.call("hget", KEYS[1], ARGV[1])
    if not current or cjson.decode(current)["status"] ~= ARGV[4] then
        return 0
    end
end
redis.call("hset", KEYS[1], ARGV[1], ARGV[2])
for i = 3, #KEYS - 1 do
    redis.call("zrem", KEYS[i], ARGV[1])
end
redis.call("zadd", KEYS[2], ARGV[3], ARGV[1])
redis.call("sadd", KEYS[#KEYS], ARGV[5])
return 1
"""


def _ts(value: Optional[datetime]) -> float:
    return value.timestamp() if value else 0.0


def _problems_key(cluster_id: str) -> str:
    return f"{KEY_PROBLEMS_PREFIX}{cluster_id}"


def _open_key(cluster_id: str, source: ProblemSource) -> str:
    return f"{KEY_PROBLEMS_PREFIX}{cluster_id}:open:{source.value}"


def _command_index_key(cluster_id: str, status: CommandStatus) -> str:
    return f"{KEY_COMMAND_INDEX_PREFIX}{cluster_id}:{status.value}"


def _command_score(command: Command) -> float:
    """Index score per status: queue order, retry gate, or lease start."""
    if command.status == CommandStatus.FAILED:
        return _ts(command.next_retry_at)
    if command.status == CommandStatus.EXECUTING:
        return _ts(command.leased_at)
    return _ts(command.created_at)


class RemediationStore:
    """Async Redis store with per-call timeouts."""

    def __init__(self, url: str, timeout_seconds: float = 5.0):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.available = False
        self._redis: Optional[aioredis.Redis] = None

    async def connect(self):
        """Establish Redis connection. Logs warning on failure."""
        try:
            self._redis = aioredis.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=5,
            )
            await self._redis.ping()
            self.available = True
            logger.info("Redis connected", url=self.url)
        except Exception as exc:
            logger.warning("Redis unavailable, engine cannot dispatch", error=str(exc))
            self.available = False
            self._redis = None

    async def close(self):
        """Close the Redis connection."""
        if self._redis:
            try:
                await self._redis.close()
            except Exception as exc:
                logger.debug("Redis close failed", error=str(exc))
            self._redis = None
            self.available = False

    async def health_check(self) -> bool:
        """Return True if Redis responds to PING."""
        if not self.available or not self._redis:
            return False
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _client(self) -> aioredis.Redis:
        if not self.available or not self._redis:
            raise StoreUnavailable("Redis is not connected")
        return self._redis

    async def _call(self, op: str, awaitable: Awaitable[T]) -> T:
        """Run one store operation under the configured timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.error("store_timeout", op=op, timeout=self.timeout_seconds)
            raise StoreTimeout(f"{op} timed out after {self.timeout_seconds}s") from exc
        except StoreError:
            raise
        except Exception as exc:
            logger.error("store_error", op=op, error=str(exc))
            raise StoreError(f"{op} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------

    async def known_clusters(self) -> list[str]:
        r = self._client()
        members = await self._call("known_clusters", r.smembers(KEY_CLUSTERS))
        return sorted(members)

    @staticmethod
    def _register_cluster(pipe, cluster_id: str):
        pipe.sadd(KEY_CLUSTERS, cluster_id)

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    async def get_settings(self, cluster_id: str) -> Optional[AutoHealSettings]:
        r = self._client()
        raw = await self._call("get_settings", r.hget(KEY_SETTINGS, cluster_id))
        if not raw:
            return None
        return AutoHealSettings.from_dict(json.loads(raw))

    async def put_settings(self, cluster_id: str, policy: AutoHealSettings):
        r = self._client()

        async def _op():
            pipe = r.pipeline(transaction=True)
            pipe.hset(KEY_SETTINGS, cluster_id, json.dumps(policy.to_dict()))
            self._register_cluster(pipe, cluster_id)
            await pipe.execute()

        await self._call("put_settings", _op())

    # ------------------------------------------------------------------
    # Problem records
    # ------------------------------------------------------------------

    async def put_problem(self, record: ProblemRecord):
        """Insert or replace a problem record (detector feed)."""
        r = self._client()

        async def _op():
            pipe = r.pipeline(transaction=True)
            pipe.hset(_problems_key(record.cluster_id), record.id, json.dumps(record.to_dict()))
            open_key = _open_key(record.cluster_id, record.source)
            if record.is_open:
                pipe.zadd(open_key, {record.id: _ts(record.created_at)})
            else:
                pipe.zrem(open_key, record.id)
            self._register_cluster(pipe, record.cluster_id)
            await pipe.execute()

        await self._call("put_problem", _op())

    async def get_problem(self, cluster_id: str, record_id: str) -> Optional[ProblemRecord]:
        r = self._client()
        raw = await self._call("get_problem", r.hget(_problems_key(cluster_id), record_id))
        return ProblemRecord.from_dict(json.loads(raw)) if raw else None

    async def fetch_unresolved(
        self, cluster_id: str, source: ProblemSource, limit: int
    ) -> list[ProblemRecord]:
        """Return the newest ``limit`` open records of one variant."""
        r = self._client()

        async def _op():
            ids = await r.zrevrange(_open_key(cluster_id, source), 0, limit - 1)
            records = []
            for record_id in ids:
                raw = await r.hget(_problems_key(cluster_id), record_id)
                if raw:
                    records.append(ProblemRecord.from_dict(json.loads(raw)))
            return records

        return await self._call("fetch_unresolved", _op())

    async def mark_resolved(self, record: ProblemRecord) -> bool:
        """Close ``record``: resolved=True, or status=mitigated for threats.

        Monotonic: a record that is already resolved is left untouched and
        False is returned.  Threats held for manual review can still be
        mitigated.
        """
        r = self._client()

        async def _op():
            key = _problems_key(record.cluster_id)
            raw = await r.hget(key, record.id)
            if not raw:
                return False
            current = ProblemRecord.from_dict(json.loads(raw))
            held = current.status == ThreatStatus.INVESTIGATING
            if not current.is_open and not held:
                return False
            if current.source == ProblemSource.SECURITY_THREAT:
                current.status = ThreatStatus.MITIGATED
            current.resolved = True
            current.resolved_at = utcnow()
            await self._close_problem(r, current)
            record.resolved = current.resolved
            record.status = current.status
            record.resolved_at = current.resolved_at
            return True

        return await self._call("mark_resolved", _op())

    async def hold_for_review(self, record: ProblemRecord) -> bool:
        """Move an active threat to ``investigating`` so cycles stop picking it up."""
        r = self._client()

        async def _op():
            key = _problems_key(record.cluster_id)
            raw = await r.hget(key, record.id)
            if not raw:
                return False
            current = ProblemRecord.from_dict(json.loads(raw))
            if current.status != ThreatStatus.ACTIVE:
                return False
            current.status = ThreatStatus.INVESTIGATING
            await self._close_problem(r, current)
            record.status = current.status
            return True

        return await self._call("hold_for_review", _op())

    async def _close_problem(self, r: aioredis.Redis, record: ProblemRecord):
        """Write ``record`` and drop it from its open index as one transaction."""
        pipe = r.pipeline(transaction=True)
        pipe.hset(_problems_key(record.cluster_id), record.id, json.dumps(record.to_dict()))
        pipe.zrem(_open_key(record.cluster_id, record.source), record.id)
        await pipe.execute()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def save_command(
        self, command: Command, expected_status: Optional[CommandStatus] = None
    ) -> bool:
        """Persist ``command`` and move it to the index of its status.

        With ``expected_status`` the write is a compare-and-set: it is applied
        only if the stored command is still in that status, and False is
        returned otherwise.
        """
        r = self._client()
        command.updated_at = utcnow()
        keys = [KEY_COMMANDS, _command_index_key(command.cluster_id, command.status)]
        keys += [
            _command_index_key(command.cluster_id, status)
            for status in CommandStatus
            if status != command.status
        ]
        keys.append(KEY_CLUSTERS)
        written = await self._call(
            "save_command",
            r.eval(
                SAVE_COMMAND_SCRIPT,
                len(keys),
                *keys,
                command.id,
                json.dumps(command.to_dict()),
                _command_score(command),
                expected_status.value if expected_status else "",
                command.cluster_id,
            ),
        )
        return bool(written)

    async def get_command(self, command_id: str) -> Optional[Command]:
        r = self._client()
        raw = await self._call("get_command", r.hget(KEY_COMMANDS, command_id))
        return Command.from_dict(json.loads(raw)) if raw else None

    async def commands_by_status(
        self,
        cluster_id: str,
        status: CommandStatus,
        max_score: Any = "+inf",
        limit: Optional[int] = None,
    ) -> list[Command]:
        """Return commands of one status ordered by their index score."""
        r = self._client()

        async def _op():
            ids = await r.zrangebyscore(
                _command_index_key(cluster_id, status), "-inf", max_score
            )
            if limit is not None:
                ids = ids[:limit]
            commands = []
            for command_id in ids:
                raw = await r.hget(KEY_COMMANDS, command_id)
                if raw:
                    commands.append(Command.from_dict(json.loads(raw)))
            return commands

        return await self._call("commands_by_status", _op())

    async def list_commands(self, cluster_id: str, limit: int = 100) -> list[Command]:
        """All commands of a cluster, newest first."""
        commands: list[Command] = []
        for status in CommandStatus:
            commands.extend(await self.commands_by_status(cluster_id, status))
        commands.sort(key=lambda c: c.created_at, reverse=True)
        return commands[:limit]

    # ------------------------------------------------------------------
    # Action log (append-only)
    # ------------------------------------------------------------------

    async def append_action_log(self, entry: ActionLogEntry):
        r = self._client()
        key = f"{KEY_ACTIONS_PREFIX}{entry.cluster_id}"

        async def _op():
            pipe = r.pipeline(transaction=True)
            pipe.hset(key, entry.id, json.dumps(entry.to_dict()))
            pipe.lpush(f"{key}:order", entry.id)
            self._register_cluster(pipe, entry.cluster_id)
            await pipe.execute()

        await self._call("append_action_log", _op())

    async def update_action_log(self, entry: ActionLogEntry):
        r = self._client()
        key = f"{KEY_ACTIONS_PREFIX}{entry.cluster_id}"
        await self._call(
            "update_action_log", r.hset(key, entry.id, json.dumps(entry.to_dict()))
        )

    async def list_action_log(self, cluster_id: str, count: int = 50) -> list[ActionLogEntry]:
        """Return the most recent action log entries, newest first."""
        r = self._client()
        key = f"{KEY_ACTIONS_PREFIX}{cluster_id}"

        async def _op():
            ids = await r.lrange(f"{key}:order", 0, count - 1)
            entries = []
            for entry_id in ids:
                raw = await r.hget(key, entry_id)
                if raw:
                    entries.append(ActionLogEntry.from_dict(json.loads(raw)))
            return entries

        return await self._call("list_action_log", _op())

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def push_notification(self, notification: Notification):
        """Store a notification and trim the per-cluster list."""
        r = self._client()
        key = f"{KEY_NOTIFICATIONS_PREFIX}{notification.cluster_id}"

        async def _op():
            pipe = r.pipeline(transaction=True)
            pipe.lpush(key, json.dumps(notification.to_dict()))
            pipe.ltrim(key, 0, settings.notifications_max_len - 1)
            await pipe.execute()

        await self._call("push_notification", _op())

    async def list_notifications(self, cluster_id: str, count: int = 50) -> list[dict]:
        r = self._client()
        raw = await self._call(
            "list_notifications",
            r.lrange(f"{KEY_NOTIFICATIONS_PREFIX}{cluster_id}", 0, count - 1),
        )
        return [json.loads(item) for item in raw]

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    async def acquire_lease(self, key: str, token: str, ttl_seconds: int) -> bool:
        r = self._client()
        acquired = await self._call(
            "acquire_lease", r.set(key, token, nx=True, px=int(ttl_seconds * 1000))
        )
        return bool(acquired)

    async def release_lease(self, key: str, token: str) -> bool:
        r = self._client()
        released = await self._call(
            "release_lease", r.eval(RELEASE_LEASE_SCRIPT, 1, key, token)
        )
        return bool(released)

    async def renew_lease(self, key: str, token: str, ttl_seconds: int) -> bool:
        """Reset the lease TTL; False if ``token`` no longer holds it."""
        r = self._client()
        renewed = await self._call(
            "renew_lease",
            r.eval(RENEW_LEASE_SCRIPT, 1, key, token, int(ttl_seconds * 1000)),
        )
        return bool(renewed)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_store: Optional[RemediationStore] = None


def get_store() -> RemediationStore:
    """Get or create the RemediationStore singleton."""
    global _store
    if _store is None:
        _store = RemediationStore(
            url=settings.redis_url, timeout_seconds=settings.store_timeout_seconds
        )
    return _store
