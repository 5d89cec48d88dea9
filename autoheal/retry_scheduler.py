"""
Retry scheduler: re-arms failed and abandoned commands.

Runs on its own short interval, independent of reconciliation.  Selects
``failed`` commands that are under their retry cap and past their
``next_retry_at``, plus ``executing`` commands whose lease expired without an
ack.  Commands at the cap stay failed; the next run report of their cluster
surfaces them once.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import structlog

from .command_queue import CommandQueue
from .config import settings
from .errors import InvalidTransition, RetryExhausted, StoreError, StoreTimeout
from .metrics import autoheal_retries_total
from .models import Command, CommandStatus, utcnow
from .store import RemediationStore

logger = structlog.get_logger(__name__)


@dataclass
class RetryRunResult:
    rearmed: list[Command] = field(default_factory=list)
    expired: list[Command] = field(default_factory=list)
    errors: int = 0

    def to_dict(self) -> dict:
        return {
            "rearmed": [c.id for c in self.rearmed],
            "expired": [c.id for c in self.expired],
            "errors": self.errors,
        }


class RetryScheduler:
    """Selects retryable commands across all clusters and re-arms them."""

    def __init__(
        self,
        store: RemediationStore,
        queue: CommandQueue,
        lease_timeout_seconds: Optional[int] = None,
    ):
        self.store = store
        self.queue = queue
        self.lease_timeout_seconds = (
            lease_timeout_seconds
            if lease_timeout_seconds is not None
            else settings.command_lease_timeout_seconds
        )

    async def retryable(self, cluster_id: str, now: datetime) -> list[Command]:
        """Failed commands under the cap whose retry gate has passed."""
        failed = await self.store.commands_by_status(
            cluster_id, CommandStatus.FAILED, max_score=now.timestamp()
        )
        return [
            c
            for c in failed
            if c.retry_count < c.max_retries
            and (c.next_retry_at is None or c.next_retry_at <= now)
        ]

    async def lease_expired(self, cluster_id: str, now: datetime) -> list[Command]:
        """Executing commands leased longer than the lease timeout ago."""
        cutoff = now - timedelta(seconds=self.lease_timeout_seconds)
        executing = await self.store.commands_by_status(
            cluster_id, CommandStatus.EXECUTING, max_score=cutoff.timestamp()
        )
        return [c for c in executing if c.leased_at is not None and c.leased_at <= cutoff]

    async def run_once(self, now: Optional[datetime] = None) -> RetryRunResult:
        """One retry pass over every known cluster.

        A store timeout aborts the pass; other per-command errors are counted
        and the pass continues.
        """
        now = now or utcnow()
        result = RetryRunResult()
        for cluster_id in await self.store.known_clusters():
            for command in await self.retryable(cluster_id, now):
                await self._rearm(command, now, "failed", result)
            for command in await self.lease_expired(cluster_id, now):
                if command.retry_count >= command.max_retries:
                    try:
                        await self.queue.expire(command)
                    except InvalidTransition:
                        # The agent reported back after the scan
                        continue
                    result.expired.append(command)
                    continue
                await self._rearm(command, now, "lease_expired", result)

        if result.rearmed or result.expired or result.errors:
            logger.info(
                "retry_pass_complete",
                rearmed=len(result.rearmed),
                expired=len(result.expired),
                errors=result.errors,
            )
        return result

    async def _rearm(self, command: Command, now: datetime, trigger: str, result: RetryRunResult):
        try:
            await self.queue.rearm(command, now)
        except StoreTimeout:
            raise
        except (RetryExhausted, InvalidTransition):
            return
        except StoreError as exc:
            result.errors += 1
            logger.error(
                "command_rearm_failed",
                cluster_id=command.cluster_id,
                command_id=command.id,
                error=str(exc),
            )
            return
        autoheal_retries_total.labels(trigger=trigger).inc()
        result.rearmed.append(command)
