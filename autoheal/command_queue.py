"""
Command queue over the durable command table.

Status writes are split by role.  The engine creates commands and re-arms
them to ``pending``; the executor agent moves them through ``executing``,
``completed`` and ``failed`` with lease/ack/nack.

    pending --lease--> executing --ack--> completed
                           |
                           +--nack--> failed --rearm--> pending
                           +--lease expired--rearm--> pending
"""

from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from .config import settings
from .errors import CommandNotFound, InvalidTransition, RetryExhausted
from .metrics import autoheal_commands_exhausted_total
from .models import Command, CommandStatus, RemediationAction, utcnow
from .store import RemediationStore

logger = structlog.get_logger(__name__)

REARMABLE = frozenset({CommandStatus.FAILED, CommandStatus.EXECUTING})


class CommandQueue:
    """Lease-based command queue for the executor agent."""

    def __init__(
        self,
        store: RemediationStore,
        max_retries: Optional[int] = None,
        base_delay_seconds: Optional[int] = None,
        max_delay_seconds: Optional[int] = None,
    ):
        self.store = store
        self.max_retries = (
            max_retries if max_retries is not None else settings.command_max_retries
        )
        self.base_delay_seconds = (
            base_delay_seconds
            if base_delay_seconds is not None
            else settings.retry_base_delay_seconds
        )
        self.max_delay_seconds = (
            max_delay_seconds
            if max_delay_seconds is not None
            else settings.retry_max_delay_seconds
        )

    def backoff(self, retry_count: int) -> timedelta:
        """Delay before attempt number ``retry_count`` may be retried."""
        seconds = min(2 ** retry_count * self.base_delay_seconds, self.max_delay_seconds)
        return timedelta(seconds=seconds)

    async def _load(self, command_id: str) -> Command:
        command = await self.store.get_command(command_id)
        if command is None:
            raise CommandNotFound(f"Command {command_id} not found")
        return command

    async def _transition(
        self, command: Command, expected: CommandStatus, target: CommandStatus
    ):
        """Save ``command`` only if the stored copy is still ``expected``.

        Raises:
            InvalidTransition: another writer moved the command first.
        """
        if await self.store.save_command(command, expected_status=expected):
            return
        current = await self.store.get_command(command.id)
        found = current.status.value if current else "missing"
        logger.warning(
            "command_transition_lost",
            cluster_id=command.cluster_id,
            command_id=command.id,
            expected=expected.value,
            found=found,
        )
        raise InvalidTransition(command.id, found, target.value)

    # ------------------------------------------------------------------
    # Engine side
    # ------------------------------------------------------------------

    async def enqueue(self, cluster_id: str, action: RemediationAction) -> Command:
        """Persist ``action`` as a new pending command."""
        command = Command(
            cluster_id=cluster_id,
            action_type=action.action_type,
            params=dict(action.params),
            max_retries=self.max_retries,
        )
        await self.store.save_command(command)
        logger.info(
            "command_enqueued",
            cluster_id=cluster_id,
            command_id=command.id,
            action_type=command.action_type.value,
            target=command.target,
        )
        return command

    async def rearm(self, command: Command, now: Optional[datetime] = None) -> Command:
        """Return a failed or lease-expired command to ``pending``.

        Raises:
            RetryExhausted: the command has used all of its retries.
            InvalidTransition: the command is pending or completed, or was
                acked or re-armed concurrently.
        """
        previous = command.status
        if previous not in REARMABLE:
            raise InvalidTransition(command.id, previous.value, CommandStatus.PENDING.value)
        if command.retry_count >= command.max_retries:
            raise RetryExhausted(
                f"Command {command.id} reached {command.max_retries} retries"
            )
        now = now or utcnow()
        command.retry_count += 1
        command.next_retry_at = now + self.backoff(command.retry_count)
        command.status = CommandStatus.PENDING
        command.leased_at = None
        await self._transition(command, previous, CommandStatus.PENDING)
        logger.info(
            "command_rearmed",
            cluster_id=command.cluster_id,
            command_id=command.id,
            retry_count=command.retry_count,
            next_retry_at=command.next_retry_at.isoformat(),
        )
        return command

    async def expire(self, command: Command) -> Command:
        """Fail an executing command whose lease ran out at the retry cap."""
        if command.status != CommandStatus.EXECUTING:
            raise InvalidTransition(command.id, command.status.value, CommandStatus.FAILED.value)
        return await self._fail(command, "lease expired without acknowledgement")

    # ------------------------------------------------------------------
    # Executor side
    # ------------------------------------------------------------------

    async def lease(
        self, cluster_id: str, limit: int = 10, now: Optional[datetime] = None
    ) -> list[Command]:
        """Hand out up to ``limit`` pending commands, oldest first.

        A command another agent leased in the meantime is skipped.
        """
        now = now or utcnow()
        pending = await self.store.commands_by_status(
            cluster_id, CommandStatus.PENDING, limit=limit
        )
        leased = []
        for command in pending:
            command.status = CommandStatus.EXECUTING
            command.leased_at = now
            if not await self.store.save_command(
                command, expected_status=CommandStatus.PENDING
            ):
                logger.debug("command_lease_lost", command_id=command.id)
                continue
            leased.append(command)
        if leased:
            logger.info(
                "commands_leased",
                cluster_id=cluster_id,
                count=len(leased),
                command_ids=[c.id for c in leased],
            )
        return leased

    async def ack(self, command_id: str, result: Optional[dict[str, Any]] = None) -> Command:
        """Mark a leased command completed."""
        command = await self._load(command_id)
        if command.status != CommandStatus.EXECUTING:
            raise InvalidTransition(command_id, command.status.value, CommandStatus.COMPLETED.value)
        command.status = CommandStatus.COMPLETED
        command.result = result or {}
        command.error_message = None
        await self._transition(command, CommandStatus.EXECUTING, CommandStatus.COMPLETED)
        logger.info(
            "command_completed",
            cluster_id=command.cluster_id,
            command_id=command.id,
            action_type=command.action_type.value,
        )
        return command

    async def nack(
        self,
        command_id: str,
        error: str,
        result: Optional[dict[str, Any]] = None,
    ) -> Command:
        """Mark a leased command failed."""
        command = await self._load(command_id)
        if command.status != CommandStatus.EXECUTING:
            raise InvalidTransition(command_id, command.status.value, CommandStatus.FAILED.value)
        if result is not None:
            command.result = result
        return await self._fail(command, error)

    async def _fail(self, command: Command, error: str) -> Command:
        command.status = CommandStatus.FAILED
        command.error_message = error
        command.leased_at = None
        await self._transition(command, CommandStatus.EXECUTING, CommandStatus.FAILED)
        if command.is_exhausted:
            autoheal_commands_exhausted_total.inc()
            logger.warning(
                "command_exhausted",
                cluster_id=command.cluster_id,
                command_id=command.id,
                action_type=command.action_type.value,
                retry_count=command.retry_count,
                error=error,
            )
        else:
            logger.info(
                "command_failed",
                cluster_id=command.cluster_id,
                command_id=command.id,
                retry_count=command.retry_count,
                error=error,
            )
        return command

    # ------------------------------------------------------------------
    # Exhaustion reporting
    # ------------------------------------------------------------------

    async def unreported_exhausted(self, cluster_id: str) -> list[Command]:
        """Exhausted commands that no run report has surfaced yet."""
        failed = await self.store.commands_by_status(cluster_id, CommandStatus.FAILED)
        return [c for c in failed if c.is_exhausted and not c.exhaustion_reported]

    async def mark_exhaustion_reported(self, commands: list[Command]):
        """Flag ``commands`` as surfaced; call only once their report is stored."""
        for command in commands:
            command.exhaustion_reported = True
            await self.store.save_command(command, expected_status=CommandStatus.FAILED)
