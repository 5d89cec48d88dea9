"""
Command dispatch with audit trail.

Every attempted remediation gets exactly one action log entry.  The entry is
written first (``executing``), then the command is enqueued, then the source
records the command remediates are closed and the entry is completed.
When the enqueue fails the source records stay open for the next cycle and
the entry records the error.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from .command_queue import CommandQueue
from .deduplicator import PlannedRemediation
from .errors import DispatchWriteFailure, StoreError, StoreTimeout
from .metrics import autoheal_commands_dispatched_total, autoheal_records_skipped_total
from .models import (
    ActionLogEntry,
    ActionLogStatus,
    Command,
    ProblemRecord,
    RemediationAction,
    utcnow,
)
from .store import RemediationStore

logger = structlog.get_logger(__name__)


@dataclass
class DispatchOutcome:
    """Result of dispatching one planned remediation."""

    record: ProblemRecord
    action: Optional[RemediationAction]
    entry: ActionLogEntry
    command: Optional[Command] = None
    error: Optional[str] = None
    merged_record_ids: list[str] = field(default_factory=list)
    deferred_record_ids: list[str] = field(default_factory=list)

    @property
    def status(self) -> ActionLogStatus:
        return self.entry.status

    @property
    def succeeded(self) -> bool:
        return self.entry.status == ActionLogStatus.COMPLETED

    @property
    def failed(self) -> bool:
        return self.entry.status == ActionLogStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record.id,
            "kind": self.record.kind,
            "action_type": self.action.action_type.value if self.action else None,
            "status": self.entry.status.value,
            "command_id": self.command.id if self.command else None,
            "error": self.error,
            "merged_record_ids": self.merged_record_ids,
            "deferred_record_ids": self.deferred_record_ids,
        }


class CommandDispatcher:
    """Writes commands and their audit entries for planned remediations."""

    def __init__(self, store: RemediationStore, queue: CommandQueue):
        self.store = store
        self.queue = queue

    async def _write_entry(self, entry: ActionLogEntry, update: bool = False):
        try:
            if update:
                await self.store.update_action_log(entry)
            else:
                await self.store.append_action_log(entry)
        except StoreTimeout:
            raise
        except StoreError as exc:
            raise DispatchWriteFailure(f"audit write failed: {exc}") from exc

    async def dispatch(self, cluster_id: str, planned: PlannedRemediation) -> DispatchOutcome:
        """Enqueue the command for ``planned`` and close its source records.

        Raises:
            StoreTimeout: a store call exceeded its time budget.
            DispatchWriteFailure: the audit entry itself could not be written.
        """
        record = planned.record
        action = planned.action
        merged_ids = [m.record.id for m in planned.merged]
        deferred_ids = [r.id for r in planned.deferred_records]
        entry = ActionLogEntry(
            cluster_id=cluster_id,
            action_type=action.action_type.value,
            trigger_reason=record.summary(),
            trigger_entity_type=record.source.value,
            trigger_entity_id=record.id,
            action_details={
                "params": dict(action.params),
                "target": planned.target.describe(),
                "deployment_derived": planned.target.deployment_derived,
                "merged_record_ids": merged_ids,
            },
        )
        await self._write_entry(entry)
        outcome = DispatchOutcome(
            record=record,
            action=action,
            entry=entry,
            merged_record_ids=merged_ids,
            deferred_record_ids=deferred_ids,
        )

        try:
            command = await self.queue.enqueue(cluster_id, action)
        except StoreError as exc:
            outcome.error = str(exc)
            entry.status = ActionLogStatus.FAILED
            entry.error_message = str(exc)
            entry.completed_at = utcnow()
            autoheal_commands_dispatched_total.labels(
                action=action.action_type.value, result="failed"
            ).inc()
            logger.error(
                "dispatch_failed",
                cluster_id=cluster_id,
                record_id=record.id,
                action_type=action.action_type.value,
                error=str(exc),
            )
            if isinstance(exc, StoreTimeout):
                raise
            await self._write_entry(entry, update=True)
            return outcome

        outcome.command = command
        for closing in planned.closing_records:
            try:
                await self.store.mark_resolved(closing)
            except StoreTimeout:
                raise
            except StoreError as exc:
                # The command exists; the record stays open and is retried
                logger.error(
                    "record_resolve_failed",
                    cluster_id=cluster_id,
                    record_id=closing.id,
                    command_id=command.id,
                    error=str(exc),
                )
        for deferred in planned.deferred_records:
            logger.info(
                "merged_record_deferred",
                cluster_id=cluster_id,
                record_id=deferred.id,
                kind=deferred.kind,
                command_id=command.id,
            )

        entry.status = ActionLogStatus.COMPLETED
        entry.completed_at = utcnow()
        entry.result = {
            "command_id": command.id,
            "action_type": command.action_type.value,
            "params": dict(command.params),
            "merged_record_ids": merged_ids,
            "deferred_record_ids": deferred_ids,
        }
        await self._write_entry(entry, update=True)
        autoheal_commands_dispatched_total.labels(
            action=action.action_type.value, result="success"
        ).inc()
        logger.info(
            "command_dispatched",
            cluster_id=cluster_id,
            record_id=record.id,
            command_id=command.id,
            action_type=action.action_type.value,
            target=planned.target.describe(),
            merged=len(merged_ids),
        )
        return outcome

    async def record_skip(
        self,
        cluster_id: str,
        record: ProblemRecord,
        reason: str,
        action: Optional[RemediationAction] = None,
    ) -> DispatchOutcome:
        """Audit a record that was selected but not remediated."""
        now = utcnow()
        entry = ActionLogEntry(
            cluster_id=cluster_id,
            action_type=action.action_type.value if action else record.kind,
            trigger_reason=record.summary(),
            trigger_entity_type=record.source.value,
            trigger_entity_id=record.id,
            action_details={"params": dict(action.params)} if action else {},
            status=ActionLogStatus.SKIPPED,
            started_at=now,
            completed_at=now,
            result={"reason": reason},
        )
        await self._write_entry(entry)
        autoheal_records_skipped_total.labels(reason=reason).inc()
        logger.info(
            "record_skipped",
            cluster_id=cluster_id,
            record_id=record.id,
            kind=record.kind,
            reason=reason,
        )
        return DispatchOutcome(record=record, action=action, entry=entry, error=reason)
