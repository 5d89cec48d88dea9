"""
Reconciliation engine.

One cycle for one cluster: read the cluster policy, pull the newest open
problem records of each variant, gate them by severity, resolve targets and
actions, collapse duplicates, dispatch the survivors in order, and report.

Per-record failures are audited and never stop the cycle.  A store timeout
aborts the cycle: records dispatched before it stay resolved, the rest stay
open for the next run.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from . import action_resolver, target_resolver
from .cluster_lock import ClusterLock
from .command_queue import CommandQueue
from .config import settings
from .deduplicator import PlannedRemediation, dedupe
from .dispatcher import CommandDispatcher, DispatchOutcome
from .errors import (
    ClusterBusy,
    DispatchWriteFailure,
    PolicyDenied,
    ProblemNotFound,
    StoreError,
    StoreTimeout,
    UnresolvableTarget,
)
from .metrics import autoheal_cycle_duration_seconds, autoheal_cycles_total
from .models import (
    HARDENING_ACTIONS,
    ActionType,
    AutoHealSettings,
    Command,
    Notification,
    ProblemRecord,
    ProblemSource,
)
from .pod_observations import observations_from_pods
from .policy import category_enabled, should_process
from .reporter import RunReporter
from .store import RemediationStore

logger = structlog.get_logger(__name__)

# Dispatch precedence: most specific diagnosis first
SOURCE_ORDER = [
    ProblemSource.ANOMALY,
    ProblemSource.SECURITY_THREAT,
    ProblemSource.POD_OBSERVATION,
]

MANUAL_REVIEW_REASON = "requires manual review"
PROTECTED_NAMESPACE_REASON = "protected namespace"


@dataclass
class CycleResult:
    """Summary of one reconciliation cycle."""

    cluster_id: str
    acquired: bool = True
    outcomes: list[DispatchOutcome] = field(default_factory=list)
    skipped: list[DispatchOutcome] = field(default_factory=list)
    gated: int = 0
    merged: int = 0
    errors: int = 0
    exhausted: list[Command] = field(default_factory=list)
    notification: Optional[Notification] = None
    duration_seconds: float = 0.0

    @property
    def dispatched(self) -> int:
        return sum(1 for o in self.outcomes if o.succeeded)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "acquired": self.acquired,
            "dispatched": self.dispatched,
            "failed": sum(1 for o in self.outcomes if o.failed),
            "skipped": len(self.skipped),
            "gated": self.gated,
            "merged": self.merged,
            "errors": self.errors,
            "exhausted": [c.id for c in self.exhausted],
            "actions": [o.to_dict() for o in self.outcomes],
            "notification": self.notification.to_dict() if self.notification else None,
            "duration_seconds": round(self.duration_seconds, 3),
        }


def _by_severity(records: list[ProblemRecord]) -> list[ProblemRecord]:
    """Most severe first; newest first within one severity."""
    ordered = sorted(records, key=lambda r: r.created_at, reverse=True)
    return sorted(ordered, key=lambda r: r.severity.ordinal, reverse=True)


class ReconciliationEngine:
    """Runs reconciliation cycles and manual fixes for clusters."""

    def __init__(
        self,
        store: RemediationStore,
        queue: Optional[CommandQueue] = None,
        lock: Optional[ClusterLock] = None,
        dispatcher: Optional[CommandDispatcher] = None,
        reporter: Optional[RunReporter] = None,
    ):
        self.store = store
        self.queue = queue or CommandQueue(store)
        self.lock = lock or ClusterLock(store)
        self.dispatcher = dispatcher or CommandDispatcher(store, self.queue)
        self.reporter = reporter or RunReporter(store)

    # ------------------------------------------------------------------
    # Detector feed
    # ------------------------------------------------------------------

    async def ingest(self, records: list[ProblemRecord]) -> list[ProblemRecord]:
        """Store new or still-open records; closed records are never reopened."""
        stored = []
        for record in records:
            existing = await self.store.get_problem(record.cluster_id, record.id)
            if existing is not None and not existing.is_open:
                logger.debug("problem_already_closed", record_id=record.id)
                continue
            await self.store.put_problem(record)
            stored.append(record)
        if stored:
            logger.info(
                "problems_ingested",
                cluster_id=stored[0].cluster_id,
                count=len(stored),
            )
        return stored

    async def ingest_pod_snapshot(
        self, cluster_id: str, pods: list[dict[str, Any]]
    ) -> list[ProblemRecord]:
        return await self.ingest(observations_from_pods(cluster_id, pods))

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def _plan(
        self,
        cluster_id: str,
        record: ProblemRecord,
        policy: Optional[AutoHealSettings],
        force: bool,
        result: CycleResult,
    ) -> Optional[PlannedRemediation]:
        """Resolve one record, auditing it as skipped when it cannot proceed."""
        resolved = target_resolver.resolve(record)
        if isinstance(resolved, target_resolver.Skip):
            result.skipped.append(
                await self.dispatcher.record_skip(cluster_id, record, resolved.reason)
            )
            return None

        if resolved.namespace in settings.protected_namespaces:
            result.skipped.append(
                await self.dispatcher.record_skip(cluster_id, record, PROTECTED_NAMESPACE_REASON)
            )
            return None

        try:
            action = action_resolver.resolve(
                record.kind,
                resolved,
                record.detail,
                replica_increment=settings.scale_replica_increment,
                max_replicas=settings.scale_max_replicas,
            )
        except UnresolvableTarget as exc:
            result.skipped.append(
                await self.dispatcher.record_skip(cluster_id, record, exc.reason)
            )
            return None

        hardening_allowed = force or (policy is not None and policy.auto_apply_security_hardening)
        if action.action_type in HARDENING_ACTIONS and not hardening_allowed:
            result.skipped.append(
                await self.dispatcher.record_skip(
                    cluster_id, record, MANUAL_REVIEW_REASON, action=action
                )
            )
            if record.source == ProblemSource.SECURITY_THREAT:
                try:
                    await self.store.hold_for_review(record)
                except StoreTimeout:
                    raise
                except StoreError as exc:
                    # Still open; the next cycle audits and holds it again
                    result.errors += 1
                    logger.error(
                        "record_hold_failed",
                        cluster_id=cluster_id,
                        record_id=record.id,
                        error=str(exc),
                    )
            return None

        return PlannedRemediation(record=record, target=resolved, action=action)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(
        self,
        cluster_id: str,
        force: bool = False,
        policy: Optional[AutoHealSettings] = None,
    ) -> CycleResult:
        """Run one reconciliation cycle for ``cluster_id``.

        Args:
            cluster_id: Cluster to reconcile.
            force: Bypass the severity policy gate.
            policy: Settings to apply; read from the store when omitted.

        Raises:
            StoreError: the store failed outside per-record handling; the
                cycle is aborted.
        """
        async with self.lock.hold(cluster_id) as acquired:
            if not acquired:
                autoheal_cycles_total.labels(result="busy").inc()
                return CycleResult(cluster_id=cluster_id, acquired=False)

            start = time.perf_counter()
            try:
                result = await self._run_locked(cluster_id, force, policy)
            except StoreError as exc:
                autoheal_cycles_total.labels(result="aborted").inc()
                logger.error("cycle_aborted", cluster_id=cluster_id, error=str(exc))
                raise
            result.duration_seconds = time.perf_counter() - start
            autoheal_cycle_duration_seconds.observe(result.duration_seconds)
            autoheal_cycles_total.labels(result="completed").inc()
            logger.info(
                "cycle_complete",
                cluster_id=cluster_id,
                dispatched=result.dispatched,
                skipped=len(result.skipped),
                gated=result.gated,
                merged=result.merged,
                exhausted=len(result.exhausted),
                duration=round(result.duration_seconds, 3),
            )
            return result

    async def _run_locked(
        self,
        cluster_id: str,
        force: bool,
        policy: Optional[AutoHealSettings],
    ) -> CycleResult:
        result = CycleResult(cluster_id=cluster_id)
        if policy is None:
            policy = await self.store.get_settings(cluster_id)

        planned: list[PlannedRemediation] = []
        for source in SOURCE_ORDER:
            if not force and not category_enabled(policy, source):
                continue
            records = await self.store.fetch_unresolved(
                cluster_id, source, settings.problem_fetch_limit
            )
            for record in _by_severity(records):
                if not should_process(record.severity, policy, force=force, source=source):
                    result.gated += 1
                    continue
                try:
                    item = await self._plan(cluster_id, record, policy, force, result)
                except DispatchWriteFailure as exc:
                    result.errors += 1
                    logger.error("skip_audit_failed", record_id=record.id, error=str(exc))
                    continue
                if item is not None:
                    planned.append(item)

        unique = dedupe(planned)
        result.merged = len(planned) - len(unique)

        for item in unique:
            try:
                result.outcomes.append(await self.dispatcher.dispatch(cluster_id, item))
            except DispatchWriteFailure as exc:
                result.errors += 1
                logger.error(
                    "dispatch_audit_failed",
                    cluster_id=cluster_id,
                    record_id=item.record.id,
                    error=str(exc),
                )

        result.exhausted = await self.queue.unreported_exhausted(cluster_id)
        result.notification = await self.reporter.report(
            cluster_id, result.outcomes, result.exhausted
        )
        # Only after the report is stored, so a failed push surfaces them again
        await self.queue.mark_exhaustion_reported(result.exhausted)
        return result

    # ------------------------------------------------------------------
    # Manual fix
    # ------------------------------------------------------------------

    async def apply_fix(
        self,
        cluster_id: str,
        record_id: str,
        fix_type: Optional[ActionType] = None,
    ) -> DispatchOutcome:
        """Operator-initiated remediation of one record, bypassing the policy gate.

        Args:
            cluster_id: Cluster owning the record.
            record_id: Problem record to fix.
            fix_type: Action to apply; resolved from the record kind when omitted.

        Raises:
            ProblemNotFound: no such record.
            UnresolvableTarget: no target or required parameter for the action.
            PolicyDenied: the target lies in a protected namespace.
            ClusterBusy: a cycle currently holds the cluster.
        """
        record = await self.store.get_problem(cluster_id, record_id)
        if record is None:
            raise ProblemNotFound(f"Problem {record_id} not found in cluster {cluster_id}")

        resolved = target_resolver.resolve(record)
        if isinstance(resolved, target_resolver.Skip):
            await self.dispatcher.record_skip(cluster_id, record, resolved.reason)
            raise UnresolvableTarget(resolved.reason)
        if resolved.namespace in settings.protected_namespaces:
            raise PolicyDenied(f"namespace {resolved.namespace} is protected")

        try:
            if fix_type is not None:
                action = action_resolver.build_action(
                    fix_type, resolved, record.detail, reason="manual_fix"
                )
            else:
                action = action_resolver.resolve(
                    record.kind,
                    resolved,
                    record.detail,
                    replica_increment=settings.scale_replica_increment,
                    max_replicas=settings.scale_max_replicas,
                )
        except UnresolvableTarget as exc:
            await self.dispatcher.record_skip(cluster_id, record, exc.reason)
            raise

        async with self.lock.hold(cluster_id) as acquired:
            if not acquired:
                raise ClusterBusy(f"cluster {cluster_id} is being reconciled")
            outcome = await self.dispatcher.dispatch(
                cluster_id, PlannedRemediation(record=record, target=resolved, action=action)
            )
            await self.reporter.report(cluster_id, [outcome])

        logger.info(
            "manual_fix_applied",
            cluster_id=cluster_id,
            record_id=record_id,
            action_type=action.action_type.value,
            status=outcome.status.value,
        )
        return outcome
