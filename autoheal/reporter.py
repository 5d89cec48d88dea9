"""
Run reporter: one notification per cluster per reconciliation cycle.
"""

from typing import Optional

import structlog

from . import notifier
from .dispatcher import DispatchOutcome
from .metrics import autoheal_notifications_total
from .models import Command, Notification
from .store import RemediationStore

logger = structlog.get_logger(__name__)

TITLE = "Auto-Heal Executed"
EXHAUSTED_TITLE = "Auto-Heal: commands exhausted retries"


def build_notification(
    cluster_id: str,
    outcomes: list[DispatchOutcome],
    exhausted: Optional[list[Command]] = None,
) -> Optional[Notification]:
    """Summarise a cycle, or return None when nothing happened.

    Skipped records are not actions and do not trigger a notification.
    """
    exhausted = exhausted or []
    succeeded = [o for o in outcomes if o.succeeded]
    failed = [o for o in outcomes if o.failed]
    if not succeeded and not failed and not exhausted:
        return None

    parts = []
    if succeeded or failed:
        text = f"{len(succeeded)} fix(es) applied automatically"
        if failed:
            text += f", {len(failed)} failure(s)"
        parts.append(text)
    if exhausted:
        targets = ", ".join(f"{c.action_type.value} {c.target}" for c in exhausted)
        parts.append(f"{len(exhausted)} command(s) gave up after retries: {targets}")

    if exhausted:
        severity = "critical"
    elif failed:
        severity = "warning"
    else:
        severity = "success"

    return Notification(
        cluster_id=cluster_id,
        title=EXHAUSTED_TITLE if exhausted else TITLE,
        message="; ".join(parts),
        severity=severity,
        details={
            "succeeded": len(succeeded),
            "failed": len(failed),
            "actions": [o.to_dict() for o in succeeded + failed],
            "exhausted_commands": [
                {
                    "command_id": c.id,
                    "action_type": c.action_type.value,
                    "target": c.target,
                    "retry_count": c.retry_count,
                    "error": c.error_message,
                }
                for c in exhausted
            ],
        },
    )


class RunReporter:
    """Stores the cycle notification and fans it out to external channels."""

    def __init__(self, store: RemediationStore):
        self.store = store

    async def report(
        self,
        cluster_id: str,
        outcomes: list[DispatchOutcome],
        exhausted: Optional[list[Command]] = None,
    ) -> Optional[Notification]:
        notification = build_notification(cluster_id, outcomes, exhausted)
        if notification is None:
            return None

        await self.store.push_notification(notification)
        autoheal_notifications_total.labels(severity=notification.severity).inc()
        logger.info(
            "run_reported",
            cluster_id=cluster_id,
            severity=notification.severity,
            succeeded=notification.details["succeeded"],
            failed=notification.details["failed"],
            exhausted=len(notification.details["exhausted_commands"]),
        )
        await notifier.notify_all(
            f"[{cluster_id}] {notification.message}",
            notification.severity,
            notification.title,
        )
        return notification
