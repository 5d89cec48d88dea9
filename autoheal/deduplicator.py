"""
Per-cycle deduplication of planned remediations.

Records that resolve to the same ``(namespace, pod or deployment)`` collapse
into one remediation, and so do records whose actions apply the same change
to the same resource (namespace-wide hardening raised from several pods).  The
first occurrence wins, so callers order input by precedence: anomalies (most
specific diagnosis), then threats, then raw pod observations.

Losing records ride along with the winner.  Only those whose own action is
the same change as the winner's are closed with it; the others stay open
and are planned again next cycle.
"""

from dataclasses import dataclass, field

import structlog

from .models import HARDENING_ACTIONS, ProblemRecord, RemediationAction, ResolvedTarget

logger = structlog.get_logger(__name__)


def command_key(action: RemediationAction) -> tuple[str, str]:
    """The action type and the resource it mutates.

    Hardening acts on the whole namespace (or one role); everything else on
    its pod or deployment.  Tags such as the restart ``reason`` do not count.
    """
    params = action.params
    if action.action_type in HARDENING_ACTIONS:
        resource = params.get("role_name", "")
    else:
        resource = params.get("pod_name") or params.get("deployment_name") or ""
    return action.action_type.value, f"{params.get('namespace', '')}/{resource}"


@dataclass
class PlannedRemediation:
    """A resolved action waiting for dispatch."""

    record: ProblemRecord
    target: ResolvedTarget
    action: RemediationAction
    merged: list["PlannedRemediation"] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return self.target.key

    @property
    def command_key(self) -> tuple[str, str]:
        return command_key(self.action)

    @property
    def closing_records(self) -> list[ProblemRecord]:
        """The winner plus merged records its command also remediates."""
        return [self.record] + [
            m.record for m in self.merged if m.command_key == self.command_key
        ]

    @property
    def deferred_records(self) -> list[ProblemRecord]:
        """Merged records that need a different command on a later cycle."""
        return [m.record for m in self.merged if m.command_key != self.command_key]


def dedupe(planned: list[PlannedRemediation]) -> list[PlannedRemediation]:
    """Return ``planned`` with one remediation per target and per command, order kept."""
    winners: list[PlannedRemediation] = []
    by_target: dict[tuple[str, str], PlannedRemediation] = {}
    by_command: dict[tuple[str, str], PlannedRemediation] = {}
    for item in planned:
        existing = by_target.get(item.key) or by_command.get(item.command_key)
        if existing is None:
            winners.append(item)
            by_target[item.key] = item
            by_command[item.command_key] = item
            continue
        existing.merged.append(item)
        existing.merged.extend(item.merged)
        item.merged = []
        by_target.setdefault(item.key, existing)
        logger.info(
            "remediation_merged",
            target="/".join(item.key),
            kept=existing.record.id,
            kept_action=existing.action.action_type.value,
            dropped=item.record.id,
            dropped_action=item.action.action_type.value,
            same_command=item.command_key == existing.command_key,
        )
    return winners
