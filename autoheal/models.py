"""
Data model for the auto-heal engine.

Problem records arrive from external detectors in three variants.  Each
variant carries its own ``detail`` shape; ``ProblemRecord.source`` is the tag
that selects it.  Commands and action log entries are the durable records
this engine writes.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def as_int(value: Any, default: int = 0) -> int:
    """Coerce an agent-reported count; non-numeric values become ``default``."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# =============================================================================
# ENUMERATIONS
# =============================================================================


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def ordinal(self) -> int:
        return SEVERITY_ORDER.index(self)


SEVERITY_ORDER: list[Severity] = [
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
]


class ProblemSource(str, Enum):
    """Variant tag of a problem record (also the audit ``trigger_entity_type``)."""

    ANOMALY = "anomaly"
    SECURITY_THREAT = "security_threat"
    POD_OBSERVATION = "pod"


class ActionType(str, Enum):
    """Closed set of remediation commands understood by the executor agent."""

    RESTART_POD = "restart_pod"
    SCALE_DEPLOYMENT = "scale_deployment"
    UPDATE_DEPLOYMENT_RESOURCES = "update_deployment_resources"
    UPDATE_DEPLOYMENT_IMAGE = "update_deployment_image"
    CREATE_NETWORK_POLICY = "create_network_policy"
    APPLY_POD_SECURITY = "apply_pod_security"
    ENABLE_SECRETS_ENCRYPTION = "enable_secrets_encryption"
    RESTRICT_RBAC = "restrict_rbac"

    @classmethod
    def lookup(cls, value: Optional[str]) -> Optional["ActionType"]:
        """Return the member named by ``value`` or None if it is not one."""
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


# Namespace-hardening actions; never dispatched unattended unless the
# cluster policy explicitly allows it.
HARDENING_ACTIONS = frozenset(
    {
        ActionType.CREATE_NETWORK_POLICY,
        ActionType.APPLY_POD_SECURITY,
        ActionType.ENABLE_SECRETS_ENCRYPTION,
        ActionType.RESTRICT_RBAC,
    }
)


class CommandStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class ActionLogStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ThreatStatus(str, Enum):
    ACTIVE = "active"
    INVESTIGATING = "investigating"
    MITIGATED = "mitigated"
    FALSE_POSITIVE = "false_positive"


# =============================================================================
# PROBLEM RECORD DETAILS (tagged union)
# =============================================================================


@dataclass
class AnomalyDetail:
    """Classifier output attached to an anomaly."""

    suggested_action: Optional[str] = None
    auto_heal_params: dict[str, Any] = field(default_factory=dict)
    affected_pods: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnomalyDetail":
        return cls(
            suggested_action=data.get("suggested_action"),
            auto_heal_params=dict(data.get("auto_heal_params") or {}),
            affected_pods=[p for p in data.get("affected_pods") or [] if isinstance(p, str)],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "suggested_action": self.suggested_action,
            "auto_heal_params": self.auto_heal_params,
            "affected_pods": self.affected_pods,
        }


@dataclass
class AffectedResource:
    namespace: str = "default"
    name: str = ""
    container: str = ""
    kind: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AffectedResource":
        return cls(
            namespace=data.get("namespace") or "default",
            name=data.get("name") or "",
            container=data.get("container") or "",
            kind=data.get("kind") or "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace,
            "name": self.name,
            "container": self.container,
            "kind": self.kind,
        }


@dataclass
class ThreatDetail:
    """Security threat payload."""

    suggested_action: Optional[str] = None
    auto_heal_params: dict[str, Any] = field(default_factory=dict)
    affected_resources: list[AffectedResource] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ThreatDetail":
        return cls(
            suggested_action=data.get("suggested_action"),
            auto_heal_params=dict(data.get("auto_heal_params") or {}),
            affected_resources=[
                AffectedResource.from_dict(r)
                for r in data.get("affected_resources") or []
                if isinstance(r, dict)
            ],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "suggested_action": self.suggested_action,
            "auto_heal_params": self.auto_heal_params,
            "affected_resources": [r.to_dict() for r in self.affected_resources],
        }


@dataclass
class ContainerObservation:
    name: str
    waiting_reason: Optional[str] = None
    has_limits: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "waiting_reason": self.waiting_reason,
            "has_limits": self.has_limits,
        }


@dataclass
class PodObservationDetail:
    """Snapshot of one pod as reported by the executor agent."""

    pod_name: str
    namespace: str = "default"
    phase: str = ""
    ready: Optional[bool] = None
    restarts: int = 0
    containers: list[ContainerObservation] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PodObservationDetail":
        return cls(
            pod_name=data.get("pod_name") or "",
            namespace=data.get("namespace") or "default",
            phase=data.get("phase") or "",
            ready=data.get("ready"),
            restarts=as_int(data.get("restarts")),
            containers=[
                ContainerObservation(
                    name=c.get("name") or "",
                    waiting_reason=c.get("waiting_reason"),
                    has_limits=bool(c.get("has_limits", True)),
                )
                for c in data.get("containers") or []
            ],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pod_name": self.pod_name,
            "namespace": self.namespace,
            "phase": self.phase,
            "ready": self.ready,
            "restarts": self.restarts,
            "containers": [c.to_dict() for c in self.containers],
        }


ProblemDetail = Union[AnomalyDetail, ThreatDetail, PodObservationDetail]

DETAIL_TYPES: dict[ProblemSource, type] = {
    ProblemSource.ANOMALY: AnomalyDetail,
    ProblemSource.SECURITY_THREAT: ThreatDetail,
    ProblemSource.POD_OBSERVATION: PodObservationDetail,
}


@dataclass
class ProblemRecord:
    """A detected problem (anomaly, security threat, or pod observation)."""

    id: str
    cluster_id: str
    source: ProblemSource
    kind: str
    severity: Severity
    detail: ProblemDetail
    description: str = ""
    resolved: bool = False
    status: Optional[ThreatStatus] = None
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    def __post_init__(self):
        expected = DETAIL_TYPES[self.source]
        if not isinstance(self.detail, expected):
            raise TypeError(
                f"{self.source.value} record requires {expected.__name__}, "
                f"got {type(self.detail).__name__}"
            )
        if self.source == ProblemSource.SECURITY_THREAT and self.status is None:
            self.status = ThreatStatus.ACTIVE

    @property
    def is_open(self) -> bool:
        """True while the record still awaits remediation."""
        if self.source == ProblemSource.SECURITY_THREAT:
            return self.status == ThreatStatus.ACTIVE
        return not self.resolved

    def summary(self) -> str:
        """Human-readable trigger reason for the audit log."""
        text = self.description or self.kind
        return f"[{self.severity.value}] {self.kind}: {text}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "cluster_id": self.cluster_id,
            "source": self.source.value,
            "kind": self.kind,
            "severity": self.severity.value,
            "detail": self.detail.to_dict(),
            "description": self.description,
            "resolved": self.resolved,
            "status": self.status.value if self.status else None,
            "created_at": _iso(self.created_at),
            "resolved_at": _iso(self.resolved_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProblemRecord":
        source = ProblemSource(data["source"])
        detail_cls = DETAIL_TYPES[source]
        status = data.get("status")
        return cls(
            id=data.get("id") or new_id(),
            cluster_id=data["cluster_id"],
            source=source,
            kind=data["kind"],
            severity=Severity(data["severity"]),
            detail=detail_cls.from_dict(data.get("detail") or {}),
            description=data.get("description") or "",
            resolved=bool(data.get("resolved", False)),
            status=ThreatStatus(status) if status else None,
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            resolved_at=_parse_dt(data.get("resolved_at")),
        )


# =============================================================================
# RESOLUTION RESULTS
# =============================================================================


@dataclass(frozen=True)
class ResolvedTarget:
    """The Kubernetes object a remediation acts upon. Never persisted."""

    namespace: str
    pod_name: Optional[str] = None
    deployment_name: Optional[str] = None
    container_name: Optional[str] = None
    # True when deployment_name came from the pod-name heuristic
    deployment_derived: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.pod_name or self.deployment_name or "")

    def describe(self) -> str:
        return f"{self.namespace}/{self.pod_name or self.deployment_name}"


@dataclass(frozen=True)
class RemediationAction:
    action_type: ActionType
    params: dict[str, str]

    def to_dict(self) -> dict[str, Any]:
        return {"action_type": self.action_type.value, "params": dict(self.params)}


# =============================================================================
# DURABLE RECORDS
# =============================================================================


@dataclass
class Command:
    """A queued instruction for the executor agent."""

    cluster_id: str
    action_type: ActionType
    params: dict[str, str]
    id: str = field(default_factory=new_id)
    status: CommandStatus = CommandStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: Optional[datetime] = None
    leased_at: Optional[datetime] = None
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    exhaustion_reported: bool = False

    @property
    def is_exhausted(self) -> bool:
        return (
            self.status == CommandStatus.FAILED
            and self.retry_count >= self.max_retries
        )

    @property
    def target(self) -> str:
        name = (
            self.params.get("pod_name")
            or self.params.get("deployment_name")
            or self.params.get("role_name")
            or ""
        )
        return f"{self.params.get('namespace', 'default')}/{name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "cluster_id": self.cluster_id,
            "action_type": self.action_type.value,
            "params": self.params,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "next_retry_at": _iso(self.next_retry_at),
            "leased_at": _iso(self.leased_at),
            "result": self.result,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "exhaustion_reported": self.exhaustion_reported,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Command":
        return cls(
            id=data["id"],
            cluster_id=data["cluster_id"],
            action_type=ActionType(data["action_type"]),
            params={k: str(v) for k, v in (data.get("params") or {}).items()},
            status=CommandStatus(data["status"]),
            retry_count=int(data.get("retry_count", 0)),
            max_retries=int(data.get("max_retries", 3)),
            next_retry_at=_parse_dt(data.get("next_retry_at")),
            leased_at=_parse_dt(data.get("leased_at")),
            result=data.get("result"),
            error_message=data.get("error_message"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
            exhaustion_reported=bool(data.get("exhaustion_reported", False)),
        )


@dataclass
class ActionLogEntry:
    """Append-only audit record of one remediation attempt."""

    cluster_id: str
    action_type: str
    trigger_reason: str
    trigger_entity_type: str
    trigger_entity_id: Optional[str] = None
    action_details: dict[str, Any] = field(default_factory=dict)
    status: ActionLogStatus = ActionLogStatus.EXECUTING
    id: str = field(default_factory=new_id)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "cluster_id": self.cluster_id,
            "action_type": self.action_type,
            "trigger_reason": self.trigger_reason,
            "trigger_entity_id": self.trigger_entity_id,
            "trigger_entity_type": self.trigger_entity_type,
            "action_details": self.action_details,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "result": self.result,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActionLogEntry":
        return cls(
            id=data["id"],
            cluster_id=data["cluster_id"],
            action_type=data["action_type"],
            trigger_reason=data.get("trigger_reason", ""),
            trigger_entity_id=data.get("trigger_entity_id"),
            trigger_entity_type=data.get("trigger_entity_type", ""),
            action_details=data.get("action_details") or {},
            status=ActionLogStatus(data["status"]),
            started_at=_parse_dt(data.get("started_at")) or utcnow(),
            completed_at=_parse_dt(data.get("completed_at")),
            result=data.get("result"),
            error_message=data.get("error_message"),
        )


@dataclass
class AutoHealSettings:
    """Per-cluster remediation policy. Read-only to the engine."""

    enabled: bool = False
    auto_apply_anomalies: bool = False
    auto_apply_security: bool = False
    severity_threshold: Severity = Severity.HIGH
    auto_apply_security_hardening: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "auto_apply_anomalies": self.auto_apply_anomalies,
            "auto_apply_security": self.auto_apply_security,
            "severity_threshold": self.severity_threshold.value,
            "auto_apply_security_hardening": self.auto_apply_security_hardening,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AutoHealSettings":
        return cls(
            enabled=bool(data.get("enabled", False)),
            auto_apply_anomalies=bool(data.get("auto_apply_anomalies", False)),
            auto_apply_security=bool(data.get("auto_apply_security", False)),
            severity_threshold=Severity(data.get("severity_threshold") or "high"),
            auto_apply_security_hardening=bool(
                data.get("auto_apply_security_hardening", False)
            ),
        )


@dataclass
class Notification:
    cluster_id: str
    title: str
    message: str
    severity: str = "info"
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "title": self.title,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
            "created_at": _iso(self.created_at),
        }
