"""
Pod observation builder.

Turns a pod snapshot reported by the executor agent into ``pod`` problem
records.  Each unhealthy pod yields at most one health observation, chosen
by priority: container back-off, then running-but-not-ready, then a high
restart count.  Separately, when fewer than ``missing_limits_ratio`` percent
of the pods declare resource limits, a small batch of pods lacking limits is
reported as ``missing_resource_limits``.
"""

import uuid
from typing import Any, Optional

import structlog

from .config import settings
from .models import (
    ContainerObservation,
    PodObservationDetail,
    ProblemRecord,
    ProblemSource,
    Severity,
    as_int,
)

logger = structlog.get_logger(__name__)

BACKOFF_REASONS = {
    "CrashLoopBackOff": "crash_loop_backoff",
    "ImagePullBackOff": "image_pull_backoff",
}

KIND_SEVERITY = {
    "crash_loop_backoff": Severity.CRITICAL,
    "image_pull_backoff": Severity.CRITICAL,
    "pod_not_ready": Severity.HIGH,
    "high_restart_count": Severity.HIGH,
    "missing_resource_limits": Severity.MEDIUM,
}

OBSERVATION_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "autoheal/pod-observation")


def observation_id(cluster_id: str, namespace: str, pod_name: str, kind: str) -> str:
    """Stable id so the same condition on the same pod is recorded once."""
    return str(uuid.uuid5(OBSERVATION_ID_NAMESPACE, f"{cluster_id}/{namespace}/{pod_name}/{kind}"))


def _container_has_limits(data: dict[str, Any]) -> bool:
    if "has_limits" in data:
        return bool(data["has_limits"])
    limits = (data.get("resources") or {}).get("limits")
    return bool(limits)


def _waiting_reason(data: dict[str, Any]) -> Optional[str]:
    if data.get("waiting_reason"):
        return data["waiting_reason"]
    return (data.get("state") or {}).get("reason")


def parse_pod(data: dict[str, Any]) -> PodObservationDetail:
    """Normalise one pod entry of an agent snapshot."""
    restarts = as_int(data.get("restarts")) or as_int(data.get("total_restarts"))
    return PodObservationDetail(
        pod_name=data.get("name") or data.get("pod_name") or "",
        namespace=data.get("namespace") or "default",
        phase=data.get("phase") or data.get("status") or "",
        ready=data.get("ready"),
        restarts=restarts,
        containers=[
            ContainerObservation(
                name=c.get("name") or "",
                waiting_reason=_waiting_reason(c),
                has_limits=_container_has_limits(c),
            )
            for c in data.get("containers") or []
        ],
    )


def health_kind(pod: PodObservationDetail, restart_threshold: int) -> Optional[str]:
    """Return the most severe health condition of ``pod``, or None."""
    for container in pod.containers:
        kind = BACKOFF_REASONS.get(container.waiting_reason or "")
        if kind:
            return kind
    if pod.phase == "Running" and pod.ready is False:
        return "pod_not_ready"
    if pod.restarts > restart_threshold:
        return "high_restart_count"
    return None


def _describe(pod: PodObservationDetail, kind: str) -> str:
    if kind in ("crash_loop_backoff", "image_pull_backoff"):
        return f"Pod {pod.pod_name} is in CrashLoopBackOff or ImagePullBackOff"
    if kind == "pod_not_ready":
        return f"Pod {pod.pod_name} is stuck in not-ready state"
    if kind == "high_restart_count":
        return f"Pod {pod.pod_name} has {pod.restarts} restarts"
    return f"Pod {pod.pod_name} lacks resource limits"


def _record(cluster_id: str, pod: PodObservationDetail, kind: str) -> ProblemRecord:
    return ProblemRecord(
        id=observation_id(cluster_id, pod.namespace, pod.pod_name, kind),
        cluster_id=cluster_id,
        source=ProblemSource.POD_OBSERVATION,
        kind=kind,
        severity=KIND_SEVERITY[kind],
        detail=pod,
        description=_describe(pod, kind),
    )


def observations_from_pods(
    cluster_id: str,
    pods: list[dict[str, Any]],
    protected_namespaces: Optional[list[str]] = None,
    restart_threshold: Optional[int] = None,
    missing_limits_ratio: Optional[float] = None,
    missing_limits_batch: Optional[int] = None,
) -> list[ProblemRecord]:
    """Build pod observation records from an agent pod snapshot."""
    protected = set(
        protected_namespaces if protected_namespaces is not None else settings.protected_namespaces
    )
    threshold = restart_threshold if restart_threshold is not None else settings.restart_threshold
    ratio = missing_limits_ratio if missing_limits_ratio is not None else settings.missing_limits_ratio
    batch = missing_limits_batch if missing_limits_batch is not None else settings.missing_limits_batch

    parsed = [parse_pod(p) for p in pods]
    parsed = [p for p in parsed if p.pod_name]
    records: list[ProblemRecord] = []

    for pod in parsed:
        if pod.namespace in protected:
            continue
        kind = health_kind(pod, threshold)
        if kind:
            records.append(_record(cluster_id, pod, kind))

    if parsed:
        with_limits = sum(
            1 for p in parsed if p.containers and all(c.has_limits for c in p.containers)
        )
        percentage = with_limits * 100.0 / len(parsed)
        if percentage < ratio:
            lacking = [
                p
                for p in parsed
                if p.namespace not in protected
                and any(not c.has_limits for c in p.containers)
            ][:batch]
            records.extend(_record(cluster_id, p, "missing_resource_limits") for p in lacking)
            logger.info(
                "resource_limits_coverage_low",
                cluster_id=cluster_id,
                percentage=round(percentage, 1),
                reported=len(lacking),
            )

    logger.debug("pod_snapshot_observed", cluster_id=cluster_id, pods=len(parsed), observations=len(records))
    return records
