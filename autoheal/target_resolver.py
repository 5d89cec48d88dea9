"""
Target resolution for problem records.

Finds the concrete pod and/or deployment a remediation should act on.  The
pod name is taken from the first source that yields one:

1. explicit fields of the record (``auto_heal_params``, the first affected
   resource of a threat, or the observed pod itself);
2. the first entry of ``affected_pods`` (``"namespace/pod"`` or a bare name);
3. a ``pod <name>`` mention in the free-text description.

When only a pod is known, the deployment name is derived by stripping the
ReplicaSet hash and pod suffix.  That derivation is a heuristic: it holds for
pods created by Deployments with generated names and is wrong for
StatefulSets, bare pods, or custom naming schemes.
"""

import re
from dataclasses import dataclass
from typing import Optional, Union

import structlog

from .models import (
    AnomalyDetail,
    PodObservationDetail,
    ProblemRecord,
    ResolvedTarget,
    ThreatDetail,
)

logger = structlog.get_logger(__name__)

DEFAULT_NAMESPACE = "default"
NO_TARGET_REASON = "no target identified"

POD_MENTION_RE = re.compile(r"\b(?i:pod)[:\s]+([a-z0-9][a-z0-9-]*)")


@dataclass(frozen=True)
class Skip:
    """Resolution outcome for records that cannot be acted upon."""

    reason: str = NO_TARGET_REASON


@dataclass
class _Hints:
    pod_name: Optional[str] = None
    deployment_name: Optional[str] = None
    namespace: Optional[str] = None
    container_name: Optional[str] = None


def _clean(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _params_hints(params: dict) -> _Hints:
    return _Hints(
        pod_name=_clean(params.get("pod_name")),
        deployment_name=_clean(params.get("deployment_name")),
        namespace=_clean(params.get("namespace")),
        container_name=_clean(params.get("container_name")),
    )


def _explicit_hints(record: ProblemRecord) -> _Hints:
    """Collect the explicit target fields of each record variant."""
    detail = record.detail
    if isinstance(detail, PodObservationDetail):
        lacking = [c.name for c in detail.containers if not c.has_limits and c.name]
        first = [c.name for c in detail.containers if c.name]
        return _Hints(
            pod_name=_clean(detail.pod_name),
            namespace=_clean(detail.namespace),
            container_name=(lacking or first or [None])[0],
        )

    hints = _params_hints(detail.auto_heal_params)
    if isinstance(detail, ThreatDetail) and detail.affected_resources:
        resource = detail.affected_resources[0]
        name = _clean(resource.name)
        if resource.kind.lower() == "pod":
            hints.pod_name = hints.pod_name or name
        else:
            hints.deployment_name = hints.deployment_name or name
        hints.namespace = hints.namespace or _clean(resource.namespace)
        hints.container_name = hints.container_name or _clean(resource.container)
    return hints


def parse_affected_pod(entry: str) -> tuple[Optional[str], Optional[str]]:
    """Split ``"namespace/pod"`` or a bare pod name into (namespace, pod)."""
    entry = entry.strip()
    if "/" in entry:
        namespace, _, pod = entry.partition("/")
        return _clean(namespace), _clean(pod)
    return None, _clean(entry)


def extract_pod_from_text(text: Optional[str]) -> Optional[str]:
    """Find a ``pod <name>`` / ``pod: <name>`` mention in free text."""
    if not text:
        return None
    match = POD_MENTION_RE.search(text)
    return match.group(1) if match else None


def derive_deployment_name(pod_name: Optional[str]) -> Optional[str]:
    """Strip the ReplicaSet hash and pod suffix from a pod name.

    ``api-7d8f-abc`` -> ``api``.  Names with fewer than three segments yield
    None.  Heuristic only.
    """
    if not pod_name:
        return None
    parts = pod_name.split("-")
    if len(parts) < 3:
        return None
    return "-".join(parts[:-2]) or None


def resolve(record: ProblemRecord) -> Union[ResolvedTarget, Skip]:
    """Resolve the target of ``record`` or return ``Skip``."""
    hints = _explicit_hints(record)
    namespace = hints.namespace
    pod_name = hints.pod_name
    source = "explicit"

    affected = (
        record.detail.affected_pods if isinstance(record.detail, AnomalyDetail) else []
    )
    if not pod_name and affected:
        pod_namespace, pod_name = parse_affected_pod(affected[0])
        namespace = pod_namespace or namespace
        source = "affected_pods"

    if not pod_name:
        pod_name = extract_pod_from_text(record.description)
        source = "description"

    deployment_name = hints.deployment_name
    derived = False
    if not deployment_name and pod_name:
        deployment_name = derive_deployment_name(pod_name)
        derived = deployment_name is not None

    if not pod_name and not deployment_name:
        logger.info(
            "target_unresolved",
            record_id=record.id,
            kind=record.kind,
            source=record.source.value,
        )
        return Skip()

    target = ResolvedTarget(
        namespace=namespace or DEFAULT_NAMESPACE,
        pod_name=pod_name,
        deployment_name=deployment_name,
        container_name=hints.container_name,
        deployment_derived=derived,
    )
    logger.debug(
        "target_resolved",
        record_id=record.id,
        target=target.describe(),
        via=source if pod_name else "explicit",
    )
    return target
