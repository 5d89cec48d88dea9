"""
Action resolution: maps a problem kind and its resolved target to a
remediation command.

The mapping is a closed table.  Each ``ActionType`` has exactly one builder
that produces fully-qualified parameters; kinds missing from the table fall
back to the classifier's suggested action, and only then to a pod restart.
All builders are pure: no clock, no store, no settings lookups.
"""

from typing import Any, Callable, Optional

import structlog

from .errors import UnresolvableTarget
from .models import (
    ActionType,
    PodObservationDetail,
    ProblemDetail,
    RemediationAction,
    ResolvedTarget,
)

logger = structlog.get_logger(__name__)

DEFAULT_REPLICA_INCREMENT = 2
DEFAULT_MAX_REPLICAS = 10

# Raised limits for OOM / too-low-limit anomalies
OOM_RESOURCE_DEFAULTS = {
    "memory_limit": "1Gi",
    "memory_request": "512Mi",
    "cpu_limit": "1000m",
    "cpu_request": "500m",
}

# Baseline limits for workloads that declare none
BASELINE_RESOURCE_DEFAULTS = {
    "cpu_request": "100m",
    "cpu_limit": "500m",
    "memory_request": "128Mi",
    "memory_limit": "512Mi",
}

NETWORK_POLICY_NAME = "autoheal-deny-all-ingress"


def _params_of(detail: Optional[ProblemDetail]) -> dict[str, Any]:
    if detail is None or isinstance(detail, PodObservationDetail):
        return {}
    return detail.auto_heal_params or {}


def _str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def _require_pod(target: ResolvedTarget, action: ActionType) -> str:
    if not target.pod_name:
        raise UnresolvableTarget(f"no pod name for {action.value}")
    return target.pod_name


def _require_deployment(target: ResolvedTarget, action: ActionType) -> str:
    if not target.deployment_name:
        raise UnresolvableTarget(f"no deployment name for {action.value}")
    return target.deployment_name


# =============================================================================
# BUILDERS (one per ActionType)
# =============================================================================


def build_restart_pod(
    target: ResolvedTarget, params: dict[str, Any], reason: str = "auto_heal"
) -> RemediationAction:
    pod = _require_pod(target, ActionType.RESTART_POD)
    return RemediationAction(
        ActionType.RESTART_POD,
        {"pod_name": pod, "namespace": target.namespace, "reason": reason},
    )


def build_scale_deployment(
    target: ResolvedTarget,
    params: dict[str, Any],
    increment: int = DEFAULT_REPLICA_INCREMENT,
    max_replicas: int = DEFAULT_MAX_REPLICAS,
) -> RemediationAction:
    deployment = _require_deployment(target, ActionType.SCALE_DEPLOYMENT)
    try:
        current = int(params.get("current_replicas") or 0)
    except (TypeError, ValueError):
        current = 0
    replicas = max(1, min(current + increment, max_replicas))
    return RemediationAction(
        ActionType.SCALE_DEPLOYMENT,
        {
            "deployment_name": deployment,
            "namespace": target.namespace,
            "replicas": str(replicas),
        },
    )


def _build_resources(
    target: ResolvedTarget, params: dict[str, Any], defaults: dict[str, str]
) -> RemediationAction:
    deployment = _require_deployment(target, ActionType.UPDATE_DEPLOYMENT_RESOURCES)
    # Single-container deployments conventionally name the container after
    # the deployment; used only when nothing better is known.
    container = (
        _str(params.get("container_name")) or target.container_name or deployment
    )
    out = {
        "deployment_name": deployment,
        "namespace": target.namespace,
        "container_name": container,
    }
    for key, default in defaults.items():
        out[key] = _str(params.get(key)) or default
    return RemediationAction(ActionType.UPDATE_DEPLOYMENT_RESOURCES, out)


def build_raise_resources(target: ResolvedTarget, params: dict[str, Any]) -> RemediationAction:
    return _build_resources(target, params, OOM_RESOURCE_DEFAULTS)


def build_baseline_resources(target: ResolvedTarget, params: dict[str, Any]) -> RemediationAction:
    return _build_resources(target, params, BASELINE_RESOURCE_DEFAULTS)


def build_update_image(target: ResolvedTarget, params: dict[str, Any]) -> RemediationAction:
    new_image = _str(params.get("new_image"))
    if not new_image:
        raise UnresolvableTarget("no new_image for update_deployment_image")
    deployment = _require_deployment(target, ActionType.UPDATE_DEPLOYMENT_IMAGE)
    out = {
        "deployment_name": deployment,
        "namespace": target.namespace,
        # Empty container name: the executor picks the single container or
        # the one running old_image.
        "container_name": _str(params.get("container_name")) or target.container_name or "",
        "new_image": new_image,
    }
    old_image = _str(params.get("old_image"))
    if old_image:
        out["old_image"] = old_image
    return RemediationAction(ActionType.UPDATE_DEPLOYMENT_IMAGE, out)


def build_network_policy(target: ResolvedTarget, params: dict[str, Any]) -> RemediationAction:
    return RemediationAction(
        ActionType.CREATE_NETWORK_POLICY,
        {
            "namespace": target.namespace,
            "policy_name": _str(params.get("policy_name")) or NETWORK_POLICY_NAME,
            "policy_type": _str(params.get("policy_type")) or "deny-all-ingress",
        },
    )


def build_pod_security(target: ResolvedTarget, params: dict[str, Any]) -> RemediationAction:
    return RemediationAction(
        ActionType.APPLY_POD_SECURITY,
        {
            "namespace": target.namespace,
            "level": _str(params.get("level")) or "restricted",
            "enforce": "true",
        },
    )


def build_secrets_encryption(target: ResolvedTarget, params: dict[str, Any]) -> RemediationAction:
    return RemediationAction(
        ActionType.ENABLE_SECRETS_ENCRYPTION,
        {"namespace": target.namespace},
    )


def build_restrict_rbac(target: ResolvedTarget, params: dict[str, Any]) -> RemediationAction:
    role = _str(params.get("role_name")) or target.deployment_name or ""
    if not role:
        raise UnresolvableTarget("no role name for restrict_rbac")
    return RemediationAction(
        ActionType.RESTRICT_RBAC,
        {"namespace": target.namespace, "role_name": role, "action": "restrict"},
    )


Builder = Callable[[ResolvedTarget, dict[str, Any]], RemediationAction]

BUILDERS: dict[ActionType, Builder] = {
    ActionType.RESTART_POD: build_restart_pod,
    ActionType.SCALE_DEPLOYMENT: build_scale_deployment,
    ActionType.UPDATE_DEPLOYMENT_RESOURCES: build_raise_resources,
    ActionType.UPDATE_DEPLOYMENT_IMAGE: build_update_image,
    ActionType.CREATE_NETWORK_POLICY: build_network_policy,
    ActionType.APPLY_POD_SECURITY: build_pod_security,
    ActionType.ENABLE_SECRETS_ENCRYPTION: build_secrets_encryption,
    ActionType.RESTRICT_RBAC: build_restrict_rbac,
}

# =============================================================================
# KIND TABLE
# =============================================================================

RESTART_KINDS = frozenset({"pod_restart_loop", "crash_loop_backoff"})
SCALE_KINDS = frozenset({"high_resource_usage", "resource_exhaustion"})
RAISE_RESOURCE_KINDS = frozenset({"oom_killed", "resource_limit_too_low"})
IMAGE_KINDS = frozenset({"image_pull_error"})
BASELINE_RESOURCE_KINDS = frozenset({"missing_resource_limits"})

# Pod-observation kinds and the reason tag sent with the restart
OBSERVATION_RESTART_REASONS = {
    "image_pull_backoff": "auto_heal_backoff",
    "pod_not_ready": "auto_heal_not_ready",
    "high_restart_count": "auto_heal_restarts",
}


def build_action(
    action_type: ActionType,
    target: ResolvedTarget,
    detail: Optional[ProblemDetail] = None,
    reason: str = "auto_heal",
) -> RemediationAction:
    """Build ``action_type`` for ``target`` regardless of the problem kind."""
    params = _params_of(detail)
    if action_type == ActionType.RESTART_POD:
        return build_restart_pod(target, params, reason=reason)
    return BUILDERS[action_type](target, params)


def resolve(
    kind: str,
    target: ResolvedTarget,
    detail: Optional[ProblemDetail] = None,
    *,
    replica_increment: int = DEFAULT_REPLICA_INCREMENT,
    max_replicas: int = DEFAULT_MAX_REPLICAS,
) -> RemediationAction:
    """Map ``kind`` and ``target`` to a remediation action.

    Raises:
        UnresolvableTarget: the chosen action needs a pod or deployment name
            (or image) that the target does not provide.
    """
    params = _params_of(detail)

    if kind in RESTART_KINDS:
        return build_restart_pod(target, params, reason=f"auto_heal_{kind}")

    if kind in SCALE_KINDS:
        return build_scale_deployment(
            target, params, increment=replica_increment, max_replicas=max_replicas
        )

    if kind in RAISE_RESOURCE_KINDS:
        return build_raise_resources(target, params)

    if kind in IMAGE_KINDS:
        if _str(params.get("new_image")):
            return build_update_image(target, params)
        return build_restart_pod(target, params, reason="auto_heal_image_pull_error")

    if kind in BASELINE_RESOURCE_KINDS:
        return build_baseline_resources(target, params)

    if kind in OBSERVATION_RESTART_REASONS:
        return build_restart_pod(target, params, reason=OBSERVATION_RESTART_REASONS[kind])

    # Unrecognized kind
    suggested_raw = getattr(detail, "suggested_action", None)
    suggested = ActionType.lookup(suggested_raw)
    if suggested is not None:
        logger.info("action_from_suggestion", kind=kind, action=suggested.value)
        action = build_action(suggested, target, detail, reason=f"auto_heal_{kind}")
    else:
        logger.warning(
            "unrecognized_problem_kind",
            kind=kind,
            suggested_action=suggested_raw,
            fallback=ActionType.RESTART_POD.value,
        )
        action = build_restart_pod(target, params, reason=f"auto_heal_{kind}")

    # Carry the classifier's extra parameters without overriding built ones
    extra = {
        k: _str(v)
        for k, v in params.items()
        if k not in action.params and v is not None and not isinstance(v, (dict, list))
    }
    if extra:
        action = RemediationAction(action.action_type, {**action.params, **extra})
    return action
