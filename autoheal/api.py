"""
FastAPI application for the auto-heal engine.

Provides:
- Detector feed for problem records and pod snapshots
- Per-cluster auto-heal policy
- Lease/ack/nack endpoints for the executor agent
- Operator endpoints for reconciliation, manual fixes and history
- Health, metrics and runtime config endpoints
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
import structlog

from . import __version__
from .cluster_lock import ClusterLock
from .command_queue import CommandQueue
from .config import settings
from .config_store import get_config_store
from .dispatcher import CommandDispatcher
from .engine import ReconciliationEngine
from .errors import (
    AutoHealError,
    ClusterBusy,
    CommandNotFound,
    InvalidTransition,
    PolicyDenied,
    ProblemNotFound,
    StoreError,
    UnresolvableTarget,
)
from .logging_config import configure_logging
from .metrics import (
    metrics_middleware,
    get_metrics_response,
    autoheal_info,
    autoheal_store_available,
)
from .models import (
    ActionType,
    AutoHealSettings,
    ProblemRecord,
    ProblemSource,
    Severity,
    ThreatStatus,
    new_id,
)
from .reporter import RunReporter
from .retry_scheduler import RetryScheduler
from .scheduler import AutoHealScheduler
from .store import get_store

logger = structlog.get_logger(__name__)


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================


class ProblemIn(BaseModel):
    """A problem record reported by a detector."""

    id: Optional[str] = Field(None, description="Stable id; generated when omitted")
    source: ProblemSource
    kind: str = Field(..., description="Problem kind, e.g. crash_loop_backoff")
    severity: Severity
    description: str = ""
    detail: Dict[str, Any] = Field(default_factory=dict)
    status: Optional[ThreatStatus] = None
    created_at: Optional[datetime] = None


class ProblemBatch(BaseModel):
    problems: List[ProblemIn]


class PodSnapshot(BaseModel):
    """Pod list as collected by the executor agent."""

    pods: List[Dict[str, Any]]


class SettingsIn(BaseModel):
    enabled: bool = False
    auto_apply_anomalies: bool = False
    auto_apply_security: bool = False
    severity_threshold: Severity = Severity.HIGH
    auto_apply_security_hardening: bool = False


class LeaseRequest(BaseModel):
    limit: int = Field(10, ge=1, le=100)


class AckRequest(BaseModel):
    result: Optional[Dict[str, Any]] = None


class NackRequest(BaseModel):
    error: str = Field(..., description="Why the command failed on the cluster")
    result: Optional[Dict[str, Any]] = None


class ReconcileRequest(BaseModel):
    force: bool = False


class FixRequest(BaseModel):
    fix_type: Optional[ActionType] = Field(
        None, description="Action to apply; derived from the problem kind when omitted"
    )


class ConfigResetRequest(BaseModel):
    """Request to reset a config key to its default."""

    key: str = Field(..., description="Configuration key to reset to default")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: str
    components: Dict[str, str]


# =============================================================================
# APPLICATION STATE
# =============================================================================


class AppState:
    """Global application state."""

    def __init__(self):
        self.engine: Optional[ReconciliationEngine] = None
        self.retry: Optional[RetryScheduler] = None
        self.scheduler: Optional[AutoHealScheduler] = None


app_state = AppState()


def build_engine() -> tuple[ReconciliationEngine, RetryScheduler]:
    """Wire the engine components around the store singleton."""
    store = get_store()
    queue = CommandQueue(store)
    engine = ReconciliationEngine(
        store,
        queue=queue,
        lock=ClusterLock(store),
        dispatcher=CommandDispatcher(store, queue),
        reporter=RunReporter(store),
    )
    return engine, RetryScheduler(store, queue)


# =============================================================================
# LIFECYCLE
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management."""
    configure_logging(settings.log_level, settings.debug)
    logger.info("Starting auto-heal engine", host=settings.host, port=settings.port)

    store = get_store()
    await store.connect()
    autoheal_store_available.set(1 if store.available else 0)

    app_state.engine, app_state.retry = build_engine()
    app_state.scheduler = AutoHealScheduler(app_state.engine, app_state.retry)
    await app_state.scheduler.start()

    yield

    # Shutdown
    logger.info("Shutting down auto-heal engine")
    if app_state.scheduler:
        await app_state.scheduler.stop()
    await get_store().close()


# =============================================================================
# FASTAPI APP
# =============================================================================


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Auto-Heal API",
        description="Kubernetes auto-heal reconciliation and command dispatch",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    metrics_middleware(app)

    # Register routes
    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(feed_router)
    app.include_router(agent_router)
    app.include_router(operator_router)
    app.include_router(config_router)

    return app


# =============================================================================
# HELPERS
# =============================================================================


def _engine() -> ReconciliationEngine:
    if not app_state.engine:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return app_state.engine


def _http_error(exc: AutoHealError) -> HTTPException:
    """Map an engine error to an HTTP error response."""
    if isinstance(exc, (CommandNotFound, ProblemNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (InvalidTransition, ClusterBusy)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, PolicyDenied):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, UnresolvableTarget):
        return HTTPException(status_code=422, detail=exc.reason)
    if isinstance(exc, StoreError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


# =============================================================================
# HEALTH ROUTES
# =============================================================================

health_router = APIRouter(tags=["Health"])


@health_router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    store_healthy = await get_store().health_check()
    autoheal_store_available.set(1 if store_healthy else 0)
    autoheal_info.info({"version": __version__})

    scheduler = app_state.scheduler
    return HealthResponse(
        status="healthy" if store_healthy else "degraded",
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
        components={
            "engine": "ready" if app_state.engine else "not_initialized",
            "store": "healthy" if store_healthy else "unhealthy",
            "scheduler": "running" if scheduler and scheduler.get_status()["running"] else "stopped",
        },
    )


@health_router.get("/ready")
async def readiness_check():
    """Readiness check for Kubernetes."""
    if not app_state.engine:
        raise HTTPException(status_code=503, detail="Engine not ready")
    if not get_store().available:
        raise HTTPException(status_code=503, detail="Store unavailable")
    return {"status": "ready"}


@health_router.get("/live")
async def liveness_check():
    """Liveness check for Kubernetes."""
    return {"status": "alive"}


# =============================================================================
# METRICS ROUTES
# =============================================================================

metrics_router = APIRouter(tags=["Metrics"])


@metrics_router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return get_metrics_response()


# =============================================================================
# DETECTOR FEED / POLICY ROUTES
# =============================================================================

feed_router = APIRouter(prefix="/api/v1/clusters", tags=["Feed"])


@feed_router.post("/{cluster_id}/problems")
async def ingest_problems(cluster_id: str, body: ProblemBatch) -> Dict[str, Any]:
    """Store problem records reported by detectors."""
    engine = _engine()
    try:
        records = [
            ProblemRecord.from_dict(
                {
                    **p.model_dump(mode="json", exclude_none=True),
                    "id": p.id or new_id(),
                    "cluster_id": cluster_id,
                }
            )
            for p in body.problems
        ]
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    try:
        stored = await engine.ingest(records)
    except AutoHealError as exc:
        raise _http_error(exc)
    return {"stored": [r.id for r in stored], "ignored": len(records) - len(stored)}


@feed_router.post("/{cluster_id}/pod-snapshot")
async def ingest_pod_snapshot(cluster_id: str, body: PodSnapshot) -> Dict[str, Any]:
    """Turn an agent pod snapshot into pod observation records."""
    engine = _engine()
    try:
        stored = await engine.ingest_pod_snapshot(cluster_id, body.pods)
    except AutoHealError as exc:
        raise _http_error(exc)
    except (TypeError, ValueError, AttributeError) as exc:
        raise HTTPException(status_code=422, detail=f"malformed pod snapshot: {exc}")
    return {
        "observations": [
            {"id": r.id, "kind": r.kind, "pod": f"{r.detail.namespace}/{r.detail.pod_name}"}
            for r in stored
        ]
    }


@feed_router.get("/{cluster_id}/settings")
async def get_cluster_settings(cluster_id: str) -> Dict[str, Any]:
    """Return the cluster's auto-heal policy (defaults when none is stored)."""
    try:
        policy = await _engine().store.get_settings(cluster_id)
    except AutoHealError as exc:
        raise _http_error(exc)
    return {
        "cluster_id": cluster_id,
        "configured": policy is not None,
        "settings": (policy or AutoHealSettings()).to_dict(),
    }


@feed_router.put("/{cluster_id}/settings")
async def put_cluster_settings(cluster_id: str, body: SettingsIn) -> Dict[str, Any]:
    """Replace the cluster's auto-heal policy."""
    policy = AutoHealSettings.from_dict(body.model_dump(mode="json"))
    try:
        await _engine().store.put_settings(cluster_id, policy)
    except AutoHealError as exc:
        raise _http_error(exc)
    logger.info("cluster_settings_updated", cluster_id=cluster_id, **policy.to_dict())
    return {"cluster_id": cluster_id, "settings": policy.to_dict()}


# =============================================================================
# EXECUTOR AGENT ROUTES
# =============================================================================

agent_router = APIRouter(prefix="/api/v1/agent", tags=["Agent"])


@agent_router.post("/{cluster_id}/commands/lease")
async def lease_commands(cluster_id: str, body: LeaseRequest) -> Dict[str, Any]:
    """Hand pending commands to the executor agent, oldest first."""
    try:
        commands = await _engine().queue.lease(cluster_id, limit=body.limit)
    except AutoHealError as exc:
        raise _http_error(exc)
    return {"commands": [c.to_dict() for c in commands]}


@agent_router.post("/commands/{command_id}/ack")
async def ack_command(command_id: str, body: AckRequest) -> Dict[str, Any]:
    """Report successful execution of a leased command."""
    try:
        command = await _engine().queue.ack(command_id, body.result)
    except AutoHealError as exc:
        raise _http_error(exc)
    return command.to_dict()


@agent_router.post("/commands/{command_id}/nack")
async def nack_command(command_id: str, body: NackRequest) -> Dict[str, Any]:
    """Report failed execution of a leased command."""
    try:
        command = await _engine().queue.nack(command_id, body.error, body.result)
    except AutoHealError as exc:
        raise _http_error(exc)
    return command.to_dict()


# =============================================================================
# OPERATOR ROUTES
# =============================================================================

operator_router = APIRouter(prefix="/api/v1", tags=["Operator"])


@operator_router.post("/clusters/{cluster_id}/reconcile")
async def reconcile(cluster_id: str, body: Optional[ReconcileRequest] = None) -> Dict[str, Any]:
    """Run one reconciliation cycle now."""
    force = body.force if body else False
    try:
        result = await _engine().run_cycle(cluster_id, force=force)
    except AutoHealError as exc:
        raise _http_error(exc)
    if not result.acquired:
        raise HTTPException(status_code=409, detail="Cluster is being reconciled")
    return result.to_dict()


@operator_router.post("/clusters/{cluster_id}/problems/{record_id}/fix")
async def apply_fix(
    cluster_id: str, record_id: str, body: Optional[FixRequest] = None
) -> Dict[str, Any]:
    """Apply a fix to one problem record, bypassing the policy gate."""
    fix_type = body.fix_type if body else None
    try:
        outcome = await _engine().apply_fix(cluster_id, record_id, fix_type)
    except AutoHealError as exc:
        raise _http_error(exc)
    return outcome.to_dict()


@operator_router.get("/clusters/{cluster_id}/actions")
async def list_actions(cluster_id: str, count: int = 50) -> Dict[str, Any]:
    """Return the cluster's action log, newest first."""
    try:
        entries = await _engine().store.list_action_log(cluster_id, count)
    except AutoHealError as exc:
        raise _http_error(exc)
    return {"actions": [e.to_dict() for e in entries]}


@operator_router.get("/clusters/{cluster_id}/commands")
async def list_commands(cluster_id: str, count: int = 100) -> Dict[str, Any]:
    """Return the cluster's commands, newest first."""
    try:
        commands = await _engine().store.list_commands(cluster_id, count)
    except AutoHealError as exc:
        raise _http_error(exc)
    return {"commands": [c.to_dict() for c in commands]}


@operator_router.get("/clusters/{cluster_id}/notifications")
async def list_notifications(cluster_id: str, count: int = 50) -> Dict[str, Any]:
    """Return stored run notifications, newest first."""
    try:
        items = await _engine().store.list_notifications(cluster_id, count)
    except AutoHealError as exc:
        raise _http_error(exc)
    return {"notifications": items}


@operator_router.get("/status")
async def scheduler_status() -> Dict[str, Any]:
    """Return scheduler loop status."""
    if not app_state.scheduler:
        return {"running": False}
    return app_state.scheduler.get_status()


# =============================================================================
# CONFIG ROUTES
# =============================================================================

config_router = APIRouter(prefix="/api/v1", tags=["Config"])


@config_router.get("/config")
async def get_config() -> Dict[str, Any]:
    """Return runtime-tunable values (Redis overrides merged with defaults)."""
    store = get_config_store()
    return await store.get_all()


@config_router.patch("/config")
async def patch_config(body: Dict[str, Any]) -> Dict[str, Any]:
    """Update one or more configuration keys at runtime."""
    store = get_config_store()
    errors: List[str] = []
    updated: List[str] = []

    for key, value in body.items():
        try:
            await store.set(key, value)
            updated.append(key)
        except (ValueError, RuntimeError) as exc:
            errors.append(f"{key}: {exc}")

    if errors:
        raise HTTPException(status_code=400, detail=errors)

    return {"updated": updated}


@config_router.post("/config/reset")
async def reset_config(body: ConfigResetRequest) -> Dict[str, str]:
    """Reset a configuration key to its environment default."""
    store = get_config_store()
    try:
        await store.reset(body.key)
    except (ValueError, RuntimeError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    return {"status": "ok", "key": body.key}


# =============================================================================
# ENTRY POINT
# =============================================================================

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "autoheal.api:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
