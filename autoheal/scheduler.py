"""
Periodic drivers for reconciliation and retry cycles.

Two independent loops: the reconcile loop runs one cycle per known cluster
every ``reconcile_interval_seconds`` (clusters in parallel, bounded by
``max_concurrent_clusters``), and the retry loop re-arms failed commands
every ``retry_interval_seconds``.  Intervals are re-read from the config
store on every iteration.
"""

import asyncio
import time
from typing import Any

import structlog

from .config import settings
from .config_store import get_config_store
from .engine import CycleResult, ReconciliationEngine
from .metrics import autoheal_store_available
from .retry_scheduler import RetryScheduler

logger = structlog.get_logger(__name__)


class AutoHealScheduler:
    """Runs the reconcile and retry loops as asyncio tasks."""

    def __init__(self, engine: ReconciliationEngine, retry: RetryScheduler):
        self._engine = engine
        self._retry = retry
        self._reconcile_interval = settings.reconcile_interval_seconds
        self._retry_interval = settings.retry_interval_seconds
        self._max_concurrent = settings.max_concurrent_clusters

        self._running = False
        self._tasks: list[asyncio.Task] = []

        # Tracking for the status endpoint
        self._last_reconcile: float = 0.0
        self._last_retry: float = 0.0
        self._total_cycles: int = 0
        self._failed_cycles: int = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Launch both loops."""
        self._running = True
        self._tasks = [
            asyncio.create_task(self._reconcile_loop()),
            asyncio.create_task(self._retry_loop()),
        ]
        logger.info(
            "AutoHealScheduler started",
            reconcile_interval=self._reconcile_interval,
            retry_interval=self._retry_interval,
        )

    async def stop(self):
        """Cancel both loops and wait for in-flight cycles to unwind."""
        self._running = False
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("AutoHealScheduler stopped")

    async def _refresh_intervals(self):
        """Re-read loop intervals and concurrency from the config store."""
        store = get_config_store()
        try:
            self._reconcile_interval = await store.get("reconcile_interval_seconds")
            self._retry_interval = await store.get("retry_interval_seconds")
            self._max_concurrent = await store.get("max_concurrent_clusters")
        except Exception as exc:
            logger.debug("config refresh failed", error=str(exc))

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    async def reconcile_all(self) -> list[CycleResult]:
        """Run one cycle for every known cluster."""
        clusters = await self._engine.store.known_clusters()
        semaphore = asyncio.Semaphore(max(1, self._max_concurrent))

        async def _one(cluster_id: str) -> CycleResult:
            async with semaphore:
                return await self._engine.run_cycle(cluster_id)

        results = await asyncio.gather(
            *(_one(c) for c in clusters), return_exceptions=True
        )
        completed = []
        for cluster_id, res in zip(clusters, results):
            self._total_cycles += 1
            if isinstance(res, asyncio.CancelledError):
                raise res
            if isinstance(res, BaseException):
                self._failed_cycles += 1
                logger.error("reconcile_cycle_failed", cluster_id=cluster_id, error=str(res))
                continue
            completed.append(res)
        return completed

    async def _reconcile_loop(self):
        while self._running:
            try:
                await self._refresh_intervals()
                await asyncio.sleep(self._reconcile_interval)
                self._last_reconcile = time.time()
                autoheal_store_available.set(1 if await self._engine.store.health_check() else 0)
                await self.reconcile_all()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("reconcile_loop error", error=str(exc))

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    async def _retry_loop(self):
        while self._running:
            try:
                await self._refresh_intervals()
                await asyncio.sleep(self._retry_interval)
                self._last_retry = time.time()
                await self._retry.run_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("retry_loop error", error=str(exc))

    def get_status(self) -> dict[str, Any]:
        """Return scheduler health and stats."""
        return {
            "running": self._running,
            "reconcile_interval": self._reconcile_interval,
            "retry_interval": self._retry_interval,
            "max_concurrent_clusters": self._max_concurrent,
            "last_reconcile": self._last_reconcile,
            "last_retry": self._last_retry,
            "total_cycles": self._total_cycles,
            "failed_cycles": self._failed_cycles,
        }
