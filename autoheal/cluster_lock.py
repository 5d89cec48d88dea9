"""
Per-cluster mutual exclusion for reconciliation cycles.

Two layers: an ``asyncio.Lock`` per cluster serializes cycles inside one
process, and a Redis lease (``SET NX PX`` with a token-checked release)
serializes them across replicas.  While a cycle runs, a background task
renews the lease every third of its TTL so a slow cycle keeps it.  A cycle
that finds the cluster busy is skipped rather than queued.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog

from .config import settings
from .errors import StoreError
from .store import RemediationStore

logger = structlog.get_logger(__name__)

LOCK_KEY_PREFIX = "autoheal:lock:"


class ClusterLock:
    """Non-blocking lock keyed by cluster id."""

    def __init__(
        self,
        store: RemediationStore,
        ttl_seconds: Optional[int] = None,
        renew_interval_seconds: Optional[float] = None,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds or settings.cluster_lock_ttl_seconds
        self.renew_interval_seconds = renew_interval_seconds or self.ttl_seconds / 3
        self._local: dict[str, asyncio.Lock] = {}

    def _local_lock(self, cluster_id: str) -> asyncio.Lock:
        lock = self._local.get(cluster_id)
        if lock is None:
            lock = self._local[cluster_id] = asyncio.Lock()
        return lock

    def is_held(self, cluster_id: str) -> bool:
        """True if this process is running a cycle for ``cluster_id``."""
        return self._local_lock(cluster_id).locked()

    async def _keep_alive(self, cluster_id: str, key: str, token: str):
        while True:
            await asyncio.sleep(self.renew_interval_seconds)
            try:
                renewed = await self.store.renew_lease(key, token, self.ttl_seconds)
            except StoreError as exc:
                # Try again next tick; the lease still has time left
                logger.warning("cluster_lease_renew_failed", cluster_id=cluster_id, error=str(exc))
                continue
            if not renewed:
                logger.error("cluster_lease_lost", cluster_id=cluster_id)
                return

    @asynccontextmanager
    async def hold(self, cluster_id: str) -> AsyncIterator[bool]:
        """Yield True if the cluster was acquired, False if it is busy.

        The lease is renewed while held and released on exit, including on
        cancellation.
        """
        local = self._local_lock(cluster_id)
        if local.locked():
            logger.info("cluster_busy", cluster_id=cluster_id, scope="process")
            yield False
            return

        async with local:
            key = f"{LOCK_KEY_PREFIX}{cluster_id}"
            token = str(uuid.uuid4())
            acquired = await self.store.acquire_lease(key, token, self.ttl_seconds)
            if not acquired:
                logger.info("cluster_busy", cluster_id=cluster_id, scope="lease")
                yield False
                return
            renewer = asyncio.create_task(self._keep_alive(cluster_id, key, token))
            try:
                yield True
            finally:
                renewer.cancel()
                await asyncio.gather(renewer, return_exceptions=True)
                try:
                    await self.store.release_lease(key, token)
                except Exception as exc:
                    # The lease expires on its own after ttl_seconds
                    logger.warning(
                        "cluster_lease_release_failed", cluster_id=cluster_id, error=str(exc)
                    )
