"""Periodic sweep re-submitting documents the worker pool has lost track of.

The in-memory queue is not durable: after a restart, or when a job crashed
without updating its record, the store still shows ``pending``/``processing``
while nothing is queued. Each tick re-submits those records. Records stranded
with their attempts exhausted are finalised as ``failed``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict

from docpipe.models.documents import DocumentJob
from docpipe.services.document_store import DocumentStore
from docpipe.services.interfaces import MetricsClient
from docpipe.services.metrics import NullMetrics
from docpipe.services.worker_pool import WorkerPool
from docpipe.utils.logging_utils import structured_log

LOG = logging.getLogger("recovery")


class RecoveryScanner:
    def __init__(
        self,
        store: DocumentStore,
        pool: WorkerPool,
        *,
        ceiling: int,
        interval_seconds: float = 30.0,
        metrics: MetricsClient | None = None,
    ) -> None:
        self._store = store
        self._pool = pool
        self._ceiling = ceiling
        self._interval = interval_seconds
        self._metrics = metrics or NullMetrics()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> Dict[str, int]:
        """Run one sweep; returns counts of requeued and finalised records."""
        candidates = await asyncio.to_thread(self._store.list_records_needing_recovery, self._ceiling)
        requeued = 0
        for record in candidates:
            if self._pool.is_tracked(record.document_id):
                continue
            if self._pool.submit(DocumentJob.from_record(record)):
                requeued += 1

        exhausted = 0
        stranded = await asyncio.to_thread(self._store.list_exhausted_records, self._ceiling)
        for record in stranded:
            if self._pool.is_tracked(record.document_id):
                continue
            # The snapshot may be stale; the store only fails records still unfinished.
            finalised = await asyncio.to_thread(
                self._store.fail_if_exhausted,
                record.document_id,
                self._ceiling,
                f"Failed after {record.attempts} attempts: attempt ceiling reached",
            )
            if finalised is not None:
                exhausted += 1

        if requeued or exhausted:
            self._metrics.increment("recovery_requeued", requeued, stage="recovery")
            structured_log(
                LOG, logging.INFO, "recovery_sweep", requeued=requeued, exhausted=exhausted
            )
        return {"requeued": requeued, "exhausted": exhausted}

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="recovery-scanner")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                LOG.exception("recovery_sweep_failed")
            await asyncio.sleep(self._interval)


__all__ = ["RecoveryScanner"]
