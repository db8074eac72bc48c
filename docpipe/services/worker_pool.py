"""Bounded-concurrency worker pool.

The pool owns the only mutable scheduling state: the job queue, the active
set and the delayed-retry set. All three are touched exclusively from the
event loop through the pool's entry points, with no ``await`` between a
membership check and the matching mutation, so a ``document_id`` can never be
dispatched twice.

Draining is event driven: `schedule()` runs on every submit and every job
completion. There is no polling loop.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict

from docpipe.logging_setup import document_context
from docpipe.models.documents import DocumentJob
from docpipe.services.interfaces import MetricsClient
from docpipe.services.job_queue import JobQueue
from docpipe.services.metrics import NullMetrics

LOG = logging.getLogger("worker_pool")


@dataclass(slots=True, frozen=True)
class JobOutcome:
    """Result of one job execution as seen by the pool."""

    status: str
    retry_after: float | None = None
    reason: str | None = None


JobRunner = Callable[[DocumentJob], Awaitable[JobOutcome]]


class WorkerPool:
    def __init__(
        self,
        runner: JobRunner,
        *,
        max_concurrent: int = 3,
        queue: JobQueue | None = None,
        metrics: MetricsClient | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._runner = runner
        self._max_concurrent = max_concurrent
        self._queue = queue or JobQueue()
        self._metrics = metrics or NullMetrics()
        self._active: Dict[str, asyncio.Task] = {}
        self._delayed: Dict[str, asyncio.TimerHandle] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False
        self._peak_active = 0
        self._submitted = 0
        self._finished = 0

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    def submit(self, job: DocumentJob) -> bool:
        """Queue ``job``; returns False when the id is already tracked."""
        if self._closed or job.document_id in self._delayed:
            return False
        if not self._queue.enqueue(job, self._active):
            return False
        self._submitted += 1
        self._metrics.increment("job_submitted", stage="scheduler")
        self.schedule()
        return True

    def schedule(self) -> None:
        """Start queued jobs while there is a free slot."""
        if not self._closed:
            loop = asyncio.get_running_loop()
            while len(self._active) < self._max_concurrent:
                job = self._queue.dequeue()
                if job is None:
                    break
                task = loop.create_task(self._run(job), name=f"document-{job.document_id}")
                self._active[job.document_id] = task
                self._peak_active = max(self._peak_active, len(self._active))
        self._refresh_idle()

    def discard(self, document_id: str) -> bool:
        """Drop a queued or delayed job. Jobs already running are not interrupted."""
        removed = self._queue.remove(document_id)
        handle = self._delayed.pop(document_id, None)
        if handle is not None:
            handle.cancel()
            removed = True
        self._refresh_idle()
        return removed

    def is_tracked(self, document_id: str) -> bool:
        return (
            document_id in self._queue
            or document_id in self._active
            or document_id in self._delayed
        )

    async def join(self) -> None:
        """Wait until nothing is queued, running or waiting for a retry timer."""
        await self._idle.wait()

    async def close(self) -> None:
        """Stop admitting work and wait for running jobs; queued work is dropped."""
        self._closed = True
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        while self._queue.dequeue() is not None:
            pass
        if self._active:
            await asyncio.gather(*list(self._active.values()), return_exceptions=True)
        self._refresh_idle()

    def stats(self) -> Dict[str, int]:
        return {
            "max_concurrent": self._max_concurrent,
            "active": len(self._active),
            "queued": len(self._queue),
            "delayed": len(self._delayed),
            "peak_active": self._peak_active,
            "submitted": self._submitted,
            "finished": self._finished,
        }

    async def _run(self, job: DocumentJob) -> None:
        outcome: JobOutcome | None = None
        try:
            with document_context(job.document_id):
                outcome = await self._runner(job)
        except Exception:
            # Record state is left as-is; the recovery sweep picks it up.
            LOG.exception("worker_job_crashed", extra={"document_id": job.document_id})
            self._metrics.increment("job_crashed", stage="scheduler")
        finally:
            self._active.pop(job.document_id, None)
            self._finished += 1
            if outcome is not None and outcome.retry_after is not None and not self._closed:
                self._schedule_retry(job, outcome.retry_after)
            self.schedule()

    def _schedule_retry(self, job: DocumentJob, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._delayed[job.document_id] = loop.call_later(
            max(delay, 0.0), self._release_delayed, job
        )
        LOG.info(
            "worker_retry_scheduled",
            extra={"document_id": job.document_id, "delay_seconds": delay},
        )

    def _release_delayed(self, job: DocumentJob) -> None:
        if self._delayed.pop(job.document_id, None) is None:
            return
        if not self.submit(job):
            self._refresh_idle()

    def _refresh_idle(self) -> None:
        if self._active or len(self._queue) or self._delayed:
            self._idle.clear()
        else:
            self._idle.set()
        self._metrics.set_gauge("active", len(self._active), stage="scheduler")
        self._metrics.set_gauge("queued", len(self._queue), stage="scheduler")
        self._metrics.set_gauge("delayed", len(self._delayed), stage="scheduler")


__all__ = ["JobOutcome", "JobRunner", "WorkerPool"]
