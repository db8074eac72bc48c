"""Pipeline facade: one owned instance wiring store, analysis client, pool and recovery."""

from __future__ import annotations

import logging
from typing import Any, Dict

from docpipe.models.documents import DocumentJob
from docpipe.services.analysis_client import AnalysisClient
from docpipe.services.document_processor import DocumentProcessor
from docpipe.services.document_store import DocumentStore
from docpipe.services.interfaces import MetricsClient
from docpipe.services.metrics import NullMetrics
from docpipe.services.recovery import RecoveryScanner
from docpipe.services.retry_policy import RetryPolicy
from docpipe.services.worker_pool import WorkerPool
from docpipe.utils.media import resolve_media_type

LOG = logging.getLogger("pipeline")


class DocumentPipeline:
    def __init__(
        self,
        store: DocumentStore,
        analysis_client: AnalysisClient,
        *,
        policy: RetryPolicy | None = None,
        max_concurrent: int = 3,
        recovery_interval_seconds: float = 30.0,
        upload_fallback_dir: str | None = None,
        max_input_bytes: int = 50 * 1024 * 1024,
        metrics: MetricsClient | None = None,
    ) -> None:
        self.store = store
        self.policy = policy or RetryPolicy()
        self.metrics = metrics or NullMetrics()
        self.processor = DocumentProcessor(
            store,
            analysis_client,
            self.policy,
            upload_fallback_dir=upload_fallback_dir,
            max_input_bytes=max_input_bytes,
            metrics=self.metrics,
        )
        self.pool = WorkerPool(
            self.processor.run, max_concurrent=max_concurrent, metrics=self.metrics
        )
        self.recovery = RecoveryScanner(
            store,
            self.pool,
            ceiling=self.policy.max_attempts,
            interval_seconds=recovery_interval_seconds,
            metrics=self.metrics,
        )

    @classmethod
    def from_config(
        cls,
        cfg,
        *,
        store: DocumentStore,
        analysis_client: AnalysisClient,
        metrics: MetricsClient | None = None,
    ) -> "DocumentPipeline":
        return cls(
            store,
            analysis_client,
            policy=RetryPolicy.from_config(cfg),
            max_concurrent=cfg.max_concurrent_jobs,
            recovery_interval_seconds=cfg.recovery_interval_seconds,
            upload_fallback_dir=cfg.upload_fallback_dir,
            max_input_bytes=cfg.max_input_bytes,
            metrics=metrics,
        )

    def submit(self, document_id: str, source_location: str, media_type: str) -> bool:
        """Queue a document for analysis; a no-op when it is already tracked."""
        job = DocumentJob(
            document_id=document_id,
            source_location=source_location,
            media_type=resolve_media_type(media_type, source_location),
        )
        accepted = self.pool.submit(job)
        LOG.info(
            "pipeline_submit",
            extra={"document_id": document_id, "queued": accepted},
        )
        return accepted

    def discard(self, document_id: str) -> bool:
        return self.pool.discard(document_id)

    def is_tracked(self, document_id: str) -> bool:
        return self.pool.is_tracked(document_id)

    def start(self) -> None:
        self.recovery.start()

    async def stop(self) -> None:
        await self.recovery.stop()
        await self.pool.close()

    async def join(self) -> None:
        await self.pool.join()

    def stats(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.pool.stats())
        payload["max_attempts"] = self.policy.max_attempts
        payload["recovery_running"] = self.recovery.running
        return payload


__all__ = ["DocumentPipeline"]
