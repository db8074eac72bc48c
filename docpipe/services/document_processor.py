"""Execution of a single document job.

State machine: ``pending -> processing -> {completed | pending (retry) | failed}``.

Pre-flight checks run before an attempt is consumed: a missing record or a
record already in a terminal state is a no-op, while exhausted attempts,
unsupported input and unresolvable sources end the record as ``failed`` with
``attempts`` untouched. Otherwise the attempt counter is incremented first and
only then is the record marked ``processing``, so a crash during the provider
call is visible as a consumed attempt.
"""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from docpipe.errors import DocumentNotFoundError, MissingInputError, UnsupportedInputError
from docpipe.models.documents import DocumentJob, DocumentRecord, DocumentStatus
from docpipe.services.analysis_client import AnalysisClient
from docpipe.services.document_store import DocumentStore
from docpipe.services.interfaces import MetricsClient
from docpipe.services.metrics import NullMetrics
from docpipe.services.retry_policy import RetryPolicy
from docpipe.services.worker_pool import JobOutcome
from docpipe.utils.logging_utils import log_stage_skipped, stage_marker, structured_log
from docpipe.utils.media import ensure_supported

LOG = logging.getLogger("document_processor")

COMPLETED = "completed"
RETRY = "retry"
FAILED = "failed"
SKIPPED = "skipped"


def resolve_source_path(source_location: str, fallback_dir: str | None) -> Path:
    """Locate the source file, looking up its basename under ``fallback_dir`` if needed."""
    primary = Path(source_location)
    if primary.is_file():
        return primary
    if fallback_dir:
        candidate = Path(fallback_dir) / primary.name
        if candidate.is_file():
            return candidate
    raise MissingInputError(f"Source file missing: {source_location}")


class DocumentProcessor:
    def __init__(
        self,
        store: DocumentStore,
        analysis_client: AnalysisClient,
        policy: RetryPolicy,
        *,
        upload_fallback_dir: str | None = None,
        max_input_bytes: int = 50 * 1024 * 1024,
        metrics: MetricsClient | None = None,
    ) -> None:
        self._store = store
        self._client = analysis_client
        self._policy = policy
        self._upload_fallback_dir = upload_fallback_dir
        self._max_input_bytes = max_input_bytes
        self._metrics = metrics or NullMetrics()

    @property
    def ceiling(self) -> int:
        return self._policy.max_attempts

    async def run(self, job: DocumentJob) -> JobOutcome:
        try:
            return await self._run(job)
        except DocumentNotFoundError:
            log_stage_skipped(
                LOG, stage="process", reason="record_deleted", document_id=job.document_id
            )
            self._metrics.increment("job_skipped", stage="process")
            return JobOutcome(SKIPPED, reason="record_deleted")

    async def _run(self, job: DocumentJob) -> JobOutcome:
        record = await asyncio.to_thread(self._store.get_record, job.document_id)
        if record is None:
            log_stage_skipped(
                LOG, stage="process", reason="record_missing", document_id=job.document_id
            )
            self._metrics.increment("job_skipped", stage="process")
            return JobOutcome(SKIPPED, reason="record_missing")
        if record.status.is_terminal:
            log_stage_skipped(
                LOG,
                stage="process",
                reason="already_terminal",
                document_id=job.document_id,
                status=record.status.value,
            )
            return JobOutcome(SKIPPED, reason="already_terminal")
        if record.attempts >= self.ceiling:
            return await self._fail(
                record, f"Failed after {record.attempts} attempts: attempt ceiling reached"
            )

        try:
            source_path = await asyncio.to_thread(self._preflight, job)
        except (UnsupportedInputError, MissingInputError) as exc:
            return await self._fail(record, str(exc))

        record = await asyncio.to_thread(self._store.increment_attempts, job.document_id)
        attempt = record.attempts
        await asyncio.to_thread(
            self._store.update_record, job.document_id, status=DocumentStatus.PROCESSING
        )

        try:
            async with stage_marker(
                LOG,
                stage="analysis",
                document_id=job.document_id,
                attempt=attempt,
                media_type=job.media_type,
            ) as marker:
                data = await asyncio.to_thread(source_path.read_bytes)
                result = await self._client.analyze(data, job.media_type, str(source_path))
                marker.add_completion_fields(model=result.model, strategy=result.strategy)
        except DocumentNotFoundError:
            raise
        except Exception as exc:
            return await self._handle_failure(record, exc)

        await asyncio.to_thread(
            self._store.update_record,
            job.document_id,
            status=DocumentStatus.COMPLETED,
            result=result,
            error_message=None,
        )
        self._metrics.increment("job_completed", stage="process")
        return JobOutcome(COMPLETED)

    def _preflight(self, job: DocumentJob) -> Path:
        ensure_supported(job.media_type)
        source_path = resolve_source_path(job.source_location, self._upload_fallback_dir)
        size = os.path.getsize(source_path)
        if size == 0:
            raise UnsupportedInputError("Source file is empty")
        if size > self._max_input_bytes:
            raise UnsupportedInputError(
                f"File size {size} exceeds maximum of {self._max_input_bytes} bytes"
            )
        return source_path

    async def _handle_failure(self, record: DocumentRecord, exc: Exception) -> JobOutcome:
        decision = self._policy.decide(record.attempts, exc)
        structured_log(
            LOG,
            logging.WARNING,
            "document_attempt_failed",
            document_id=record.document_id,
            attempt=record.attempts,
            ceiling=self.ceiling,
            failure_class=decision.failure_class.value,
            error=str(exc),
            error_type=exc.__class__.__name__,
        )
        if decision.should_retry:
            await asyncio.to_thread(
                self._store.update_record,
                record.document_id,
                status=DocumentStatus.PENDING,
                error_message=f"Attempt {record.attempts}/{self.ceiling} failed: {exc}",
            )
            self._metrics.increment("job_retried", stage="process")
            return JobOutcome(RETRY, retry_after=decision.delay_seconds, reason=str(exc))
        if record.attempts >= self.ceiling:
            message = f"Failed after {record.attempts} attempts: {exc}"
        else:
            message = f"Permanent failure: {exc}"
        return await self._fail(record, message)

    async def _fail(self, record: DocumentRecord, message: str) -> JobOutcome:
        await asyncio.to_thread(
            self._store.update_record,
            record.document_id,
            status=DocumentStatus.FAILED,
            error_message=message,
        )
        structured_log(
            LOG,
            logging.ERROR,
            "document_failed",
            document_id=record.document_id,
            attempts=record.attempts,
            reason=message,
        )
        self._metrics.increment("job_failed", stage="process")
        return JobOutcome(FAILED, reason=message)


__all__ = ["DocumentProcessor", "resolve_source_path"]
