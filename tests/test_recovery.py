import asyncio
import threading

import pytest

from docpipe.models.documents import DocumentCreate, DocumentJob, DocumentStatus
from docpipe.services.document_processor import DocumentProcessor
from docpipe.services.document_store import InMemoryDocumentStore
from docpipe.services.recovery import RecoveryScanner
from docpipe.services.retry_policy import RetryPolicy
from docpipe.services.worker_pool import JobOutcome, WorkerPool
from tests.stubs.provider_stub import FakeAnalysisClient


class _Runner:
    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.calls: list[str] = []

    async def __call__(self, job: DocumentJob) -> JobOutcome:
        self.calls.append(job.document_id)
        await self.gate.wait()
        return JobOutcome("completed")


@pytest.mark.asyncio
async def test_stranded_processing_record_requeued_once(store, make_record):
    record = make_record()
    store.update_record(record.document_id, status=DocumentStatus.PROCESSING, attempts=1)
    runner = _Runner()
    pool = WorkerPool(runner, max_concurrent=2)
    scanner = RecoveryScanner(store, pool, ceiling=3, interval_seconds=60)

    first = await scanner.tick()
    second = await scanner.tick()

    assert first == {"requeued": 1, "exhausted": 0}
    assert second == {"requeued": 0, "exhausted": 0}
    runner.gate.set()
    await asyncio.wait_for(pool.join(), timeout=2)
    assert runner.calls == [record.document_id]


@pytest.mark.asyncio
async def test_tracked_records_are_skipped(store, make_record):
    record = make_record()
    runner = _Runner()
    pool = WorkerPool(runner, max_concurrent=1)
    pool.submit(DocumentJob.from_record(record))
    scanner = RecoveryScanner(store, pool, ceiling=3)

    summary = await scanner.tick()

    assert summary["requeued"] == 0
    runner.gate.set()
    await asyncio.wait_for(pool.join(), timeout=2)
    assert runner.calls == [record.document_id]


@pytest.mark.asyncio
async def test_terminal_records_are_ignored(store, make_record):
    done = make_record("done.pdf")
    failed = make_record("failed.pdf")
    store.update_record(done.document_id, status=DocumentStatus.COMPLETED, attempts=1)
    store.update_record(failed.document_id, status=DocumentStatus.FAILED, attempts=3)
    runner = _Runner()
    pool = WorkerPool(runner, max_concurrent=1)

    summary = await RecoveryScanner(store, pool, ceiling=3).tick()

    assert summary == {"requeued": 0, "exhausted": 0}
    assert not pool.is_tracked(done.document_id)


@pytest.mark.asyncio
async def test_exhausted_stranded_record_finalised_as_failed(store, make_record):
    record = make_record()
    store.update_record(record.document_id, status=DocumentStatus.PROCESSING, attempts=3)
    runner = _Runner()
    pool = WorkerPool(runner, max_concurrent=1)

    summary = await RecoveryScanner(store, pool, ceiling=3).tick()

    assert summary == {"requeued": 0, "exhausted": 1}
    stored = store.get_record(record.document_id)
    assert stored.status is DocumentStatus.FAILED
    assert stored.attempts == 3
    assert runner.calls == []


@pytest.mark.asyncio
async def test_background_loop_runs_until_stopped(store, make_record):
    record = make_record()
    runner = _Runner()
    runner.gate.set()
    pool = WorkerPool(runner, max_concurrent=1)
    scanner = RecoveryScanner(store, pool, ceiling=3, interval_seconds=0.01)

    scanner.start()
    assert scanner.running
    for _ in range(100):
        if runner.calls:
            break
        await asyncio.sleep(0.01)
    await scanner.stop()
    await pool.close()

    assert not scanner.running
    assert runner.calls[0] == record.document_id


class _GatedClient(FakeAnalysisClient):
    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    async def analyze(self, data, media_type, source_location=None):
        self.started.set()
        await self.gate.wait()
        return await super().analyze(data, media_type, source_location)


class _SnapshotThenFinish(InMemoryDocumentStore):
    """Store whose recovery listings let the running job finish before returning."""

    def __init__(self) -> None:
        super().__init__()
        self.loop: asyncio.AbstractEventLoop | None = None
        self.release: asyncio.Event | None = None
        self.job_finished = threading.Event()

    def _hold(self, snapshot):
        if snapshot and self.release is not None:
            self.loop.call_soon_threadsafe(self.release.set)
            assert self.job_finished.wait(timeout=5)
        return snapshot

    def list_records_needing_recovery(self, ceiling):
        return self._hold(super().list_records_needing_recovery(ceiling))

    def list_exhausted_records(self, ceiling):
        return self._hold(super().list_exhausted_records(ceiling))


def _finishing_pool(store, client):
    processor = DocumentProcessor(store, client, RetryPolicy(max_attempts=3))

    async def runner(job: DocumentJob) -> JobOutcome:
        outcome = await processor.run(job)
        store.job_finished.set()
        return outcome

    return WorkerPool(runner, max_concurrent=1)


@pytest.mark.asyncio
async def test_final_attempt_completing_during_sweep_stays_completed(write_file):
    store = _SnapshotThenFinish()
    record = store.create_record(
        DocumentCreate(file_name="doc.pdf", source_location=str(write_file()), media_type="application/pdf")
    )
    store.update_record(record.document_id, attempts=2)
    client = _GatedClient()
    pool = _finishing_pool(store, client)
    pool.submit(DocumentJob.from_record(record))
    await asyncio.wait_for(client.started.wait(), timeout=2)
    assert store.get_record(record.document_id).attempts == 3

    store.loop = asyncio.get_running_loop()
    store.release = client.gate
    summary = await RecoveryScanner(store, pool, ceiling=3).tick()
    await asyncio.wait_for(pool.join(), timeout=2)

    assert summary == {"requeued": 0, "exhausted": 0}
    stored = store.get_record(record.document_id)
    assert stored.status is DocumentStatus.COMPLETED
    assert stored.error_message is None
    assert stored.result is not None


@pytest.mark.asyncio
async def test_job_completing_during_sweep_is_not_run_again(write_file):
    store = _SnapshotThenFinish()
    record = store.create_record(
        DocumentCreate(file_name="doc.pdf", source_location=str(write_file()), media_type="application/pdf")
    )
    client = _GatedClient()
    pool = _finishing_pool(store, client)
    pool.submit(DocumentJob.from_record(record))
    await asyncio.wait_for(client.started.wait(), timeout=2)

    store.loop = asyncio.get_running_loop()
    store.release = client.gate
    await RecoveryScanner(store, pool, ceiling=3).tick()
    await asyncio.wait_for(pool.join(), timeout=2)

    stored = store.get_record(record.document_id)
    assert stored.status is DocumentStatus.COMPLETED
    assert stored.attempts == 1
    assert len(client.calls) == 1
