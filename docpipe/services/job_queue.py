"""FIFO queue of document jobs, deduplicated by ``document_id``."""

from __future__ import annotations

from collections import OrderedDict
from typing import Container, Iterator

from docpipe.models.documents import DocumentJob


class JobQueue:
    """Ordered, in-memory and not durable.

    Not thread-safe: it is mutated only from the event loop through the
    worker pool.
    """

    def __init__(self) -> None:
        self._jobs: "OrderedDict[str, DocumentJob]" = OrderedDict()

    def enqueue(self, job: DocumentJob, active: Container[str] = ()) -> bool:
        """Append ``job`` unless its id is already queued or in ``active``."""
        if job.document_id in self._jobs or job.document_id in active:
            return False
        self._jobs[job.document_id] = job
        return True

    def dequeue(self) -> DocumentJob | None:
        if not self._jobs:
            return None
        _, job = self._jobs.popitem(last=False)
        return job

    def remove(self, document_id: str) -> bool:
        return self._jobs.pop(document_id, None) is not None

    def __contains__(self, document_id: object) -> bool:
        return document_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def __iter__(self) -> Iterator[DocumentJob]:
        return iter(list(self._jobs.values()))


__all__ = ["JobQueue"]
