"""Persistence for document records.

Two implementations of the `DocumentStore` contract:

* `InMemoryDocumentStore` for tests and single-process deployments.
* `GCSDocumentStore` writing one JSON object per record; every mutation is a
  read-modify-write guarded by ``if_generation_match`` so concurrent writers
  never clobber each other.

Every mutation is a single independent write; there are no multi-record
transactions.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Protocol, Tuple

from google.api_core import exceptions as gexc
from google.cloud import storage

from docpipe.errors import DocumentNotFoundError
from docpipe.models.documents import (
    DocumentCreate,
    DocumentRecord,
    DocumentStatus,
    DocumentType,
    clone_record,
    record_from_dict,
    record_to_dict,
)

LOG = logging.getLogger("document_store")

_RECOVERABLE = (DocumentStatus.PENDING, DocumentStatus.PROCESSING)
_MUTABLE_FIELDS = {"status", "error_message", "result", "attempts", "source_location", "media_type"}


class DocumentStore(Protocol):
    """Contract consumed by the pipeline."""

    def create_record(self, payload: DocumentCreate) -> DocumentRecord: ...

    def get_record(self, document_id: str) -> DocumentRecord | None: ...

    def update_record(self, document_id: str, **fields: Any) -> DocumentRecord: ...

    def increment_attempts(self, document_id: str) -> DocumentRecord: ...

    def list_records_needing_recovery(self, ceiling: int) -> List[DocumentRecord]: ...

    def list_exhausted_records(self, ceiling: int) -> List[DocumentRecord]: ...

    def fail_if_exhausted(
        self, document_id: str, ceiling: int, error_message: str
    ) -> DocumentRecord | None: ...

    def list_records(
        self,
        *,
        status: DocumentStatus | None = None,
        document_type: DocumentType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[DocumentRecord], int]: ...

    def record_stats(self) -> Dict[str, Any]: ...

    def delete_record(self, document_id: str) -> bool: ...


def _now_ts() -> float:
    return time.time()


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - _MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported record fields: {sorted(unknown)}")


def _log_transition(previous: DocumentStatus, record: DocumentRecord) -> None:
    if previous is record.status:
        return
    LOG.info(
        "document_status_transition",
        extra={
            "document_id": record.document_id,
            "from_status": previous.value,
            "to_status": record.status.value,
            "attempts": record.attempts,
        },
    )


def _needs_recovery(records: Iterable[DocumentRecord], ceiling: int) -> List[DocumentRecord]:
    return [r for r in records if r.status in _RECOVERABLE and r.attempts < ceiling]


def _exhausted(records: Iterable[DocumentRecord], ceiling: int) -> List[DocumentRecord]:
    return [r for r in records if r.status in _RECOVERABLE and r.attempts >= ceiling]


def _is_exhausted(record: DocumentRecord, ceiling: int) -> bool:
    return record.status in _RECOVERABLE and record.attempts >= ceiling


def _document_type(record: DocumentRecord) -> DocumentType:
    return record.result.document_type if record.result else DocumentType.UNKNOWN


def _page(
    records: Iterable[DocumentRecord],
    *,
    status: DocumentStatus | None,
    document_type: DocumentType | None,
    limit: int,
    offset: int,
) -> Tuple[List[DocumentRecord], int]:
    """Filter, order newest first and slice; returns the page and the filtered total."""
    matching = [
        r
        for r in records
        if (status is None or r.status is status)
        and (document_type is None or _document_type(r) is document_type)
    ]
    matching.sort(key=lambda r: r.created_at, reverse=True)
    return matching[offset : offset + limit], len(matching)


def _summarize(records: Iterable[DocumentRecord]) -> Dict[str, Any]:
    total = 0
    by_type: Dict[str, int] = {}
    by_status: Dict[str, int] = {}
    for record in records:
        total += 1
        type_key = _document_type(record).value
        by_type[type_key] = by_type.get(type_key, 0) + 1
        by_status[record.status.value] = by_status.get(record.status.value, 0) + 1
    return {"total": total, "by_type": by_type, "by_status": by_status}


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe in-memory store; returns copies so callers never share state."""

    def __init__(self) -> None:
        self._records: Dict[str, DocumentRecord] = {}
        self._lock = threading.RLock()

    def create_record(self, payload: DocumentCreate) -> DocumentRecord:
        record = DocumentRecord.new(payload)
        with self._lock:
            if record.document_id in self._records:
                raise ValueError(f"Document {record.document_id} already exists")
            self._records[record.document_id] = record
            LOG.info(
                "document_record_created",
                extra={"document_id": record.document_id, "media_type": record.media_type},
            )
            return clone_record(record)

    def get_record(self, document_id: str) -> DocumentRecord | None:
        with self._lock:
            record = self._records.get(document_id)
            return clone_record(record) if record else None

    def update_record(self, document_id: str, **fields: Any) -> DocumentRecord:
        _check_fields(fields)
        with self._lock:
            record = self._records.get(document_id)
            if record is None:
                raise DocumentNotFoundError(document_id)
            previous = record.status
            for key, value in fields.items():
                setattr(record, key, value)
            record.updated_at = _now_ts()
            _log_transition(previous, record)
            return clone_record(record)

    def increment_attempts(self, document_id: str) -> DocumentRecord:
        with self._lock:
            record = self._records.get(document_id)
            if record is None:
                raise DocumentNotFoundError(document_id)
            record.attempts += 1
            record.updated_at = _now_ts()
            return clone_record(record)

    def list_records_needing_recovery(self, ceiling: int) -> List[DocumentRecord]:
        with self._lock:
            return [clone_record(r) for r in _needs_recovery(self._records.values(), ceiling)]

    def list_exhausted_records(self, ceiling: int) -> List[DocumentRecord]:
        with self._lock:
            return [clone_record(r) for r in _exhausted(self._records.values(), ceiling)]

    def fail_if_exhausted(
        self, document_id: str, ceiling: int, error_message: str
    ) -> DocumentRecord | None:
        """Mark the record ``failed`` only if it is still unfinished at the ceiling."""
        with self._lock:
            record = self._records.get(document_id)
            if record is None or not _is_exhausted(record, ceiling):
                return None
            previous = record.status
            record.status = DocumentStatus.FAILED
            record.error_message = error_message
            record.updated_at = _now_ts()
            _log_transition(previous, record)
            return clone_record(record)

    def list_records(
        self,
        *,
        status: DocumentStatus | None = None,
        document_type: DocumentType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[DocumentRecord], int]:
        with self._lock:
            page, total = _page(
                self._records.values(),
                status=status,
                document_type=document_type,
                limit=limit,
                offset=offset,
            )
            return [clone_record(r) for r in page], total

    def record_stats(self) -> Dict[str, Any]:
        with self._lock:
            return _summarize(self._records.values())

    def delete_record(self, document_id: str) -> bool:
        with self._lock:
            return self._records.pop(document_id, None) is not None


class GCSDocumentStore(DocumentStore):  # pragma: no cover - exercised via integration
    """GCS-backed store, one ``<prefix>/records/<id>.json`` object per document."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "document-records",
        *,
        client: Any | None = None,
        max_write_attempts: int = 5,
    ) -> None:
        self._client = client or storage.Client()
        self._bucket = self._client.bucket(bucket)
        self._prefix = prefix.rstrip("/")
        self._max_write_attempts = max_write_attempts

    def create_record(self, payload: DocumentCreate) -> DocumentRecord:
        record = DocumentRecord.new(payload)
        try:
            self._write(record, if_generation_match=0)
        except gexc.PreconditionFailed as exc:
            raise ValueError(f"Document {record.document_id} already exists") from exc
        LOG.info(
            "document_record_created",
            extra={"document_id": record.document_id, "media_type": record.media_type},
        )
        return record

    def get_record(self, document_id: str) -> DocumentRecord | None:
        blob = self._blob(document_id)
        try:
            data = blob.download_as_bytes()
        except gexc.NotFound:
            return None
        return record_from_dict(json.loads(data.decode("utf-8")))

    def update_record(self, document_id: str, **fields: Any) -> DocumentRecord:
        _check_fields(fields)

        def _apply(record: DocumentRecord) -> None:
            for key, value in fields.items():
                setattr(record, key, value)

        return self._mutate(document_id, _apply)

    def increment_attempts(self, document_id: str) -> DocumentRecord:
        def _apply(record: DocumentRecord) -> None:
            record.attempts += 1

        return self._mutate(document_id, _apply)

    def list_records_needing_recovery(self, ceiling: int) -> List[DocumentRecord]:
        return _needs_recovery(self._iter_records(), ceiling)

    def list_exhausted_records(self, ceiling: int) -> List[DocumentRecord]:
        return _exhausted(self._iter_records(), ceiling)

    def fail_if_exhausted(
        self, document_id: str, ceiling: int, error_message: str
    ) -> DocumentRecord | None:
        def _apply(record: DocumentRecord) -> bool:
            if not _is_exhausted(record, ceiling):
                return False
            record.status = DocumentStatus.FAILED
            record.error_message = error_message
            return True

        try:
            return self._mutate(document_id, _apply)
        except DocumentNotFoundError:
            return None

    def list_records(
        self,
        *,
        status: DocumentStatus | None = None,
        document_type: DocumentType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[DocumentRecord], int]:
        return _page(
            self._iter_records(),
            status=status,
            document_type=document_type,
            limit=limit,
            offset=offset,
        )

    def record_stats(self) -> Dict[str, Any]:
        return _summarize(self._iter_records())

    def delete_record(self, document_id: str) -> bool:
        try:
            self._blob(document_id).delete()
        except gexc.NotFound:
            return False
        return True

    def _mutate(
        self, document_id: str, apply: Callable[[DocumentRecord], bool | None]
    ) -> DocumentRecord | None:
        """Read-modify-write under ``if_generation_match``; ``apply`` returning False skips the write."""
        for attempt in range(self._max_write_attempts):
            blob = self._blob(document_id)
            try:
                blob.reload()
            except gexc.NotFound as exc:
                raise DocumentNotFoundError(document_id) from exc
            current_generation = blob.generation
            record = record_from_dict(json.loads(blob.download_as_bytes().decode("utf-8")))
            previous = record.status
            if apply(record) is False:
                return None
            record.updated_at = _now_ts()
            try:
                self._write(record, if_generation_match=current_generation)
            except gexc.PreconditionFailed:
                time.sleep(0.1 * (attempt + 1))
                continue
            _log_transition(previous, record)
            return record
        raise RuntimeError(f"Failed to update document {document_id} after multiple attempts")

    def _iter_records(self) -> Iterable[DocumentRecord]:
        for blob in self._client.list_blobs(self._bucket, prefix=f"{self._prefix}/records/"):
            try:
                yield record_from_dict(json.loads(blob.download_as_bytes().decode("utf-8")))
            except gexc.NotFound:
                continue

    def _blob(self, document_id: str):
        return self._bucket.blob(f"{self._prefix}/records/{document_id}.json")

    def _write(self, record: DocumentRecord, *, if_generation_match: int | None) -> None:
        payload = json.dumps(record_to_dict(record), separators=(",", ":"), sort_keys=True)
        kwargs: Dict[str, Any] = {"content_type": "application/json"}
        if if_generation_match is not None:
            kwargs["if_generation_match"] = if_generation_match
        self._blob(record.document_id).upload_from_string(payload, **kwargs)


def create_document_store(cfg: Any) -> DocumentStore:
    backend = (getattr(cfg, "document_store_backend", "memory") or "memory").strip().lower()
    if backend == "gcs":
        bucket = getattr(cfg, "document_store_bucket", None)
        if not bucket:
            raise RuntimeError("DOCUMENT_STORE_BUCKET required for gcs document store")
        prefix = getattr(cfg, "document_store_prefix", "document-records")
        return GCSDocumentStore(bucket, prefix)
    return InMemoryDocumentStore()


__all__ = [
    "DocumentStore",
    "GCSDocumentStore",
    "InMemoryDocumentStore",
    "create_document_store",
]
