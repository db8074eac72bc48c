import itertools
import time

import pytest

from docpipe.config import AppConfig
from docpipe.errors import DocumentNotFoundError
from docpipe.models.documents import (
    AnalysisResult,
    DocumentCreate,
    DocumentStatus,
    DocumentType,
    record_from_dict,
    record_public_view,
    record_to_dict,
)
from docpipe.services.document_store import InMemoryDocumentStore, create_document_store


def _create(store, name="invoice.pdf", media_type="application/pdf"):
    return store.create_record(
        DocumentCreate(file_name=name, source_location=f"/uploads/{name}", media_type=media_type, file_size=10)
    )


def test_create_record_defaults(store):
    record = _create(store, "photo.jpeg", "image/jpeg")

    assert record.status is DocumentStatus.PENDING
    assert record.attempts == 0
    assert record.file_type == "jpg"
    assert record.result is None


def test_returned_records_are_copies(store):
    record = _create(store)
    record.attempts = 99
    assert store.get_record(record.document_id).attempts == 0


def test_update_and_increment(store):
    record = _create(store)
    store.increment_attempts(record.document_id)
    updated = store.update_record(record.document_id, status=DocumentStatus.PROCESSING)

    assert updated.attempts == 1
    assert updated.status is DocumentStatus.PROCESSING
    assert updated.updated_at >= record.updated_at


def test_update_rejects_unknown_fields(store):
    record = _create(store)
    with pytest.raises(ValueError):
        store.update_record(record.document_id, file_name="other.pdf")


def test_missing_record_raises_not_found(store):
    with pytest.raises(DocumentNotFoundError) as excinfo:
        store.update_record("ghost", status=DocumentStatus.FAILED)
    assert str(excinfo.value) == "Document ghost not found"
    with pytest.raises(DocumentNotFoundError):
        store.increment_attempts("ghost")
    assert store.get_record("ghost") is None


def test_duplicate_id_rejected(store):
    payload = DocumentCreate(file_name="a.pdf", source_location="/a.pdf", media_type="application/pdf", document_id="fixed")
    store.create_record(payload)
    with pytest.raises(ValueError):
        store.create_record(payload)


def test_recovery_and_exhausted_listings(store):
    fresh = _create(store, "fresh.pdf")
    stuck = _create(store, "stuck.pdf")
    spent = _create(store, "spent.pdf")
    done = _create(store, "done.pdf")
    store.update_record(stuck.document_id, status=DocumentStatus.PROCESSING, attempts=2)
    store.update_record(spent.document_id, status=DocumentStatus.PROCESSING, attempts=3)
    store.update_record(done.document_id, status=DocumentStatus.COMPLETED, attempts=1)

    needing = {r.document_id for r in store.list_records_needing_recovery(3)}
    exhausted = {r.document_id for r in store.list_exhausted_records(3)}

    assert needing == {fresh.document_id, stuck.document_id}
    assert exhausted == {spent.document_id}


def test_delete_record(store):
    record = _create(store)
    assert store.delete_record(record.document_id) is True
    assert store.delete_record(record.document_id) is False
    assert store.get_record(record.document_id) is None


def test_record_serialisation_keeps_result(store):
    record = _create(store)
    result = AnalysisResult(document_type=DocumentType.LETTER, summary="Hi", model="m1", strategy="upload")
    completed = store.update_record(record.document_id, status=DocumentStatus.COMPLETED, result=result)

    payload = record_to_dict(completed)
    restored = record_from_dict(payload)

    assert payload["result"]["raw_response"] == "AI_OPENAI_m1"
    assert restored.result.document_type is DocumentType.LETTER
    assert restored.result.strategy == "upload"
    assert "source_location" not in record_public_view(completed)


def test_create_document_store_selects_backend():
    assert isinstance(create_document_store(AppConfig()), InMemoryDocumentStore)
    with pytest.raises(RuntimeError):
        create_document_store(AppConfig(DOCUMENT_STORE_BACKEND="gcs"))


def test_fail_if_exhausted_only_touches_unfinished_records(store):
    spent = _create(store, "spent.pdf")
    finished = _create(store, "finished.pdf")
    retrying = _create(store, "retrying.pdf")
    store.update_record(spent.document_id, status=DocumentStatus.PROCESSING, attempts=3)
    store.update_record(finished.document_id, status=DocumentStatus.COMPLETED, attempts=3)
    store.update_record(retrying.document_id, status=DocumentStatus.PENDING, attempts=1)

    failed = store.fail_if_exhausted(spent.document_id, 3, "Failed after 3 attempts: attempt ceiling reached")

    assert failed.status is DocumentStatus.FAILED
    assert failed.error_message.startswith("Failed after 3 attempts")
    assert store.fail_if_exhausted(finished.document_id, 3, "x") is None
    assert store.fail_if_exhausted(retrying.document_id, 3, "x") is None
    assert store.fail_if_exhausted("ghost", 3, "x") is None
    assert store.get_record(finished.document_id).status is DocumentStatus.COMPLETED
    assert store.get_record(retrying.document_id).status is DocumentStatus.PENDING


def test_list_records_filters_and_paginates_newest_first(store, monkeypatch):
    clock = itertools.count(1000)
    monkeypatch.setattr(time, "time", lambda: float(next(clock)))
    first = _create(store, "first.pdf")
    second = _create(store, "second.pdf")
    third = _create(store, "third.pdf")
    invoice = AnalysisResult(document_type=DocumentType.INVOICE, model="m1", strategy="inline")
    store.update_record(second.document_id, status=DocumentStatus.COMPLETED, result=invoice)

    page, total = store.list_records(limit=2)
    assert total == 3
    assert [r.document_id for r in page] == [third.document_id, second.document_id]

    page, total = store.list_records(limit=2, offset=2)
    assert [r.document_id for r in page] == [first.document_id]

    page, total = store.list_records(status=DocumentStatus.PENDING)
    assert total == 2
    assert {r.document_id for r in page} == {first.document_id, third.document_id}

    page, total = store.list_records(document_type=DocumentType.INVOICE)
    assert [r.document_id for r in page] == [second.document_id]
    assert total == 1


def test_record_stats_groups_by_type_and_status(store):
    done = _create(store, "done.pdf")
    _create(store, "waiting.pdf")
    receipt = AnalysisResult(document_type=DocumentType.RECEIPT, model="m1", strategy="inline")
    store.update_record(done.document_id, status=DocumentStatus.COMPLETED, result=receipt)

    assert store.record_stats() == {
        "total": 2,
        "by_type": {"receipt": 1, "unknown": 1},
        "by_status": {"completed": 1, "pending": 1},
    }
