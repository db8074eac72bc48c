from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from docpipe.models.documents import DocumentCreate, DocumentRecord
from docpipe.services.document_store import InMemoryDocumentStore
from docpipe.utils.secrets import clear_secret_cache

PDF_BYTES = b"%PDF-1.4\n1 0 obj<<>>endobj\ntrailer<<>>\n%%EOF\n"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in (
        "OPENAI_API_KEY",
        "ANALYSIS_MODELS",
        "MAX_ATTEMPTS",
        "MAX_CONCURRENT_JOBS",
        "DOCUMENT_STORE_BACKEND",
        "DOCUMENT_STORE_BUCKET",
        "ENABLE_METRICS",
    ):
        monkeypatch.delenv(name, raising=False)
    clear_secret_cache()
    yield
    clear_secret_cache()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def write_file(tmp_path: Path) -> Callable[..., Path]:
    def _write(name: str = "doc.pdf", data: bytes = PDF_BYTES) -> Path:
        path = tmp_path / name
        path.write_bytes(data)
        return path

    return _write


@pytest.fixture
def make_record(store, write_file) -> Callable[..., DocumentRecord]:
    def _make(
        name: str = "doc.pdf",
        data: bytes = PDF_BYTES,
        media_type: str = "application/pdf",
        source_location: str | None = None,
    ) -> DocumentRecord:
        location = source_location or str(write_file(name, data))
        return store.create_record(
            DocumentCreate(
                file_name=name,
                source_location=location,
                media_type=media_type,
                file_size=len(data),
            )
        )

    return _make
