"""Document records, jobs and analysis results shared across the pipeline."""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import PurePath
from typing import Any, Dict, List, MutableMapping


class DocumentStatus(str, Enum):
    """Lifecycle of a document record.

    ``pending -> processing -> {completed | pending (retry) | failed}``; the
    terminal states are COMPLETED and FAILED.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.COMPLETED, DocumentStatus.FAILED)


class DocumentType(str, Enum):
    INVOICE = "invoice"
    CONTRACT = "contract"
    RECEIPT = "receipt"
    REPORT = "report"
    ID_DOCUMENT = "id_document"
    LETTER = "letter"
    FORM = "form"
    UNKNOWN = "unknown"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


DETECTED_FIELD_NAMES = ("dates", "names", "organizations", "amounts", "references")


@dataclass(slots=True)
class DetectedFields:
    dates: List[str] = field(default_factory=list)
    names: List[str] = field(default_factory=list)
    organizations: List[str] = field(default_factory=list)
    amounts: List[str] = field(default_factory=list)
    references: List[str] = field(default_factory=list)


@dataclass(slots=True)
class AnalysisResult:
    document_type: DocumentType = DocumentType.UNKNOWN
    summary: str = "No summary available"
    extracted_text: str = ""
    detected_fields: DetectedFields = field(default_factory=DetectedFields)
    confidence: Confidence = Confidence.MEDIUM
    model: str | None = None
    strategy: str | None = None

    @property
    def raw_response_tag(self) -> str:
        return f"AI_OPENAI_{self.model or 'unknown'}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_type": self.document_type.value,
            "summary": self.summary,
            "extracted_text": self.extracted_text,
            "detected_fields": asdict(self.detected_fields),
            "confidence": self.confidence.value,
            "model": self.model,
            "strategy": self.strategy,
            "raw_response": self.raw_response_tag,
        }

    @classmethod
    def from_dict(cls, payload: MutableMapping[str, Any]) -> "AnalysisResult":
        fields_payload = payload.get("detected_fields") or {}
        return cls(
            document_type=DocumentType(payload.get("document_type", "unknown")),
            summary=payload.get("summary", "No summary available"),
            extracted_text=payload.get("extracted_text", ""),
            detected_fields=DetectedFields(
                **{name: list(fields_payload.get(name) or []) for name in DETECTED_FIELD_NAMES}
            ),
            confidence=Confidence(payload.get("confidence", "medium")),
            model=payload.get("model"),
            strategy=payload.get("strategy"),
        )


_FILE_TYPES = {
    "application/pdf": "pdf",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


def derive_file_type(media_type: str, file_name: str | None = None) -> str:
    """Short file type label stored alongside the record (pdf/jpg/png/webp)."""
    known = _FILE_TYPES.get(media_type)
    if known:
        return known
    suffix = PurePath(file_name or "").suffix.lower().lstrip(".")
    if suffix == "jpeg":
        return "jpg"
    return suffix or "unknown"


@dataclass(slots=True)
class DocumentCreate:
    file_name: str
    source_location: str
    media_type: str
    file_size: int | None = None
    uploaded_by: str | None = None
    document_id: str | None = None


@dataclass(slots=True)
class DocumentRecord:
    document_id: str
    file_name: str
    file_type: str
    file_size: int | None
    source_location: str
    media_type: str
    status: DocumentStatus = DocumentStatus.PENDING
    attempts: int = 0
    error_message: str | None = None
    result: AnalysisResult | None = None
    uploaded_by: str | None = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    @classmethod
    def new(cls, payload: DocumentCreate) -> "DocumentRecord":
        return cls(
            document_id=payload.document_id or uuid.uuid4().hex,
            file_name=payload.file_name,
            file_type=derive_file_type(payload.media_type, payload.file_name),
            file_size=payload.file_size,
            source_location=payload.source_location,
            media_type=payload.media_type,
            uploaded_by=payload.uploaded_by,
        )


@dataclass(slots=True, frozen=True)
class DocumentJob:
    """In-memory unit of work; never persisted."""

    document_id: str
    source_location: str
    media_type: str

    @classmethod
    def from_record(cls, record: DocumentRecord) -> "DocumentJob":
        return cls(
            document_id=record.document_id,
            source_location=record.source_location,
            media_type=record.media_type,
        )


def clone_record(record: DocumentRecord) -> DocumentRecord:
    result = record.result
    if result is not None:
        result = AnalysisResult.from_dict(result.to_dict())
    return DocumentRecord(
        document_id=record.document_id,
        file_name=record.file_name,
        file_type=record.file_type,
        file_size=record.file_size,
        source_location=record.source_location,
        media_type=record.media_type,
        status=record.status,
        attempts=record.attempts,
        error_message=record.error_message,
        result=result,
        uploaded_by=record.uploaded_by,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def record_to_dict(record: DocumentRecord) -> Dict[str, Any]:
    return {
        "document_id": record.document_id,
        "file_name": record.file_name,
        "file_type": record.file_type,
        "file_size": record.file_size,
        "source_location": record.source_location,
        "media_type": record.media_type,
        "status": record.status.value,
        "attempts": record.attempts,
        "error_message": record.error_message,
        "result": None if record.result is None else record.result.to_dict(),
        "uploaded_by": record.uploaded_by,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def record_from_dict(payload: MutableMapping[str, Any]) -> DocumentRecord:
    result_payload = payload.get("result")
    return DocumentRecord(
        document_id=payload["document_id"],
        file_name=payload["file_name"],
        file_type=payload.get("file_type") or "unknown",
        file_size=payload.get("file_size"),
        source_location=payload["source_location"],
        media_type=payload["media_type"],
        status=DocumentStatus(payload.get("status", "pending")),
        attempts=int(payload.get("attempts", 0)),
        error_message=payload.get("error_message"),
        result=None if not result_payload else AnalysisResult.from_dict(result_payload),
        uploaded_by=payload.get("uploaded_by"),
        created_at=float(payload.get("created_at", time.time())),
        updated_at=float(payload.get("updated_at", time.time())),
    )


def record_public_view(record: DocumentRecord) -> Dict[str, Any]:
    """API representation; the source path stays server side."""
    payload = record_to_dict(record)
    payload.pop("source_location", None)
    return payload


__all__ = [
    "AnalysisResult",
    "Confidence",
    "DETECTED_FIELD_NAMES",
    "DetectedFields",
    "DocumentCreate",
    "DocumentJob",
    "DocumentRecord",
    "DocumentStatus",
    "DocumentType",
    "clone_record",
    "derive_file_type",
    "record_from_dict",
    "record_public_view",
    "record_to_dict",
]
