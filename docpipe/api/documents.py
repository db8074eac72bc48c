"""Document registration, listing and status routes."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from docpipe.errors import DocumentNotFoundError, ValidationError
from docpipe.models.documents import DocumentCreate, DocumentStatus, DocumentType, record_public_view
from docpipe.services.document_store import DocumentStore
from docpipe.services.pipeline import DocumentPipeline
from docpipe.utils.media import SUPPORTED_MEDIA_TYPES, resolve_media_type

router = APIRouter()
_API_LOG = logging.getLogger("api")


class DocumentSubmitRequest(BaseModel):
    """A stored file to register and queue for analysis."""

    file_name: str = Field(alias="fileName", min_length=1)
    source_location: str = Field(alias="sourceLocation", min_length=1)
    media_type: str | None = Field(default=None, alias="mediaType")
    file_size: int | None = Field(default=None, alias="fileSize", ge=0)
    uploaded_by: str | None = Field(default=None, alias="uploadedBy")

    @field_validator("file_name", "source_location")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    model_config = {"populate_by_name": True}


def _store(request: Request) -> DocumentStore:
    return request.app.state.document_store


def _pipeline(request: Request) -> DocumentPipeline:
    return request.app.state.pipeline


@router.post("", status_code=202)
async def submit_document(payload: DocumentSubmitRequest, request: Request):
    media_type = resolve_media_type(payload.media_type, payload.file_name)
    if media_type not in SUPPORTED_MEDIA_TYPES:
        raise ValidationError(f"Unsupported media type: {media_type}")
    max_bytes = request.app.state.config.max_input_bytes
    if payload.file_size is not None and payload.file_size > max_bytes:
        raise ValidationError(f"File size {payload.file_size} exceeds maximum of {max_bytes} bytes")

    record = await asyncio.to_thread(
        _store(request).create_record,
        DocumentCreate(
            file_name=payload.file_name,
            source_location=payload.source_location,
            media_type=media_type,
            file_size=payload.file_size,
            uploaded_by=payload.uploaded_by,
        ),
    )
    queued = _pipeline(request).submit(record.document_id, record.source_location, media_type)
    _API_LOG.info(
        "document_registered",
        extra={"document_id": record.document_id, "media_type": media_type, "queued": queued},
    )
    body: dict[str, Any] = record_public_view(record)
    body["queued"] = queued
    return JSONResponse(status_code=202, content=body)


@router.get("")
async def list_documents(
    request: Request,
    status: DocumentStatus | None = None,
    document_type: DocumentType | None = Query(default=None, alias="documentType"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    records, total = await asyncio.to_thread(
        _store(request).list_records,
        status=status,
        document_type=document_type,
        limit=limit,
        offset=offset,
    )
    return {
        "data": [record_public_view(record) for record in records],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/stats")
async def document_stats(request: Request):
    return await asyncio.to_thread(_store(request).record_stats)


@router.get("/{document_id}")
async def get_document(document_id: str, request: Request):
    record = await asyncio.to_thread(_store(request).get_record, document_id)
    if record is None:
        raise DocumentNotFoundError(document_id)
    body: dict[str, Any] = record_public_view(record)
    body["tracked"] = _pipeline(request).is_tracked(document_id)
    return body


@router.delete("/{document_id}", status_code=204)
async def delete_document(document_id: str, request: Request):
    _pipeline(request).discard(document_id)
    deleted = await asyncio.to_thread(_store(request).delete_record, document_id)
    if not deleted:
        raise DocumentNotFoundError(document_id)
    _API_LOG.info("document_deleted", extra={"document_id": document_id})
    return Response(status_code=204)


__all__ = ["router", "DocumentSubmitRequest"]
