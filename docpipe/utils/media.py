"""Media helpers: type inference, image normalisation and local PDF text extraction."""

from __future__ import annotations

import io
import logging
import mimetypes
from pathlib import PurePath
from typing import NamedTuple

from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader

from docpipe.errors import UnsupportedInputError

_LOG = logging.getLogger("media")

PDF_MEDIA_TYPE = "application/pdf"
SUPPORTED_MEDIA_TYPES: frozenset[str] = frozenset(
    {PDF_MEDIA_TYPE, "image/jpeg", "image/png", "image/webp"}
)
# Formats where local text extraction is meaningful.
TEXT_BEARING_MEDIA_TYPES: frozenset[str] = frozenset({PDF_MEDIA_TYPE})

_EXTENSION_MEDIA_TYPES = {
    ".pdf": PDF_MEDIA_TYPE,
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}
_GENERIC_MEDIA_TYPES = {"", "application/octet-stream", "binary/octet-stream"}

TRUNCATION_MARKER = (
    "\n\n[... Text truncated. Original document has {pages} pages and {chars} characters ...]"
)


class PdfTextExtractionError(RuntimeError):
    """Raised when local PDF text extraction fails or yields no text."""


class ExtractedText(NamedTuple):
    text: str
    pages: int
    truncated: bool


def is_image(media_type: str) -> bool:
    return media_type.startswith("image/")


def resolve_media_type(media_type: str | None, file_name: str | None = None) -> str:
    """Normalise ``media_type``; infer from the file extension when generic or missing."""
    normalised = (media_type or "").split(";", 1)[0].strip().lower()
    if normalised == "image/jpg":
        normalised = "image/jpeg"
    if normalised and normalised not in _GENERIC_MEDIA_TYPES:
        return normalised
    suffix = PurePath(file_name or "").suffix.lower()
    inferred = _EXTENSION_MEDIA_TYPES.get(suffix)
    if inferred:
        return inferred
    guessed, _ = mimetypes.guess_type(file_name or "")
    return guessed or normalised or "application/octet-stream"


def ensure_supported(media_type: str) -> None:
    if media_type not in SUPPORTED_MEDIA_TYPES:
        raise UnsupportedInputError(f"Unsupported media type: {media_type}")


def normalize_image(data: bytes, *, max_dimension: int = 2000, quality: int = 90) -> bytes:
    """Re-encode an image as RGB JPEG bounded to ``max_dimension`` (never upscaled)."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            if img.mode != "RGB":
                img = img.convert("RGB")
            img.thumbnail((max_dimension, max_dimension))
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=quality)
    except (UnidentifiedImageError, OSError) as exc:
        raise UnsupportedInputError(f"Unreadable image payload: {exc}") from exc
    return out.getvalue()


def extract_pdf_text(data: bytes, *, max_chars: int = 50_000) -> ExtractedText:
    """Extract text from a PDF, truncating to ``max_chars`` with an explicit marker."""
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = len(reader.pages)
        text = "\n".join((page.extract_text() or "") for page in reader.pages).strip()
    except Exception as exc:
        raise PdfTextExtractionError(f"PDF text extraction failed: {exc}") from exc
    if not text:
        raise PdfTextExtractionError("PDF contains no extractable text")
    if len(text) <= max_chars:
        return ExtractedText(text, pages, False)
    _LOG.info(
        "pdf_text_truncated",
        extra={"pages": pages, "text_length": len(text), "max_chars": max_chars},
    )
    truncated = text[:max_chars] + TRUNCATION_MARKER.format(pages=pages, chars=len(text))
    return ExtractedText(truncated, pages, True)


__all__ = [
    "ExtractedText",
    "PDF_MEDIA_TYPE",
    "PdfTextExtractionError",
    "SUPPORTED_MEDIA_TYPES",
    "TEXT_BEARING_MEDIA_TYPES",
    "TRUNCATION_MARKER",
    "ensure_supported",
    "extract_pdf_text",
    "is_image",
    "normalize_image",
    "resolve_media_type",
]
