"""Analysis client: request strategy selection and model fallback.

For each document the client prepares the provider request once, then walks
the ordered model list:

* ``inline``: payload embedded in the request (images re-encoded as bounded
  JPEG first). Used up to and including the compact threshold.
* ``upload``: bytes pushed to the provider Files API and referenced by id.
  Falls back to ``inline`` when the upload fails.
* ``text_extraction``: very large PDFs are converted to text locally and the
  (possibly truncated) text is sent instead. Falls back to ``upload`` when no
  text can be extracted.

Each model gets a bounded tenacity retry loop for transient failures.
Malformed output and rejected requests move on to the next model. Only when
every model has failed does `analyze` raise `ProviderUnavailableError`.
"""
from __future__ import annotations

import asyncio
import base64
import logging
import textwrap
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePath
from typing import Any, Awaitable, Callable, Sequence

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from docpipe.errors import (
    MalformedResponseError,
    ProviderRequestError,
    ProviderUnavailableError,
    TransientProviderError,
    UnsupportedInputError,
)
from docpipe.models.documents import AnalysisResult
from docpipe.services.interfaces import MetricsClient, ProviderBackend
from docpipe.services.metrics import NullMetrics
from docpipe.services.openai_backend import OpenAIDocumentBackend
from docpipe.services.response_parser import parse_analysis_response
from docpipe.utils.logging_utils import structured_log
from docpipe.utils.media import (
    PDF_MEDIA_TYPE,
    TEXT_BEARING_MEDIA_TYPES,
    PdfTextExtractionError,
    ensure_supported,
    extract_pdf_text,
    is_image,
    normalize_image,
)

LOG = logging.getLogger("analysis_client")

ANALYSIS_PROMPT = textwrap.dedent(
    """
    Analyse the attached document and extract its key information.

    1. Classify the document as exactly one of: invoice, contract, receipt,
       report, id_document, letter, form, unknown.
    2. Transcribe all visible text.
    3. Collect structured fields:
       - dates (YYYY-MM-DD where possible)
       - names of people
       - organizations and companies
       - monetary amounts, including currency when shown
       - reference numbers, identifiers and codes
    4. Write a detailed summary of 6-12 sentences covering what the document
       is, what it is for and its significant details.
    5. Rate your confidence from text legibility: high, medium or low.

    Respond with a single JSON object and nothing else:
    {
      "document_type": "invoice",
      "extracted_text": "...",
      "summary": "...",
      "detected_fields": {
        "dates": ["2024-12-31"],
        "names": ["Jane Smith"],
        "organizations": ["Acme Ltd"],
        "amounts": ["EUR 1,234.56"],
        "references": ["INV-2024-001"]
      },
      "confidence": "high"
    }
    """
).strip()


class AnalysisStrategy(str, Enum):
    INLINE = "inline"
    UPLOAD = "upload"
    TEXT_EXTRACTION = "text_extraction"


def select_strategy(
    size: int,
    media_type: str,
    *,
    compact_threshold: int,
    text_extraction_threshold: int,
) -> AnalysisStrategy:
    if size <= compact_threshold:
        return AnalysisStrategy.INLINE
    if size > text_extraction_threshold and media_type in TEXT_BEARING_MEDIA_TYPES:
        return AnalysisStrategy.TEXT_EXTRACTION
    return AnalysisStrategy.UPLOAD


@dataclass(slots=True)
class PreparedRequest:
    strategy: AnalysisStrategy
    content: list[dict[str, Any]]
    file_id: str | None = None


def _data_url(media_type: str, data: bytes) -> str:
    return f"data:{media_type};base64,{base64.b64encode(data).decode('ascii')}"


class AnalysisClient:
    def __init__(
        self,
        backend: ProviderBackend,
        *,
        models: Sequence[str],
        compact_threshold: int = 2 * 1024 * 1024,
        text_extraction_threshold: int = 5 * 1024 * 1024,
        max_extracted_chars: int = 50_000,
        model_retry_attempts: int = 3,
        backoff_seconds: float = 20.0,
        backoff_max_seconds: float = 60.0,
        image_max_dimension: int = 2000,
        image_jpeg_quality: int = 90,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: MetricsClient | None = None,
    ) -> None:
        if not models:
            raise ValueError("At least one model is required")
        self._backend = backend
        self._models = list(models)
        self._compact_threshold = compact_threshold
        self._text_extraction_threshold = text_extraction_threshold
        self._max_extracted_chars = max_extracted_chars
        self._model_retry_attempts = max(0, model_retry_attempts)
        self._backoff_seconds = backoff_seconds
        self._backoff_max_seconds = backoff_max_seconds
        self._image_max_dimension = image_max_dimension
        self._image_jpeg_quality = image_jpeg_quality
        self._sleep = sleep
        self._metrics = metrics or NullMetrics()

    @classmethod
    def from_config(
        cls,
        cfg,
        *,
        backend: ProviderBackend | None = None,
        metrics: MetricsClient | None = None,
    ) -> "AnalysisClient":
        """Build the client from configuration; fails fast without a usable API key."""
        if backend is None:
            cfg.validate_required()
            backend = OpenAIDocumentBackend(
                api_key=cfg.openai_api_key,
                temperature=cfg.analysis_temperature,
                timeout=cfg.analysis_request_timeout,
            )
        return cls(
            backend,
            models=cfg.analysis_models,
            compact_threshold=cfg.compact_threshold_bytes,
            text_extraction_threshold=cfg.text_extraction_threshold_bytes,
            max_extracted_chars=cfg.max_extracted_chars,
            model_retry_attempts=cfg.model_retry_attempts,
            backoff_seconds=cfg.rate_limit_backoff_seconds,
            backoff_max_seconds=cfg.rate_limit_backoff_max_seconds,
            image_max_dimension=cfg.image_max_dimension,
            image_jpeg_quality=cfg.image_jpeg_quality,
            metrics=metrics,
        )

    @property
    def models(self) -> list[str]:
        return list(self._models)

    async def analyze(
        self, data: bytes, media_type: str, source_location: str | None = None
    ) -> AnalysisResult:
        if not data:
            raise UnsupportedInputError("Document payload is empty")
        ensure_supported(media_type)
        strategy = select_strategy(
            len(data),
            media_type,
            compact_threshold=self._compact_threshold,
            text_extraction_threshold=self._text_extraction_threshold,
        )
        started = time.perf_counter()
        prepared = await self._prepare(data, media_type, strategy, source_location)
        try:
            return await self._run_models(prepared)
        finally:
            self._metrics.observe_latency(
                "analysis_seconds", time.perf_counter() - started, stage="analysis"
            )
            if prepared.file_id:
                await self._discard_upload(prepared.file_id)

    async def _prepare(
        self,
        data: bytes,
        media_type: str,
        strategy: AnalysisStrategy,
        source_location: str | None,
    ) -> PreparedRequest:
        if strategy is AnalysisStrategy.TEXT_EXTRACTION:
            try:
                extracted = await asyncio.to_thread(
                    extract_pdf_text, data, max_chars=self._max_extracted_chars
                )
            except PdfTextExtractionError as exc:
                structured_log(
                    LOG,
                    logging.WARNING,
                    "analysis_strategy_fallback",
                    strategy=strategy.value,
                    reason="text_extraction_failed",
                    error=str(exc),
                )
                strategy = AnalysisStrategy.UPLOAD
            else:
                structured_log(
                    LOG,
                    logging.INFO,
                    "analysis_text_extracted",
                    text_length=len(extracted.text),
                    truncated=extracted.truncated,
                )
                text = f"{ANALYSIS_PROMPT}\n\nDocument text:\n{extracted.text}"
                return PreparedRequest(strategy, [{"type": "input_text", "text": text}])

        if strategy is AnalysisStrategy.UPLOAD:
            filename = PurePath(source_location).name if source_location else ""
            filename = filename or f"document-{uuid.uuid4().hex}"
            try:
                file_id = await self._backend.upload_file(data, filename, media_type)
            except (TransientProviderError, ProviderRequestError) as exc:
                structured_log(
                    LOG,
                    logging.WARNING,
                    "analysis_strategy_fallback",
                    strategy=strategy.value,
                    reason="upload_failed",
                    error=str(exc),
                )
                strategy = AnalysisStrategy.INLINE
            else:
                part: dict[str, Any]
                if is_image(media_type):
                    part = {"type": "input_image", "file_id": file_id, "detail": "auto"}
                else:
                    part = {"type": "input_file", "file_id": file_id}
                return PreparedRequest(
                    strategy, [part, {"type": "input_text", "text": ANALYSIS_PROMPT}], file_id
                )

        return PreparedRequest(AnalysisStrategy.INLINE, await self._inline_content(data, media_type))

    async def _inline_content(self, data: bytes, media_type: str) -> list[dict[str, Any]]:
        if is_image(media_type):
            jpeg = await asyncio.to_thread(
                normalize_image,
                data,
                max_dimension=self._image_max_dimension,
                quality=self._image_jpeg_quality,
            )
            part = {
                "type": "input_image",
                "image_url": _data_url("image/jpeg", jpeg),
                "detail": "auto",
            }
        else:
            part = {
                "type": "input_file",
                "filename": "document.pdf",
                "file_data": _data_url(PDF_MEDIA_TYPE, data),
            }
        return [part, {"type": "input_text", "text": ANALYSIS_PROMPT}]

    async def _run_models(self, prepared: PreparedRequest) -> AnalysisResult:
        errors: list[str] = []
        rate_limited = False
        for model in self._models:
            self._metrics.increment("model_attempt", stage="analysis")
            try:
                text = await self._generate_with_retries(model, prepared.content)
                result = parse_analysis_response(
                    text, model=model, strategy=prepared.strategy.value
                )
            except TransientProviderError as exc:
                rate_limited = rate_limited or exc.rate_limited
                errors.append(f"{model}: {exc}")
            except (MalformedResponseError, ProviderRequestError) as exc:
                errors.append(f"{model}: {exc}")
            else:
                structured_log(
                    LOG,
                    logging.INFO,
                    "analysis_model_succeeded",
                    model=model,
                    strategy=prepared.strategy.value,
                )
                return result
            self._metrics.increment("model_failure", stage="analysis")
            structured_log(
                LOG,
                logging.WARNING,
                "analysis_model_failed",
                model=model,
                strategy=prepared.strategy.value,
                error=errors[-1],
            )
        raise ProviderUnavailableError(
            f"All {len(self._models)} models failed: " + "; ".join(errors),
            errors=errors,
            rate_limited=rate_limited,
        )

    async def _generate_with_retries(self, model: str, content: list[dict[str, Any]]) -> str:
        def _before_sleep(retry_state) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            structured_log(
                LOG,
                logging.WARNING,
                "analysis_model_retry",
                model=model,
                attempt=retry_state.attempt_number,
                delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
                error=str(exc) if exc else None,
            )

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(self._model_retry_attempts + 1),
            wait=wait_exponential(multiplier=self._backoff_seconds, max=self._backoff_max_seconds),
            sleep=self._sleep,
            before_sleep=_before_sleep,
            reraise=True,
        ):
            with attempt:
                return await self._backend.generate(model, content)
        raise RuntimeError("Model retries exhausted")

    async def _discard_upload(self, file_id: str) -> None:
        try:
            await self._backend.delete_file(file_id)
        except (TransientProviderError, ProviderRequestError) as exc:
            LOG.warning("provider_file_delete_failed", extra={"error": str(exc)})


__all__ = [
    "ANALYSIS_PROMPT",
    "AnalysisClient",
    "AnalysisStrategy",
    "PreparedRequest",
    "select_strategy",
]
