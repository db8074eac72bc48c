"""Thin async OpenAI wrapper (Responses + Files API) with error classification.

Every provider exception is translated here so the analysis client only deals
with `TransientProviderError` (retry this model) and `ProviderRequestError`
(move on to the next model).
"""
from __future__ import annotations

import logging
from typing import Any

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)

from docpipe.errors import MalformedResponseError, ProviderRequestError, TransientProviderError

LOG = logging.getLogger("openai_backend")

_TRANSIENT_STATUS = {408, 409, 425, 500, 502, 503, 504}


def _extract_responses_text(resp: Any) -> str:
    txt = getattr(resp, "output_text", None)
    if txt:
        return txt
    output = getattr(resp, "output", None)
    if not output:
        raise MalformedResponseError("OpenAI Responses: empty payload")
    for node in output:
        for part in getattr(node, "content", None) or []:
            text = getattr(part, "text", None)
            if isinstance(text, str) and text:
                return text
    raise MalformedResponseError("OpenAI Responses: could not extract text")


def classify_openai_error(exc: Exception, *, model: str | None = None) -> Exception:
    """Map an OpenAI SDK exception onto the pipeline's provider errors."""
    if isinstance(exc, RateLimitError):
        return TransientProviderError(f"rate limited: {exc}", rate_limited=True, model=model)
    if isinstance(exc, (APITimeoutError, APIConnectionError)):
        return TransientProviderError(f"connection error: {exc}", model=model)
    if isinstance(exc, InternalServerError):
        return TransientProviderError(f"provider error: {exc}", model=model)
    if isinstance(exc, APIStatusError):
        if exc.status_code in _TRANSIENT_STATUS:
            return TransientProviderError(f"provider error {exc.status_code}: {exc}", model=model)
        return ProviderRequestError(
            f"request rejected ({exc.status_code}): {exc}", status_code=exc.status_code, model=model
        )
    return exc


class OpenAIDocumentBackend:
    """`ProviderBackend` implementation backed by ``AsyncOpenAI``."""

    def __init__(
        self,
        *,
        api_key: str,
        temperature: float = 0.1,
        timeout: float = 210.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        # SDK-level retries are disabled; the analysis client owns retry policy.
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self._temperature = temperature

    async def generate(self, model: str, content: list[dict[str, Any]]) -> str:
        try:
            resp = await self._client.responses.create(
                model=model,
                input=[{"role": "user", "content": content}],
                temperature=self._temperature,
            )
        except Exception as exc:
            raise classify_openai_error(exc, model=model) from exc
        return _extract_responses_text(resp)

    async def upload_file(self, data: bytes, filename: str, media_type: str) -> str:
        purpose = "vision" if media_type.startswith("image/") else "user_data"
        try:
            uploaded = await self._client.files.create(
                file=(filename, data, media_type), purpose=purpose
            )
        except Exception as exc:
            raise classify_openai_error(exc) from exc
        LOG.info("provider_file_uploaded", extra={"bytes": len(data), "media_type": media_type})
        return uploaded.id

    async def delete_file(self, file_id: str) -> None:
        try:
            await self._client.files.delete(file_id)
        except Exception as exc:
            raise classify_openai_error(exc) from exc


__all__ = ["OpenAIDocumentBackend", "classify_openai_error"]
