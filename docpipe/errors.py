"""Custom exception hierarchy for the document analysis pipeline.

Failures are classified as close to the provider call as possible so the
worker pool only ever deals with a retry decision, never with provider
specific error shapes. FastAPI exception handlers map the request-facing
errors to HTTP status codes.
"""
from __future__ import annotations

from typing import Sequence


class ValidationError(Exception):
    """Raised when user supplied input (request body, parameters) is invalid."""


class DocumentNotFoundError(KeyError):
    """Raised by a document store when the record does not exist (anymore)."""

    def __init__(self, document_id: str):
        super().__init__(document_id)
        self.document_id = document_id

    def __str__(self) -> str:
        return f"Document {self.document_id} not found"


class TransientProviderError(Exception):
    """Rate limit, quota or transient 5xx/network failure from the provider."""

    def __init__(self, message: str, *, rate_limited: bool = False, model: str | None = None):
        super().__init__(message)
        self.rate_limited = rate_limited
        self.model = model


class ProviderRequestError(Exception):
    """Provider rejected the request for this model (auth, bad request, unknown model)."""

    def __init__(self, message: str, *, status_code: int | None = None, model: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.model = model


class MalformedResponseError(Exception):
    """Provider answered but no well-formed structured payload could be parsed."""


class ProviderUnavailableError(Exception):
    """Every strategy fallback and every model in the list has been exhausted."""

    def __init__(self, message: str, *, errors: Sequence[str] = (), rate_limited: bool = False):
        super().__init__(message)
        self.errors = list(errors)
        self.rate_limited = rate_limited


class MissingInputError(Exception):
    """Source file could not be located, including the fallback lookup path."""


class UnsupportedInputError(Exception):
    """Media type or payload size is outside every handled analysis strategy."""


__all__ = [
    "ValidationError",
    "DocumentNotFoundError",
    "TransientProviderError",
    "ProviderRequestError",
    "MalformedResponseError",
    "ProviderUnavailableError",
    "MissingInputError",
    "UnsupportedInputError",
]
