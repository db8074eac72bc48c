"""Structured logging configuration.

Provides a JSON formatter and a ``document_id`` context variable. The FastAPI
app calls `configure_logging()` at startup. The worker pool runs each job inside
`document_context(id)` so every record emitted while the job runs carries the
document it belongs to.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

document_id_var: ContextVar[str | None] = ContextVar("document_id", default=None)

_STANDARD_FIELDS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        data: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        doc_id = document_id_var.get()
        if doc_id and "document_id" not in record.__dict__:
            data["document_id"] = doc_id
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key in _STANDARD_FIELDS or key.startswith("_"):
                continue
            data[key] = value
        return json.dumps(data, ensure_ascii=False, default=str)


def configure_logging(level: int = logging.INFO, force: bool = False) -> None:
    root = logging.getLogger()
    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)
    elif any(
        isinstance(h, logging.StreamHandler) for h in root.handlers
    ):  # already configured
        root.setLevel(level)
        for handler in root.handlers:
            handler.setLevel(level)
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.setLevel(level)
    root.addHandler(handler)


@contextmanager
def document_context(document_id: str | None) -> Iterator[None]:
    token = document_id_var.set(document_id)
    try:
        yield
    finally:
        document_id_var.reset(token)


__all__ = [
    "JsonFormatter",
    "configure_logging",
    "document_context",
    "document_id_var",
]
