"""FastAPI application entrypoint for the document analysis pipeline."""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from docpipe.api import build_api_router
from docpipe.config import AppConfig, get_config
from docpipe.errors import DocumentNotFoundError, ValidationError
from docpipe.logging_setup import configure_logging
from docpipe.services.analysis_client import AnalysisClient
from docpipe.services.document_store import DocumentStore, create_document_store
from docpipe.services.metrics import NullMetrics, PrometheusMetrics
from docpipe.services.pipeline import DocumentPipeline
from docpipe.utils.logging_utils import structured_log

_API_LOG = logging.getLogger("api")


def _log_level() -> int:
    debug = os.getenv("DEBUG", "false").strip().lower() in {"1", "true", "yes", "on"}
    return logging.DEBUG if debug else logging.INFO


def create_app(
    config: AppConfig | None = None,
    *,
    store: DocumentStore | None = None,
    analysis_client: AnalysisClient | None = None,
) -> FastAPI:
    configure_logging(level=_log_level())
    if config is None:
        get_config.cache_clear()
        config = get_config()
    cfg = config
    cfg.validate_required()

    app = FastAPI(title="docpipe API", version="1.0.0")
    app.state.config = cfg
    if cfg.enable_metrics:
        app.state.metrics = PrometheusMetrics.instrument_app(app)
    else:
        app.state.metrics = NullMetrics()

    app.state.document_store = store or create_document_store(cfg)
    client = analysis_client or AnalysisClient.from_config(cfg, metrics=app.state.metrics)
    app.state.pipeline = DocumentPipeline.from_config(
        cfg,
        store=app.state.document_store,
        analysis_client=client,
        metrics=app.state.metrics,
    )
    structured_log(
        _API_LOG,
        logging.INFO,
        "pipeline_configured",
        models=",".join(client.models),
        ceiling=cfg.max_attempts,
    )

    @app.exception_handler(ValidationError)
    async def _val_handler(_r: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(DocumentNotFoundError)
    async def _not_found_handler(_r: Request, exc: DocumentNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.get("/healthz", summary="Healthz")
    async def healthz(request: Request):
        return {"status": "ok", "pipeline": request.app.state.pipeline.stats()}

    app.include_router(build_api_router())

    @app.on_event("startup")
    async def _start_pipeline():
        app.state.pipeline.start()
        _API_LOG.info("service_startup_marker", extra={"version": app.version})

    @app.on_event("shutdown")
    async def _stop_pipeline():
        await app.state.pipeline.stop()

    return app


__all__ = ["create_app"]
