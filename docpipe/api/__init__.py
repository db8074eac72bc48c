"""Routers for the document pipeline FastAPI application."""

from __future__ import annotations

from fastapi import APIRouter

from .documents import router as documents_router


def build_api_router() -> APIRouter:
    """Combine all API routers for inclusion in the FastAPI app."""
    router = APIRouter()
    router.include_router(documents_router, prefix="/documents", tags=["documents"])
    return router


__all__ = ["build_api_router"]
