"""Shared interfaces used across the document pipeline services."""

from __future__ import annotations

from typing import Any, Protocol


class ProviderBackend(Protocol):
    """Abstraction over the AI provider so the analysis client can be tested offline."""

    async def generate(self, model: str, content: list[dict[str, Any]]) -> str: ...

    async def upload_file(self, data: bytes, filename: str, media_type: str) -> str: ...

    async def delete_file(self, file_id: str) -> None: ...


class MetricsClient(Protocol):
    """Interface for emitting metrics to Prometheus (or nowhere)."""

    def observe_latency(self, name: str, value: float, **labels: str) -> None: ...

    def increment(self, name: str, amount: int = 1, **labels: str) -> None: ...

    def set_gauge(self, name: str, value: float, **labels: str) -> None: ...


__all__ = ["ProviderBackend", "MetricsClient"]
