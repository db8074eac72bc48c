import base64
import io

import pytest
from PIL import Image

from docpipe.config import AppConfig
from docpipe.errors import (
    MalformedResponseError,
    ProviderRequestError,
    ProviderUnavailableError,
    TransientProviderError,
    UnsupportedInputError,
)
from docpipe.models.documents import DocumentType
from docpipe.services.analysis_client import AnalysisClient, AnalysisStrategy, select_strategy
from docpipe.utils.media import ExtractedText, PdfTextExtractionError
from tests.stubs.provider_stub import RecordingSleep, ScriptedBackend, StubMetrics

PDF = b"%PDF-1.4 minimal"
KB = 1024


def _client(backend, *, models=("model-a", "model-b"), sleep=None, **kwargs):
    return AnalysisClient(
        backend,
        models=list(models),
        sleep=sleep or RecordingSleep(),
        metrics=StubMetrics(),
        **kwargs,
    )


def _part_types(content):
    return [part["type"] for part in content]


def test_strategy_tiers_and_inclusive_compact_boundary():
    limits = {"compact_threshold": 2 * KB, "text_extraction_threshold": 5 * KB}
    assert select_strategy(2 * KB, "application/pdf", **limits) is AnalysisStrategy.INLINE
    assert select_strategy(2 * KB + 1, "application/pdf", **limits) is AnalysisStrategy.UPLOAD
    assert select_strategy(5 * KB, "application/pdf", **limits) is AnalysisStrategy.UPLOAD
    assert select_strategy(5 * KB + 1, "application/pdf", **limits) is AnalysisStrategy.TEXT_EXTRACTION
    assert select_strategy(5 * KB + 1, "image/png", **limits) is AnalysisStrategy.UPLOAD


@pytest.mark.asyncio
async def test_inline_pdf_uses_first_model():
    backend = ScriptedBackend()
    result = await _client(backend).analyze(PDF, "application/pdf")

    assert result.model == "model-a"
    assert result.strategy == "inline"
    assert result.document_type is DocumentType.INVOICE
    model, content = backend.calls[0]
    assert model == "model-a"
    assert _part_types(content) == ["input_file", "input_text"]
    assert content[0]["file_data"].startswith("data:application/pdf;base64,")


@pytest.mark.asyncio
async def test_transient_failures_retried_then_next_model_wins():
    backend = ScriptedBackend({"model-a": TransientProviderError("503")})
    sleep = RecordingSleep()
    client = _client(
        backend, sleep=sleep, model_retry_attempts=2, backoff_seconds=20, backoff_max_seconds=60
    )

    result = await client.analyze(PDF, "application/pdf")

    assert result.model == "model-b"
    assert backend.calls_for("model-a") == 3
    assert backend.calls_for("model-b") == 1
    assert sleep.delays == [20, 40]


@pytest.mark.asyncio
async def test_backoff_is_capped():
    backend = ScriptedBackend({"model-a": TransientProviderError("429", rate_limited=True)})
    sleep = RecordingSleep()
    client = _client(
        backend, sleep=sleep, model_retry_attempts=3, backoff_seconds=20, backoff_max_seconds=60
    )

    await client.analyze(PDF, "application/pdf")

    assert sleep.delays == [20, 40, 60]


@pytest.mark.asyncio
async def test_transient_recovers_on_same_model():
    backend = ScriptedBackend({"model-a": [TransientProviderError("503")]})
    result = await _client(backend, model_retry_attempts=2).analyze(PDF, "application/pdf")

    assert result.model == "model-a"
    assert backend.calls_for("model-a") == 2
    assert backend.calls_for("model-b") == 0


@pytest.mark.asyncio
async def test_malformed_output_moves_to_next_model_without_retry():
    backend = ScriptedBackend({"model-a": "I cannot help with that."})
    result = await _client(backend, model_retry_attempts=3).analyze(PDF, "application/pdf")

    assert result.model == "model-b"
    assert backend.calls_for("model-a") == 1


@pytest.mark.asyncio
async def test_rejected_request_moves_to_next_model():
    backend = ScriptedBackend({"model-a": ProviderRequestError("unknown model", status_code=404)})
    result = await _client(backend).analyze(PDF, "application/pdf")

    assert result.model == "model-b"
    assert backend.calls_for("model-a") == 1


@pytest.mark.asyncio
async def test_all_models_exhausted_raises_provider_unavailable():
    backend = ScriptedBackend(
        {
            "model-a": TransientProviderError("quota", rate_limited=True),
            "model-b": MalformedResponseError("garbage"),
        }
    )
    client = _client(backend, model_retry_attempts=1)

    with pytest.raises(ProviderUnavailableError) as excinfo:
        await client.analyze(PDF, "application/pdf")

    assert excinfo.value.rate_limited is True
    assert len(excinfo.value.errors) == 2
    assert excinfo.value.errors[0].startswith("model-a:")


@pytest.mark.asyncio
async def test_large_payload_uploaded_and_file_deleted_afterwards():
    backend = ScriptedBackend()
    client = _client(backend, compact_threshold=8, text_extraction_threshold=1000)

    result = await client.analyze(PDF, "application/pdf", "/data/uploads/report.pdf")

    assert result.strategy == "upload"
    assert backend.uploads == [("report.pdf", "application/pdf", len(PDF))]
    _, content = backend.calls[0]
    assert content[0] == {"type": "input_file", "file_id": "file-1"}
    assert backend.deleted == ["file-1"]


@pytest.mark.asyncio
async def test_uploaded_file_deleted_even_when_all_models_fail():
    backend = ScriptedBackend(default=MalformedResponseError("nope"))
    client = _client(backend, compact_threshold=8, text_extraction_threshold=1000)

    with pytest.raises(ProviderUnavailableError):
        await client.analyze(PDF, "application/pdf")

    assert backend.deleted == ["file-1"]


@pytest.mark.asyncio
async def test_upload_failure_falls_back_to_inline():
    backend = ScriptedBackend(upload_error=TransientProviderError("upload 503"))
    client = _client(backend, compact_threshold=8, text_extraction_threshold=1000)

    result = await client.analyze(PDF, "application/pdf")

    assert result.strategy == "inline"
    _, content = backend.calls[0]
    assert content[0]["type"] == "input_file"
    assert "file_data" in content[0]
    assert backend.deleted == []


@pytest.mark.asyncio
async def test_very_large_pdf_sent_as_extracted_text(monkeypatch):
    monkeypatch.setattr(
        "docpipe.services.analysis_client.extract_pdf_text",
        lambda data, max_chars: ExtractedText("Quarterly report body", 3, False),
    )
    backend = ScriptedBackend()
    client = _client(backend, compact_threshold=4, text_extraction_threshold=8)

    result = await client.analyze(PDF, "application/pdf")

    assert result.strategy == "text_extraction"
    _, content = backend.calls[0]
    assert _part_types(content) == ["input_text"]
    assert content[0]["text"].endswith("Quarterly report body")
    assert backend.uploads == []


@pytest.mark.asyncio
async def test_text_extraction_failure_falls_back_to_upload(monkeypatch):
    def _fail(data, max_chars):
        raise PdfTextExtractionError("scanned pdf")

    monkeypatch.setattr("docpipe.services.analysis_client.extract_pdf_text", _fail)
    backend = ScriptedBackend()
    client = _client(backend, compact_threshold=4, text_extraction_threshold=8)

    result = await client.analyze(PDF, "application/pdf")

    assert result.strategy == "upload"
    assert len(backend.uploads) == 1


@pytest.mark.asyncio
async def test_inline_image_normalised_to_bounded_jpeg():
    buf = io.BytesIO()
    Image.new("RGBA", (3000, 1500), (255, 0, 0, 128)).save(buf, format="PNG")
    backend = ScriptedBackend()
    client = _client(backend, compact_threshold=10 * 1024 * 1024, text_extraction_threshold=20 * 1024 * 1024)

    await client.analyze(buf.getvalue(), "image/png")

    _, content = backend.calls[0]
    assert content[0]["type"] == "input_image"
    prefix = "data:image/jpeg;base64,"
    assert content[0]["image_url"].startswith(prefix)
    jpeg = base64.b64decode(content[0]["image_url"][len(prefix):])
    with Image.open(io.BytesIO(jpeg)) as img:
        assert img.format == "JPEG"
        assert img.size == (2000, 1000)


@pytest.mark.asyncio
async def test_large_image_uploaded_as_image_reference():
    backend = ScriptedBackend()
    client = _client(backend, compact_threshold=4, text_extraction_threshold=8)

    await client.analyze(b"0123456789abcdef", "image/webp")

    _, content = backend.calls[0]
    assert content[0] == {"type": "input_image", "file_id": "file-1", "detail": "auto"}


@pytest.mark.asyncio
@pytest.mark.parametrize(("data", "media_type"), [(b"", "application/pdf"), (b"hello", "text/plain")])
async def test_unsupported_input_rejected(data, media_type):
    backend = ScriptedBackend()
    with pytest.raises(UnsupportedInputError):
        await _client(backend).analyze(data, media_type)
    assert backend.calls == []


def test_from_config_requires_api_key():
    cfg = AppConfig(OPENAI_API_KEY="")
    with pytest.raises(RuntimeError):
        AnalysisClient.from_config(cfg)


def test_from_config_rejects_placeholder_key():
    cfg = AppConfig(OPENAI_API_KEY="your_openai_api_key_here")
    with pytest.raises(RuntimeError):
        AnalysisClient.from_config(cfg)


def test_from_config_uses_configured_models():
    cfg = AppConfig(OPENAI_API_KEY="sk-test", ANALYSIS_MODELS="m1, m2")
    client = AnalysisClient.from_config(cfg, backend=ScriptedBackend())
    assert client.models == ["m1", "m2"]


def test_from_config_builds_openai_backend():
    cfg = AppConfig(OPENAI_API_KEY="sk-test")
    client = AnalysisClient.from_config(cfg)
    assert client.models == cfg.analysis_models
