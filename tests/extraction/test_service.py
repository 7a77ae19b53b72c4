from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Dict, List

import httpx
import pytest
from menuscan.config import PipelineConfig
from menuscan.extraction.errors import ExternalServiceError
from menuscan.extraction.service import (
    GeminiGenerationService,
    GenerationRequest,
    ModelVariant,
    RequestPart,
    build_generation_service,
)

NAMES = {ModelVariant.PRO: "pro-model", ModelVariant.FLASH: "flash-model", ModelVariant.FLASH_LITE: "lite-model"}


class FakeModels:
    def __init__(self, response: Any = None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def generate_content(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response


class FakeFiles:
    def __init__(self) -> None:
        self.uploaded: List[Dict[str, Any]] = []

    async def upload(self, **kwargs: Any) -> Any:
        self.uploaded.append(kwargs)
        return SimpleNamespace(uri="https://files.example/abc", name="files/abc", mime_type=None, size_bytes=None)


def _client(models: FakeModels, files: FakeFiles | None = None) -> Any:
    return SimpleNamespace(aio=SimpleNamespace(models=models, files=files or FakeFiles()))


def _response(text: str, prompt: int | None = 120, candidates: int = 30, thoughts: int | None = 10) -> Any:
    usage = SimpleNamespace(
        prompt_token_count=prompt,
        candidates_token_count=candidates,
        thoughts_token_count=thoughts,
    )
    return SimpleNamespace(text=text, usage_metadata=usage)


@pytest.mark.asyncio
async def test_generate_reports_usage_and_model() -> None:
    models = FakeModels(_response("[]"))
    service = GeminiGenerationService(None, NAMES, client=_client(models))
    request = GenerationRequest(
        parts=[RequestPart.from_text("Extract"), RequestPart.from_file("https://files.example/abc", "image/png")],
        system_instruction="You read menus.",
        label="batch_1",
    )

    result = await service.generate(request, ModelVariant.FLASH)

    assert result.text == "[]"
    assert result.input_tokens == 120
    assert result.output_tokens == 40
    assert result.model == "flash-model"
    assert models.calls[0]["model"] == "flash-model"
    assert len(models.calls[0]["contents"][0].parts) == 2


@pytest.mark.asyncio
async def test_transport_errors_become_external_service_errors() -> None:
    models = FakeModels(error=httpx.ConnectError("connection refused"))
    service = GeminiGenerationService(None, NAMES, client=_client(models))

    with pytest.raises(ExternalServiceError) as excinfo:
        await service.generate(GenerationRequest(parts=[RequestPart.from_text("hi")]), ModelVariant.PRO)

    assert excinfo.value.model == "pro-model"


@pytest.mark.asyncio
async def test_missing_usage_metadata_is_an_error() -> None:
    service = GeminiGenerationService(None, NAMES, client=_client(FakeModels(_response("[]", prompt=None))))

    with pytest.raises(ExternalServiceError):
        await service.generate(GenerationRequest(parts=[RequestPart.from_text("hi")]), ModelVariant.PRO)


@pytest.mark.asyncio
async def test_upload_returns_remote_file() -> None:
    files = FakeFiles()
    service = GeminiGenerationService(None, NAMES, client=_client(FakeModels(), files))

    remote = await service.upload(b"%PDF-1.4", "application/pdf", "menu.pdf")

    assert remote.uri == "https://files.example/abc"
    assert remote.mime_type == "application/pdf"
    assert remote.size_bytes == 8
    assert files.uploaded[0]["config"].display_name == "menu.pdf"


def test_estimated_tokens_counts_files_as_images() -> None:
    request = GenerationRequest(parts=[RequestPart.from_text("x" * 400), RequestPart.from_file("uri", "image/png")])

    assert request.estimated_tokens == 100 + 1000


def test_missing_api_key_is_reported(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GOOGLE_AI_API_KEY", raising=False)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    with pytest.raises(ExternalServiceError):
        build_generation_service(PipelineConfig())


def test_api_key_is_read_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GOOGLE_AI_API_KEY", raising=False)
    monkeypatch.setenv("GEMINI_API_KEY", "from-env")

    assert PipelineConfig().resolved_api_key() == "from-env"
    assert PipelineConfig(api_key="explicit").resolved_api_key() == "explicit"
