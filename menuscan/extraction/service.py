"""Boundary to the external multimodal generation service."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from io import BytesIO
from typing import Dict, List, Literal, Optional, Protocol

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ..config import PipelineConfig
from .errors import ExternalServiceError

logger = logging.getLogger(__name__)

IMAGE_TOKEN_ESTIMATE = 1000
IMAGE_COST_USD = 0.00025


class ModelVariant(str, Enum):
    """Model variants used by the phases, keyed like the rate-limit table."""

    PRO = "pro"
    FLASH = "flash"
    FLASH_LITE = "flash_lite"


@dataclass(frozen=True)
class ModelPricing:
    input_per_million: float
    output_per_million: float


MODEL_PRICING: Dict[ModelVariant, ModelPricing] = {
    ModelVariant.PRO: ModelPricing(input_per_million=2.50, output_per_million=10.00),
    ModelVariant.FLASH: ModelPricing(input_per_million=0.075, output_per_million=0.30),
    ModelVariant.FLASH_LITE: ModelPricing(input_per_million=0.075, output_per_million=0.30),
}


def calculate_cost(variant: ModelVariant, input_tokens: int, output_tokens: int, images: int = 0) -> float:
    pricing = MODEL_PRICING[variant]
    cost = (
        input_tokens / 1_000_000 * pricing.input_per_million
        + output_tokens / 1_000_000 * pricing.output_per_million
        + images * IMAGE_COST_USD
    )
    return round(cost, 8)


def estimate_text_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


@dataclass(frozen=True)
class RequestPart:
    """One part of a multimodal request: inline text, a file reference or inline bytes."""

    kind: Literal["text", "file", "inline"]
    text: str = ""
    uri: str = ""
    mime_type: str = ""
    data: bytes = b""

    @classmethod
    def from_text(cls, text: str) -> "RequestPart":
        return cls(kind="text", text=text)

    @classmethod
    def from_file(cls, uri: str, mime_type: str) -> "RequestPart":
        return cls(kind="file", uri=uri, mime_type=mime_type)

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str) -> "RequestPart":
        return cls(kind="inline", data=data, mime_type=mime_type)


@dataclass
class GenerationRequest:
    parts: List[RequestPart]
    system_instruction: Optional[str] = None
    image_count: int = 0
    label: str = ""

    @property
    def estimated_tokens(self) -> int:
        total = estimate_text_tokens(self.system_instruction or "")
        for part in self.parts:
            total += estimate_text_tokens(part.text) if part.kind == "text" else IMAGE_TOKEN_ESTIMATE
        return total


@dataclass
class GenerationResult:
    text: str
    input_tokens: int
    output_tokens: int
    model: str = ""


@dataclass
class RemoteFile:
    uri: str
    name: str
    mime_type: str
    size_bytes: int = 0
    metadata: Dict[str, str] = field(default_factory=dict)


class GenerationService(Protocol):
    async def generate(self, request: GenerationRequest, variant: ModelVariant) -> GenerationResult:
        """Run one generation call; raise :class:`ExternalServiceError` on failure."""

    async def upload(self, data: bytes, mime_type: str, display_name: str) -> RemoteFile:
        """Store a document remotely so later requests can reference it by URI."""


class GeminiGenerationService:
    """google-genai implementation of :class:`GenerationService`."""

    def __init__(
        self,
        api_key: Optional[str],
        model_names: Dict[ModelVariant, str],
        *,
        temperature: float = 0.1,
        max_output_tokens: int = 8000,
        client: Optional[genai.Client] = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise ExternalServiceError("GOOGLE_AI_API_KEY is not configured")
            client = genai.Client(api_key=api_key)
        self._client = client
        self._model_names = dict(model_names)
        self._temperature = temperature
        self._max_output_tokens = max_output_tokens

    def model_name(self, variant: ModelVariant) -> str:
        return self._model_names[variant]

    @staticmethod
    def _to_part(part: RequestPart) -> types.Part:
        if part.kind == "file":
            return types.Part.from_uri(file_uri=part.uri, mime_type=part.mime_type)
        if part.kind == "inline":
            return types.Part.from_bytes(data=part.data, mime_type=part.mime_type)
        return types.Part.from_text(text=part.text)

    async def generate(self, request: GenerationRequest, variant: ModelVariant) -> GenerationResult:
        model = self.model_name(variant)
        config = types.GenerateContentConfig(
            system_instruction=request.system_instruction,
            temperature=self._temperature,
            max_output_tokens=self._max_output_tokens,
            response_mime_type="application/json",
        )
        contents = [types.Content(role="user", parts=[self._to_part(part) for part in request.parts])]
        try:
            response = await self._client.aio.models.generate_content(
                model=model,
                contents=contents,
                config=config,
            )
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            raise ExternalServiceError(f"{model} call failed: {exc}", model=model) from exc

        usage = response.usage_metadata
        if usage is None or usage.prompt_token_count is None:
            raise ExternalServiceError(f"{model} response carried no usage metadata", model=model)

        output_tokens = (usage.candidates_token_count or 0) + (usage.thoughts_token_count or 0)
        return GenerationResult(
            text=response.text or "",
            input_tokens=usage.prompt_token_count,
            output_tokens=output_tokens,
            model=model,
        )

    async def upload(self, data: bytes, mime_type: str, display_name: str) -> RemoteFile:
        try:
            uploaded = await self._client.aio.files.upload(
                file=BytesIO(data),
                config=types.UploadFileConfig(mime_type=mime_type, display_name=display_name),
            )
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            raise ExternalServiceError(f"upload of {display_name} failed: {exc}") from exc

        if not uploaded.uri or not uploaded.name:
            raise ExternalServiceError(f"upload of {display_name} returned no file URI")
        return RemoteFile(
            uri=uploaded.uri,
            name=uploaded.name,
            mime_type=uploaded.mime_type or mime_type,
            size_bytes=uploaded.size_bytes or len(data),
        )


def build_generation_service(config: PipelineConfig) -> GeminiGenerationService:
    """Construct the production service from pipeline configuration."""

    names = {variant: config.model_name(variant.value) for variant in ModelVariant}
    return GeminiGenerationService(
        config.resolved_api_key(),
        names,
        temperature=config.temperature,
        max_output_tokens=config.max_output_tokens,
    )
