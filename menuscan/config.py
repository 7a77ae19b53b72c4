"""Application configuration dataclasses."""

from __future__ import annotations

import os
from dataclasses import field
from typing import Any, Dict, Optional

from pydantic.dataclasses import dataclass

from .extraction.vocabulary import match_category

DEFAULT_OUTPUT_DIR = os.environ.get("MENUSCAN_OUTPUT_DIR", "extractions")
DEFAULT_TEMPORAL_ADDRESS = "127.0.0.1:7233"
DEFAULT_TEMPORAL_NAMESPACE = "default"
DEFAULT_TEMPORAL_TASK_QUEUE = "menuscan"
DEFAULT_WORKFLOW_ID_PREFIX: Optional[str] = None
API_KEY_ENV_VARS = ("GOOGLE_AI_API_KEY", "GEMINI_API_KEY")
DEFAULT_PRO_MODEL = os.environ.get("MENUSCAN_PRO_MODEL", "gemini-2.5-pro")
DEFAULT_FLASH_MODEL = os.environ.get("MENUSCAN_FLASH_MODEL", "gemini-2.5-flash")
DEFAULT_FLASH_LITE_MODEL = os.environ.get("MENUSCAN_FLASH_LITE_MODEL", "gemini-2.5-flash-lite")
DEFAULT_CONFIDENCE_THRESHOLD = float(os.environ.get("MENUSCAN_CONFIDENCE_THRESHOLD", "0.3"))
DEFAULT_FALLBACK_CONFIDENCE_THRESHOLD = float(os.environ.get("MENUSCAN_FALLBACK_CONFIDENCE_THRESHOLD", "0.3"))
DEFAULT_FALLBACK_MIN_CHARS = int(os.environ.get("MENUSCAN_FALLBACK_MIN_CHARS", "10"))
DEFAULT_FALLBACK_MIN_WORDS = int(os.environ.get("MENUSCAN_FALLBACK_MIN_WORDS", "2"))
DEFAULT_CACHE_MAX_AGE_SECONDS = float(os.environ.get("MENUSCAN_CACHE_MAX_AGE_SECONDS", "3600"))
DEFAULT_ESTIMATED_TOKENS_PER_CALL = int(os.environ.get("MENUSCAN_ESTIMATED_TOKENS_PER_CALL", "1000"))
DEFAULT_RATE_WINDOW_SECONDS = float(os.environ.get("MENUSCAN_RATE_WINDOW_SECONDS", "60"))
DEFAULT_ENRICHMENT_BATCH_SIZE = int(os.environ.get("MENUSCAN_ENRICHMENT_BATCH_SIZE", "30"))
DEFAULT_TEMPERATURE = float(os.environ.get("MENUSCAN_TEMPERATURE", "0.1"))
DEFAULT_MAX_OUTPUT_TOKENS = int(os.environ.get("MENUSCAN_MAX_OUTPUT_TOKENS", "8000"))
DEFAULT_FALLBACK_CATEGORY = os.environ.get("MENUSCAN_FALLBACK_CATEGORY", "Other")
DEFAULT_FETCH_TIMEOUT_SECONDS = float(os.environ.get("MENUSCAN_FETCH_TIMEOUT_SECONDS", "60"))


@dataclass
class ModelLimits:
    """Per-minute throughput quota of a single model variant."""

    requests_per_minute: int
    tokens_per_minute: int


def _default_model_limits() -> Dict[str, ModelLimits]:
    return {
        "pro": ModelLimits(requests_per_minute=2, tokens_per_minute=32_000),
        "flash": ModelLimits(requests_per_minute=15, tokens_per_minute=1_000_000),
        "flash_lite": ModelLimits(requests_per_minute=15, tokens_per_minute=1_000_000),
    }


@dataclass
class PipelineConfig:
    """Typed configuration for a menu extraction run."""

    api_key: Optional[str] = None
    pro_model: str = DEFAULT_PRO_MODEL
    flash_model: str = DEFAULT_FLASH_MODEL
    flash_lite_model: str = DEFAULT_FLASH_LITE_MODEL
    model_limits: Dict[str, ModelLimits] = field(default_factory=_default_model_limits)
    estimated_tokens_per_call: int = DEFAULT_ESTIMATED_TOKENS_PER_CALL
    rate_window_seconds: float = DEFAULT_RATE_WINDOW_SECONDS
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    fallback_confidence_threshold: float = DEFAULT_FALLBACK_CONFIDENCE_THRESHOLD
    fallback_min_chars: int = DEFAULT_FALLBACK_MIN_CHARS
    fallback_min_words: int = DEFAULT_FALLBACK_MIN_WORDS
    cache_max_age_seconds: float = DEFAULT_CACHE_MAX_AGE_SECONDS
    enrichment_batch_size: int = DEFAULT_ENRICHMENT_BATCH_SIZE
    temperature: float = DEFAULT_TEMPERATURE
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS
    fallback_category: str = DEFAULT_FALLBACK_CATEGORY
    fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    output_dir: str = DEFAULT_OUTPUT_DIR
    address: str = DEFAULT_TEMPORAL_ADDRESS
    namespace: str = DEFAULT_TEMPORAL_NAMESPACE
    task_queue: str = DEFAULT_TEMPORAL_TASK_QUEUE
    workflow_id_prefix: Optional[str] = DEFAULT_WORKFLOW_ID_PREFIX

    def __post_init__(self) -> None:
        category = match_category(self.fallback_category)
        if category is None:
            raise ValueError(f"fallback_category {self.fallback_category!r} is not an allowed category")
        self.fallback_category = category

    def limits_for(self, variant_key: str) -> ModelLimits:
        """Return the configured quota for ``variant_key`` (``pro``, ``flash``, ``flash_lite``)."""

        try:
            return self.model_limits[variant_key]
        except KeyError as exc:
            raise KeyError(f"No rate limits configured for model variant {variant_key!r}") from exc

    def resolved_api_key(self) -> Optional[str]:
        """Return the explicit key or the first one found in the environment."""

        if self.api_key:
            return self.api_key
        for name in API_KEY_ENV_VARS:
            value = os.environ.get(name)
            if value:
                return value
        return None

    def model_name(self, variant_key: str) -> str:
        names = {
            "pro": self.pro_model,
            "flash": self.flash_model,
            "flash_lite": self.flash_lite_model,
        }
        return names[variant_key]

    def to_activity_payload(self) -> Dict[str, Any]:
        """Return a dict compatible with activity execution.

        The API key is not included; workers read it from their own environment.
        """

        return {
            "pro_model": self.pro_model,
            "flash_model": self.flash_model,
            "flash_lite_model": self.flash_lite_model,
            "model_limits": {
                key: {
                    "requests_per_minute": limits.requests_per_minute,
                    "tokens_per_minute": limits.tokens_per_minute,
                }
                for key, limits in self.model_limits.items()
            },
            "estimated_tokens_per_call": self.estimated_tokens_per_call,
            "rate_window_seconds": self.rate_window_seconds,
            "confidence_threshold": self.confidence_threshold,
            "fallback_confidence_threshold": self.fallback_confidence_threshold,
            "fallback_min_chars": self.fallback_min_chars,
            "fallback_min_words": self.fallback_min_words,
            "cache_max_age_seconds": self.cache_max_age_seconds,
            "enrichment_batch_size": self.enrichment_batch_size,
            "temperature": self.temperature,
            "max_output_tokens": self.max_output_tokens,
            "fallback_category": self.fallback_category,
            "fetch_timeout_seconds": self.fetch_timeout_seconds,
            "output_dir": self.output_dir,
        }

    @classmethod
    def from_activity_payload(cls, payload: Optional[Dict[str, Any]]) -> "PipelineConfig":
        """Rebuild a config from :meth:`to_activity_payload` output, ignoring unknown keys."""

        payload = dict(payload or {})
        known = {name: payload[name] for name in cls.__dataclass_fields__ if name in payload}
        limits = known.get("model_limits")
        if isinstance(limits, dict):
            known["model_limits"] = {
                key: value if isinstance(value, ModelLimits) else ModelLimits(**value)
                for key, value in limits.items()
            }
        return cls(**known)

    def workflow_id_prefix_value(self) -> str:
        """Return a sanitized workflow ID prefix."""

        prefix = (self.workflow_id_prefix or "menu-extraction").strip() or "menu-extraction"
        return prefix

    def copy(self, **updates: Any) -> "PipelineConfig":
        """Return a shallow copy with optional overrides."""

        values = {name: getattr(self, name) for name in self.__dataclass_fields__}
        values.update(updates)
        return PipelineConfig(**values)
